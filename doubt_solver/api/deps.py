from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from doubt_solver.database.conversation_crud import ConversationRepository
from doubt_solver.database.document_crud import DocumentRepository
from doubt_solver.database.user_crud import UserRepository
from doubt_solver.errors import AuthError
from doubt_solver.models.users import UserRecord
from doubt_solver.services import security
from doubt_solver.services.auth import AuthService
from doubt_solver.services.doubts import DoubtService
from doubt_solver.services.email import EmailSender
from doubt_solver.services.extraction import TextExtractor
from doubt_solver.services.gemini import GeminiClient
from doubt_solver.services.processing import DocumentProcessor, ExtractionQueue
from doubt_solver.services.storage import S3Storage


@dataclass
class Services:
    documents: DocumentRepository
    conversations: ConversationRepository
    users: UserRepository
    storage: S3Storage
    queue: ExtractionQueue
    doubts: DoubtService
    auth: AuthService


def build_services(db, storage=None, extractor=None, llm=None, email_sender=None) -> Services:
    """Wire repositories and SDK clients together. Called once at startup."""
    documents = DocumentRepository(db)
    conversations = ConversationRepository(db)
    users = UserRepository(db)
    storage = storage or S3Storage()
    processor = DocumentProcessor(documents, extractor or TextExtractor(), storage)
    return Services(
        documents=documents,
        conversations=conversations,
        users=users,
        storage=storage,
        queue=ExtractionQueue(processor),
        doubts=DoubtService(documents, conversations, llm or GeminiClient()),
        auth=AuthService(users, email_sender or EmailSender()),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Access token is required")
    return authorization[len("Bearer "):].strip()


async def _active_user(services: Services, user_id: str) -> UserRecord:
    user = await services.users.find_by_id(user_id)
    if user is None or not user.is_active or user.is_locked():
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


async def get_current_user(
    token: str = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> UserRecord:
    try:
        user_id = security.decode_token(token)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.message)
    return await _active_user(services, user_id)
