import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from doubt_solver.api.deps import Services, get_current_user, get_services
from doubt_solver.config import MAX_FILE_SIZE
from doubt_solver.errors import StorageError
from doubt_solver.models.documents import (
    DocumentListOut,
    DocumentRecord,
    DocumentStatusOut,
    Pagination,
    UploadResponse,
)
from doubt_solver.models.users import UserRecord
from doubt_solver.services.file_types import SUPPORTED_FILE_TYPES, detect_file_type, is_supported_file_type

logger = logging.getLogger(__name__)

router = APIRouter()


async def _owned_document(services: Services, document_id: str, user: UserRecord) -> DocumentRecord:
    doc = await services.documents.find_owned(document_id, user.id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found or access denied")
    return doc


@router.post("", response_model=UploadResponse, status_code=201)
async def upload_document(
    file: Optional[UploadFile] = File(None),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    file_data = await file.read()
    if not file_data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(file_data) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {MAX_FILE_SIZE // (1024 * 1024)}MB",
        )

    stored = await services.storage.upload(
        user_id=user.id,
        file_data=file_data,
        original_filename=file.filename or "upload",
        content_type=file.content_type,
    )

    file_type = detect_file_type(file.filename, file.content_type, stored.url)
    if not is_supported_file_type(file_type):
        logger.info("Rejected upload %r (%s) from user %s", file.filename, file.content_type, user.id)
        try:
            await services.storage.delete(stored.key)
        except StorageError as e:
            logger.error("Could not remove rejected upload %s: %s", stored.key, e.message)
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type. Allowed types: {', '.join(SUPPORTED_FILE_TYPES)}",
        )

    doc = await services.documents.create(DocumentRecord(
        user_id=user.id,
        original_name=file.filename or stored.filename,
        file_type=file_type,
        url=stored.url,
        storage_key=stored.key,
        file_size=stored.size,
    ))
    services.queue.submit(doc.id)
    logger.info("Accepted upload %s (%s, %d bytes) from user %s", doc.id, file_type, doc.file_size, user.id)

    return UploadResponse(
        documentId=doc.id,
        filename=doc.original_name,
        fileType=doc.file_type,
        fileSize=doc.file_size,
        processingStatus=doc.processing_status,
    )


@router.get("/status/{document_id}", response_model=DocumentStatusOut)
async def get_processing_status(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    doc = await _owned_document(services, document_id, user)
    return DocumentStatusOut.from_record(doc)


@router.get("/documents", response_model=DocumentListOut)
async def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    docs, total = await services.documents.list_by_user(user.id, skip=(page - 1) * limit, limit=limit)
    return DocumentListOut(
        documents=[DocumentStatusOut.from_record(doc, include_preview=False) for doc in docs],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/documents/{document_id}/preview-url", response_model=dict)
async def get_preview_url(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    doc = await _owned_document(services, document_id, user)
    return {"url": services.storage.presigned_url(doc.storage_key), "expiresIn": 3600}


@router.delete("/documents/{document_id}", response_model=dict)
async def delete_document(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    doc = await _owned_document(services, document_id, user)

    try:
        await services.storage.delete(doc.storage_key)
    except StorageError as e:
        logger.error("Failed to delete %s from storage: %s", doc.storage_key, e.message)

    removed = await services.doubts.delete_for_document(doc.id)
    await services.documents.delete(doc.id)
    logger.info("Deleted document %s and %d conversations", doc.id, removed)
    return {"message": "Document deleted successfully"}
