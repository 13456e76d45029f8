from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from doubt_solver.errors import ValidationError
from doubt_solver.models.users import UserRecord


def _to_record(doc: Optional[dict]) -> Optional[UserRecord]:
    if not doc:
        return None
    doc["_id"] = str(doc["_id"])
    return UserRecord.model_validate(doc)


class UserRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["users"]

    async def ensure_indexes(self):
        await self.collection.create_index([("email", 1)], unique=True)
        await self.collection.create_index([("email_verification_token", 1)], sparse=True)

    async def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        if not ObjectId.is_valid(user_id):
            return None
        return _to_record(await self.collection.find_one({"_id": ObjectId(user_id)}))

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        return _to_record(await self.collection.find_one({"email": email.strip().lower()}))

    async def find_by_verification_token(self, token: str) -> Optional[UserRecord]:
        return _to_record(await self.collection.find_one({"email_verification_token": token}))

    async def create(self, user: UserRecord) -> UserRecord:
        try:
            result = await self.collection.insert_one(user.to_mongo())
        except DuplicateKeyError:
            raise ValidationError("User with this email already exists")
        user.id = str(result.inserted_id)
        return user

    async def save(self, user: UserRecord) -> UserRecord:
        await self.collection.replace_one({"_id": ObjectId(user.id)}, user.to_mongo())
        return user
