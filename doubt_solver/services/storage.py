import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from doubt_solver.config import AWS_ACCESS_KEY, AWS_BUCKET, AWS_REGION, AWS_SECRET_KEY, S3_KEY_PREFIX
from doubt_solver.errors import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    key: str
    url: str
    filename: str
    size: int
    content_type: Optional[str]


class S3Storage:
    def __init__(self, bucket: Optional[str] = AWS_BUCKET, region: str = AWS_REGION, client=None, prefix: str = S3_KEY_PREFIX):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=AWS_ACCESS_KEY,
            aws_secret_access_key=AWS_SECRET_KEY,
            region_name=region,
        )

    def _object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _put(self, user_id: str, file_data: bytes, original_filename: str, content_type: Optional[str]) -> StoredFile:
        ext = os.path.splitext(original_filename)[1]
        key = f"{self.prefix}/{user_id}/{uuid4()}{ext}"
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=file_data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed: {e}")
        return StoredFile(
            key=key,
            url=self._object_url(key),
            filename=original_filename,
            size=len(file_data),
            content_type=content_type,
        )

    async def upload(self, user_id: str, file_data: bytes, original_filename: str, content_type: Optional[str]) -> StoredFile:
        return await asyncio.to_thread(self._put, user_id, file_data, original_filename, content_type)

    def _delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed: {e}")

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        """
        Generate a pre-signed URL to read a private S3 object.

        :param key: Full S3 key of the file (e.g., 'doubt-solver/user_xxx/abc.pdf')
        :param expires_in: Expiry time in seconds (default 1 hour)
        """
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise StorageError(f"Failed to generate presigned URL: {e}")
