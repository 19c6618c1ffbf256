"""Blob storage for story illustrations in Cloudflare R2"""

import asyncio
import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(Exception):
    """Raised when an upload to the blob store fails"""


class StorageService:
    """
    Upload-by-path blob store backed by R2 (S3 API).

    Uploads are idempotent upserts: writing the same path again replaces the object.
    """

    def __init__(self):
        self.account_id = os.getenv("R2_ACCOUNT_ID")
        self.access_key = os.getenv("R2_ACCESS_KEY_ID")
        self.secret_key = os.getenv("R2_SECRET_ACCESS_KEY")
        self.bucket_name = os.getenv("R2_BUCKET_NAME", "story-illustrations")
        self.endpoint = os.getenv("R2_ENDPOINT")
        self.public_base_url = os.getenv("R2_PUBLIC_BASE_URL", "https://images.example.com").rstrip("/")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not all([self.access_key, self.secret_key, self.endpoint]):
                raise StorageError("Missing R2 configuration. Check environment variables.")
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                config=Config(signature_version="s3v4"),
                region_name="auto",  # R2 uses 'auto' for region
            )
        return self._client

    async def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        """
        Upload bytes to a path, replacing any existing object.

        Returns:
            Public URL of the stored object
        """
        client = self.client
        try:
            # boto3 is blocking; keep the event loop free while batches upload
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket_name,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000",
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e

        print(f"✅ STORAGE: Uploaded {len(data)} bytes to {path}", flush=True)
        return self.public_url(path)

    def public_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return f"{self.public_base_url}/{path.lstrip('/')}"


# Global instance
storage_service = StorageService()
