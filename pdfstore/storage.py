import asyncio
import logging
import os
from abc import ABC, abstractmethod
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from itsdangerous import URLSafeTimedSerializer

from .errors import UpstreamError

logger = logging.getLogger(__name__)

R2_ENDPOINT = os.environ.get("R2_ENDPOINT", "")
R2_ACCESS_KEY_ID = os.environ.get("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.environ.get("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET = os.environ.get("R2_BUCKET", "")
STATIC_FILES_URL = os.environ.get(
    "STATIC_FILES_URL", "http://localhost:8000/files"
)
STORAGE_BACKEND = os.getenv(
    "STORAGE_BACKEND", "s3" if R2_BUCKET else "static"
).lower()


class SignedUrlProvider(ABC):
    @abstractmethod
    async def signed_url(self, key: str, ttl_seconds: int) -> str: ...


class S3Storage(SignedUrlProvider):
    """Presigned GET urls on an S3-compatible bucket (Cloudflare R2)."""

    def __init__(self, bucket: str, endpoint_url: str = None,
                 access_key_id: str = None, secret_access_key: str = None):
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )

    def _presign(self, key: str, ttl_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )

    async def signed_url(self, key, ttl_seconds):
        try:
            # botocore is sync; presigning is local but may load credentials
            return await asyncio.to_thread(self._presign, key, ttl_seconds)
        except (BotoCoreError, ClientError) as e:
            logger.error("presigning %s failed: %s", key, e)
            raise UpstreamError(f"could not sign download url: {e}") from e


class StaticUrlStorage(SignedUrlProvider):
    """Development signer: a token-bearing url under STATIC_FILES_URL."""

    def __init__(self, base_url: str, secret: str):
        self.base_url = base_url.rstrip("/")
        self.serializer = URLSafeTimedSerializer(secret, salt="downloads")

    async def signed_url(self, key, ttl_seconds):
        token = self.serializer.dumps({"key": key, "ttl": ttl_seconds})
        return f"{self.base_url}/{quote(key)}?token={token}"


def new_storage(secret: str) -> SignedUrlProvider:
    if STORAGE_BACKEND == "s3":
        return S3Storage(
            R2_BUCKET, R2_ENDPOINT, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY
        )
    return StaticUrlStorage(STATIC_FILES_URL, secret)
