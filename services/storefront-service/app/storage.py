import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import TransientError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class S3BlobStore:
    """Deliverable storage on S3 or any S3-compatible endpoint (e.g. R2)."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.blob_endpoint_url,
            region_name=settings.blob_region or ("auto" if settings.blob_endpoint_url else None),
            config=Config(
                signature_version="s3v4",
                connect_timeout=settings.gateway_timeout_seconds,
                read_timeout=settings.gateway_timeout_seconds,
                retries={"max_attempts": 2},
            ),
        )
        return cls(client, settings.blob_bucket)

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return False
            logger.error("Blob head failed key=%s code=%s", key, code)
            raise TransientError("Storage unavailable")
        except BotoCoreError as e:
            logger.error("Blob head failed key=%s error=%r", key, e)
            raise TransientError("Storage unavailable")

    def read_url(self, key: str, expires_in: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def write_url(self, key: str, expires_in: int, content_type: str) -> str:
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )
