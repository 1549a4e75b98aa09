# sourcing/services/storage.py
from typing import Optional

import boto3
from botocore.config import Config
from sourcing.config import settings
import structlog

logger = structlog.get_logger()


class R2Client:
    def __init__(self):
        self.s3 = boto3.client(
            "s3",
            endpoint_url=settings.R2_ENDPOINT_URL or None,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            config=Config(signature_version="s3v4"),
            region_name="auto",
        )
        self.bucket = settings.R2_BUCKET_NAME

    def get_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )


_r2_client: Optional[R2Client] = None


def get_r2_client() -> R2Client:
    global _r2_client
    if _r2_client is None:
        _r2_client = R2Client()
    return _r2_client


def resolve_url(object_key: Optional[str], ttl: Optional[int] = None) -> Optional[str]:
    """Signed download link for a stored object; None when it cannot be produced."""
    if not object_key:
        return None
    try:
        return get_r2_client().get_presigned_url(
            object_key, expires_in=ttl or settings.RECEIPT_URL_TTL_SECONDS
        )
    except Exception as exc:
        logger.warning("r2_presign_failed", key=object_key, error=str(exc))
        return None
