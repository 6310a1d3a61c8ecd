# r2_client.py
import uuid
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from errors import UploadError
from settings import Settings

# --- R2 / S3 asset store -----------------------------------------------------

# NOTE:
# - endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
#   NOT the public/dev domain. Region must be "auto" and path-style is required.


def _normalize_endpoint(endpoint: Optional[str], bucket: Optional[str]) -> Optional[str]:
    if not endpoint:
        return endpoint
    # Trailing slashes or a bucket suffix are common copy/paste mistakes
    endpoint = endpoint.rstrip("/")
    if bucket and endpoint.endswith(f"/{bucket}"):
        endpoint = endpoint[: -(len(bucket) + 1)]
    return endpoint


def _safe_key(file_name: str) -> str:
    """Unique object key under 'captures/' that keeps the original extension."""
    suffix = ""
    if "." in file_name:
        suffix = "." + file_name.rsplit(".", 1)[1].lower()
    return f"captures/{uuid.uuid4().hex}{suffix}"


class R2AssetStore:
    """Uploads captured images to an S3-compatible bucket and returns a fetchable URL.

    Used by ``JobClient.upload`` when ``STORAGE=r2``; the job API only needs a
    URL it can read, so any public or presigned location works.
    """

    def __init__(self, settings: Settings, s3_client=None):
        self.bucket = settings.r2_bucket
        self.public_base = (settings.r2_public_base or "").rstrip("/")
        self._s3 = s3_client or boto3.client(
            "s3",
            endpoint_url=_normalize_endpoint(settings.r2_endpoint_url, self.bucket),
            aws_access_key_id=settings.r2_access_key_id or None,
            aws_secret_access_key=settings.r2_secret_access_key or None,
            region_name="auto",
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def public_or_signed_url(self, key: str, expires: int = 3600) -> str:
        """
        Prefer the configured public base (custom domain / r2.dev) for read URLs.
        Fall back to a presigned GET URL if no public base is set.
        """
        if self.public_base:
            return f"{self.public_base}/{key.lstrip('/')}"
        return self._s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires,
        )

    def upload_bytes_and_get_url(
        self,
        data: bytes,
        *,
        file_name: str,
        content_type: str = "image/jpeg",
        expires: int = 3600,
    ) -> str:
        key = _safe_key(file_name)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            logger.error(f"R2 upload of {key} failed: {e}")
            raise UploadError(f"R2 upload failed: {e}", status=status, details=e.response.get("Error"))
        except BotoCoreError as e:
            logger.error(f"R2 upload of {key} failed: {e}")
            raise UploadError(f"R2 upload failed: {e}", details=str(e))
        return self.public_or_signed_url(key, expires=expires)
