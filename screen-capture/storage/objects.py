from abc import ABC, abstractmethod
from typing import Optional

import boto3

from capture.core import AWS_REGION, CDN_URL, S3_BUCKET, S3_ENDPOINT, logger

CACHE_CONTROL = "public, max-age=31536000"


class ObjectStorage(ABC):
    """Object storage collaborator for capture renditions."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return the public URI."""
        pass


class S3ObjectStorage(ObjectStorage):
    """
    S3-compatible storage (AWS S3, Cloudflare R2 via endpoint_url).
    The client is constructed once by the owner and injected, never created per call.
    """

    def __init__(self, client, bucket: str, public_base_url: str = ""):
        if not bucket:
            raise ValueError("bucket is required")
        self._client = client
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "S3ObjectStorage":
        client = boto3.client("s3", region_name=AWS_REGION, endpoint_url=S3_ENDPOINT or None)
        return cls(client, S3_BUCKET, CDN_URL)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl=CACHE_CONTROL,
        )
        logger.info(f"[STORAGE] Uploaded {len(data)} bytes to s3://{self._bucket}/{key}")
        return self.public_uri(key)

    def public_uri(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"s3://{self._bucket}/{key}"


def rendition_key(site_id: str, page_id: str, capture_id: str, filename: str,
                  prefix: Optional[str] = "screenshots") -> str:
    """screenshots/{site}/{page}/{capture}/{filename}; one folder per capture keeps history immutable."""
    parts = [p for p in (prefix, site_id, page_id, capture_id, filename) if p]
    return "/".join(parts)
