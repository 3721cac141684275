"""Blob storage: photo uploads kept in S3 via boto3."""

import logging
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from photoflow.config import settings

logger = logging.getLogger(__name__)

# Raised by boto3 when the bucket or the network misbehaves; callers treat
# these as retryable upload failures.
StorageError = (BotoCoreError, ClientError)

_s3_client = None


def _get_client():
    """Lazy-init S3 client (supports LocalStack via endpoint override)."""
    global _s3_client
    if _s3_client is None:
        kwargs = {
            "region_name": settings.aws_region,
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
        }
        if settings.aws_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_endpoint_url
        _s3_client = boto3.client("s3", **kwargs)
        # Ensure bucket exists (LocalStack dev)
        try:
            _s3_client.head_bucket(Bucket=settings.aws_s3_bucket)
        except ClientError:
            _s3_client.create_bucket(Bucket=settings.aws_s3_bucket)
            logger.info("Created S3 bucket: %s", settings.aws_s3_bucket)
    return _s3_client


def public_url(key: str) -> str:
    """Public link to a stored object."""
    quoted = quote(key)
    if settings.public_base_url:
        return f"{settings.public_base_url.rstrip('/')}/{quoted}"
    if settings.aws_endpoint_url:
        # Patch for local dev: browser needs to route to localhost, not the Docker service name
        endpoint = settings.aws_endpoint_url.replace("localstack", "localhost").rstrip("/")
        return f"{endpoint}/{settings.aws_s3_bucket}/{quoted}"
    return f"https://{settings.aws_s3_bucket}.s3.{settings.aws_region}.amazonaws.com/{quoted}"


def store(filename: str, data: bytes, content_type: str | None) -> str:
    """Upload ``data`` under ``filename`` and return its public URL."""
    extra = {"ContentType": content_type} if content_type else {}
    _get_client().put_object(
        Bucket=settings.aws_s3_bucket,
        Key=filename,
        Body=data,
        **extra,
    )
    logger.info("Stored upload: %s (%d bytes)", filename, len(data))
    return public_url(filename)


def check_bucket() -> None:
    """Raise if the configured bucket is unreachable."""
    _get_client().head_bucket(Bucket=settings.aws_s3_bucket)
