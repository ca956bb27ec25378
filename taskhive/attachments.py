"""Resolve stored attachment references to time-limited download URLs."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import boto3
from botocore.config import Config

from .config import settings


@runtime_checkable
class AttachmentResolver(Protocol):
    """Maps an object-storage key to a download URL that expires."""

    async def download_url(self, storage_key: str) -> str:
        raise NotImplementedError


class S3PresignedUrlResolver:
    """Presigned ``GetObject`` URLs against an S3-compatible bucket.

    Presigning is computed locally from the credentials; no request reaches
    the store until the URL is fetched.
    """

    def __init__(self, client: Any, *, bucket: str, ttl_seconds: int = 3600) -> None:
        self._client = client
        self._bucket = bucket
        self._ttl = ttl_seconds

    @classmethod
    def from_settings(cls) -> S3PresignedUrlResolver:
        client = boto3.client(
            "s3",
            endpoint_url=settings.storage_endpoint,
            aws_access_key_id=settings.storage_access_key,
            aws_secret_access_key=settings.storage_secret_key,
            region_name=settings.storage_region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        return cls(client, bucket=settings.storage_bucket, ttl_seconds=settings.attachment_url_ttl)

    async def download_url(self, storage_key: str) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": storage_key},
            ExpiresIn=self._ttl,
        )


def default_resolver() -> AttachmentResolver | None:
    """Resolver from settings, or None when storage is not configured."""
    if not settings.storage_configured:
        return None
    return S3PresignedUrlResolver.from_settings()


async def resolve_attachments(context: dict[str, Any], resolver: AttachmentResolver) -> dict[str, Any]:
    """Rewrite ``storage_key`` attachments in place; inline ones pass through."""
    attachments = context.get("attachments")
    if not isinstance(attachments, list):
        return context

    resolved: list[Any] = []
    for att in attachments:
        if isinstance(att, dict) and att.get("storage_key"):
            resolved.append(
                {
                    "filename": att.get("filename"),
                    "mime_type": att.get("mime_type"),
                    "url": await resolver.download_url(att["storage_key"]),
                }
            )
        else:
            resolved.append(att)
    context["attachments"] = resolved
    return context
