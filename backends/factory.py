"""Builds storage backends from configuration URLs."""

from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from backends.base import StorageBackend
from backends.local_backend import LocalDiskBackend
from backends.memory_backend import MemoryBackend


def create_backend(name: str, url: str, **options: Any) -> StorageBackend:
    """
    Build a backend from a URL.

    Supported forms:
        memory://
        file:///var/lib/strata/primary
        s3://bucket-name?endpoint_url=https://gateway.example&region=us-east-1

    Credentials for s3:// come from the usual AWS environment variables.
    """
    parsed = urlparse(url)
    if parsed.scheme == "memory":
        return MemoryBackend(name, **options)
    if parsed.scheme == "file":
        return LocalDiskBackend(name, Path(parsed.netloc + parsed.path), **options)
    if parsed.scheme == "s3":
        from backends.s3_backend import S3Backend

        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        return S3Backend(
            name,
            bucket=parsed.netloc,
            endpoint_url=query.get("endpoint_url"),
            region_name=query.get("region"),
            **options,
        )
    raise ValueError(f"Unsupported backend URL scheme: {parsed.scheme!r}")
