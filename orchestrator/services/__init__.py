"""Service layer for business logic."""

from orchestrator.services.storage_service import RetrievedFile, StorageService

__all__ = [
    "RetrievedFile",
    "StorageService",
]
