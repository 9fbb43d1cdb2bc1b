"""API routes package."""

from orchestrator.routes.backend_routes import router as backend_router
from orchestrator.routes.file_routes import router as file_router

__all__ = ["backend_router", "file_router"]
