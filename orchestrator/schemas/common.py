"""Common Pydantic schemas."""

from typing import Dict, List, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response model."""
    detail: str
    code: str
    reasons: Optional[List[str]] = None
    causes: Optional[Dict[str, str]] = None
