"""Utility helper functions for the orchestrator."""

import uuid
from datetime import datetime, timezone
from typing import List, Optional


def generate_uuid() -> str:
    """
    Generate a new UUID4 string.

    Returns:
        UUID4 string
    """
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format.

    Returns:
        Current UTC timestamp as ISO format string
    """
    return utcnow().isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def parse_tags(tags_str: Optional[str]) -> List[str]:
    """
    Parse comma-separated tags string into list.

    Args:
        tags_str: Comma-separated tags (e.g., "tag1,tag2,tag3")

    Returns:
        List of trimmed tag strings
    """
    if not tags_str:
        return []
    return [tag.strip() for tag in tags_str.split(',') if tag.strip()]
