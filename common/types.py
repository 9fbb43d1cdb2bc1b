"""Shared data type definitions (ChunkDescriptor)."""

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class ChunkDescriptor:
    """
    Byte range of one fixed-size chunk of a stored blob.

    `end` is exclusive, so `size_bytes == end - start`.
    """
    index: int
    start: int
    end: int
    size_bytes: int
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkDescriptor":
        return cls(
            index=data["index"],
            start=data["start"],
            end=data["end"],
            size_bytes=data["size_bytes"],
            checksum=data["checksum"],
        )
