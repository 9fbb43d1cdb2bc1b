"""SHA-256 checksum helpers shared by validation, transforms and backends."""

import hashlib
from typing import Iterable


def compute_checksum(data: bytes) -> str:
    """
    Compute SHA-256 checksum for given data.

    Args:
        data: Bytes to compute checksum for

    Returns:
        Hexadecimal string representation of SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


def checksum_pieces(pieces: Iterable[bytes]) -> str:
    """Hash an ordered sequence of byte pieces as if they were one buffer."""
    calculator = IncrementalChecksumCalculator()
    for piece in pieces:
        calculator.update(piece)
    return calculator.finalize()


class IncrementalChecksumCalculator:
    """
    Calculate SHA-256 checksum incrementally for streaming data.

    Usage:
        calculator = IncrementalChecksumCalculator()
        calculator.update(piece1)
        calculator.update(piece2)
        final_checksum = calculator.finalize()
    """

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._finalized = False
        self.bytes_seen = 0

    def update(self, data: bytes) -> None:
        """
        Update checksum with new data.

        Args:
            data: Bytes to add to checksum calculation

        Raises:
            ValueError: If called after finalize()
        """
        if self._finalized:
            raise ValueError("Cannot update after finalization")
        self._hasher.update(data)
        self.bytes_seen += len(data)

    def finalize(self) -> str:
        """Finalize checksum calculation and return the hex digest."""
        self._finalized = True
        return self._hasher.hexdigest()
