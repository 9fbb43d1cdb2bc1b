"""Multipart upload session driven as an explicit state machine."""

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from backends.base import MultipartStateError, PartReceipt, ProgressCallback, PutResult
from common.checksum import compute_checksum
from common.logging_config import get_logger

if TYPE_CHECKING:
    from backends.base import StorageBackend

logger = get_logger(__name__)


class MultipartState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TRANSITIONS = {
    MultipartState.PENDING: {MultipartState.OPEN},
    MultipartState.OPEN: {MultipartState.PARTS_IN_FLIGHT, MultipartState.ABORTED},
    MultipartState.PARTS_IN_FLIGHT: {MultipartState.COMPLETED, MultipartState.ABORTED},
    MultipartState.COMPLETED: set(),
    MultipartState.ABORTED: set(),
}


class MultipartUpload:
    """
    One multipart session against a backend.

    States move PENDING -> OPEN -> PARTS_IN_FLIGHT -> COMPLETED | ABORTED.
    At most `concurrency` parts are in flight at once. Completion happens only
    after every part has a receipt, and receipts are assembled in ascending
    part-number order regardless of the order they finished in. Any failure,
    timeout or cancellation aborts the session before the error propagates.
    """

    def __init__(
        self,
        backend: "StorageBackend",
        key: str,
        concurrency: int = 3,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.backend = backend
        self.key = key
        self.concurrency = concurrency
        self.progress_callback = progress_callback
        self.upload_id: Optional[str] = None
        self.state = MultipartState.PENDING
        self.receipts: Dict[int, PartReceipt] = {}

    def _transition(self, new_state: MultipartState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise MultipartStateError(
                f"Illegal multipart transition {self.state.value} -> {new_state.value} [key={self.key}]",
                backend_name=self.backend.name,
            )
        self.state = new_state

    async def run(
        self,
        parts: Sequence[bytes],
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> PutResult:
        """Open, upload every part, then complete. Aborts on any failure."""
        await self.open(content_type=content_type, attributes=attributes)
        try:
            receipts = await self.upload_parts(parts)
            return await self.complete(receipts)
        except BaseException as exc:
            await self._abort_after_failure(exc)
            raise

    async def open(
        self,
        content_type: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> str:
        self.upload_id = await self.backend.create_multipart(
            self.key, content_type=content_type, attributes=attributes
        )
        self._transition(MultipartState.OPEN)
        logger.debug(f"Multipart session opened [backend={self.backend.name}] [key={self.key}]")
        return self.upload_id

    async def upload_parts(self, parts: Sequence[bytes]) -> List[PartReceipt]:
        self._transition(MultipartState.PARTS_IN_FLIGHT)
        total = len(parts)
        semaphore = asyncio.Semaphore(self.concurrency)
        completed = 0

        async def upload_one(part_number: int, data: bytes) -> PartReceipt:
            nonlocal completed
            async with semaphore:
                checksum = await asyncio.to_thread(compute_checksum, data)
                receipt = await self.backend.upload_part(
                    self.key, self.upload_id, part_number, data, checksum
                )
            self.receipts[part_number] = receipt
            completed += 1
            if self.progress_callback:
                self.progress_callback(completed, total)
            return receipt

        tasks = [
            asyncio.create_task(upload_one(number, data))
            for number, data in enumerate(parts, start=1)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def complete(self, receipts: Sequence[PartReceipt]) -> PutResult:
        ordered = sorted(receipts, key=lambda receipt: receipt.part_number)
        expected = list(range(1, len(ordered) + 1))
        if [receipt.part_number for receipt in ordered] != expected:
            raise MultipartStateError(
                f"Cannot complete multipart upload with missing parts [key={self.key}]",
                backend_name=self.backend.name,
            )
        if self.state != MultipartState.PARTS_IN_FLIGHT:
            raise MultipartStateError(
                f"Cannot complete multipart upload in state {self.state.value} [key={self.key}]",
                backend_name=self.backend.name,
            )
        result = await self.backend.complete_multipart(self.key, self.upload_id, ordered)
        self._transition(MultipartState.COMPLETED)
        logger.info(
            f"Multipart upload completed [backend={self.backend.name}] [key={self.key}] parts={len(ordered)}"
        )
        return result

    async def abort(self) -> None:
        if self.state in (MultipartState.COMPLETED, MultipartState.ABORTED):
            return
        if self.upload_id is not None:
            await self.backend.abort_multipart(self.key, self.upload_id)
        self.state = MultipartState.ABORTED
        logger.info(f"Multipart upload aborted [backend={self.backend.name}] [key={self.key}]")

    async def _abort_after_failure(self, exc: BaseException) -> None:
        logger.warning(
            f"Multipart upload failed, aborting [backend={self.backend.name}] [key={self.key}]: {exc!r}"
        )
        try:
            await asyncio.shield(self.abort())
        except Exception as abort_error:
            logger.error(
                f"Failed to abort multipart upload [backend={self.backend.name}] [key={self.key}]: {abort_error}",
                exc_info=True,
            )
