"""Transform pipeline: deduplicate, compress, encrypt and chunk an upload."""

import asyncio
import gzip
import time
import zlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

from common.checksum import checksum_pieces, compute_checksum
from common.constants import CHUNK_SIZE_BYTES, COMPRESSION_BENEFIT_RATIO, COMPRESSION_THRESHOLD_BYTES
from common.logging_config import get_logger
from common.types import ChunkDescriptor
from orchestrator.crypto import decrypt_blob, encrypt_blob, generate_key
from orchestrator.dedup_index import DeduplicationIndex
from orchestrator.exceptions import TransformError
from orchestrator.types import ProcessingProvenance

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransformOptions:
    compress: bool = True
    encrypt: bool = False
    chunk: bool = True
    allow_dedup: bool = True
    encryption_key: Optional[bytes] = None
    owner: str = ""


@dataclass(frozen=True)
class TransformResult:
    deduplicated: bool
    existing_file_id: Optional[str] = None
    final_blob: bytes = b""
    final_hash: Optional[str] = None
    provenance: Optional[ProcessingProvenance] = None
    encryption_key: Optional[bytes] = None

    def parts(self) -> List[bytes]:
        """Slices of the final blob, one per chunk descriptor."""
        if self.provenance is None or not self.provenance.chunked:
            return [self.final_blob]
        return [self.final_blob[c.start:c.end] for c in self.provenance.chunk_manifest]


def describe_chunks(blob: bytes, chunk_size: int) -> Tuple[ChunkDescriptor, ...]:
    """Fixed-size chunk descriptors covering `blob`; the last may be shorter."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    descriptors = []
    for index, start in enumerate(range(0, len(blob), chunk_size)):
        end = min(start + chunk_size, len(blob))
        descriptors.append(ChunkDescriptor(
            index=index,
            start=start,
            end=end,
            size_bytes=end - start,
            checksum=compute_checksum(blob[start:end]),
        ))
    return tuple(descriptors)


class TransformPipeline:
    """
    Runs the fixed stage order: deduplication, compression, encryption,
    chunking. A stage runs only when both the pipeline configuration and
    the per-upload options enable it. Any failure raises TransformError and
    nothing is persisted.
    """

    def __init__(
        self,
        dedup_index: Optional[DeduplicationIndex] = None,
        chunk_size: int = CHUNK_SIZE_BYTES,
        compression_threshold: int = COMPRESSION_THRESHOLD_BYTES,
        compression_ratio_limit: float = COMPRESSION_BENEFIT_RATIO,
        compression_level: int = 6,
        enable_deduplication: bool = True,
        enable_compression: bool = True,
        enable_encryption: bool = True,
        enable_chunking: bool = True,
    ):
        self.dedup_index = dedup_index
        self.chunk_size = chunk_size
        self.compression_threshold = compression_threshold
        self.compression_ratio_limit = compression_ratio_limit
        self.compression_level = compression_level
        self.enable_deduplication = enable_deduplication and dedup_index is not None
        self.enable_compression = enable_compression
        self.enable_encryption = enable_encryption
        self.enable_chunking = enable_chunking

    async def transform(self, data: bytes, content_hash: str, options: TransformOptions) -> TransformResult:
        started = time.perf_counter()

        if self.enable_deduplication and options.allow_dedup:
            existing = await self.dedup_index.lookup(options.owner, content_hash)
            if existing:
                logger.info(f"Duplicate content [hash={content_hash[:12]}] matches [file_id={existing}]")
                return TransformResult(deduplicated=True, existing_file_id=existing)

        try:
            blob, compressed, ratio = await self._compress(data, options)

            key = None
            if self.enable_encryption and options.encrypt:
                key = options.encryption_key or generate_key()
                blob = await asyncio.to_thread(encrypt_blob, blob, key)

            final_hash = await asyncio.to_thread(compute_checksum, blob)

            manifest: Tuple[ChunkDescriptor, ...] = ()
            chunked = self.enable_chunking and options.chunk and len(blob) > self.chunk_size
            if chunked:
                manifest = await asyncio.to_thread(describe_chunks, blob, self.chunk_size)
                rebuilt = await asyncio.to_thread(
                    checksum_pieces, (blob[c.start:c.end] for c in manifest)
                )
                if rebuilt != final_hash:
                    raise TransformError("Chunk manifest does not reproduce the final hash")
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(f"Transform failed: {e}") from e

        provenance = ProcessingProvenance(
            original_size=len(data),
            final_size=len(blob),
            compressed=compressed,
            compression_ratio=ratio,
            encrypted=key is not None,
            chunked=chunked,
            chunk_manifest=manifest,
            processing_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        logger.debug(
            f"Transformed upload [hash={content_hash[:12]}] size={len(data)}->{len(blob)} "
            f"compressed={compressed} encrypted={key is not None} chunks={len(manifest)}"
        )
        return TransformResult(
            deduplicated=False,
            final_blob=blob,
            final_hash=final_hash,
            provenance=provenance,
            encryption_key=key,
        )

    async def _compress(self, data: bytes, options: TransformOptions) -> Tuple[bytes, bool, Optional[float]]:
        if not (self.enable_compression and options.compress) or len(data) <= self.compression_threshold:
            return data, False, None

        candidate = await asyncio.to_thread(gzip.compress, data, self.compression_level)
        ratio = len(candidate) / len(data)
        if ratio >= self.compression_ratio_limit:
            return data, False, None
        return candidate, True, round(ratio, 4)

    async def restore(self, blob: bytes, provenance: ProcessingProvenance, key: Optional[bytes] = None) -> bytes:
        """Undo encryption then compression."""
        if provenance.encrypted:
            if key is None:
                raise TransformError("Encrypted blob requires its key")
            blob = await asyncio.to_thread(decrypt_blob, blob, key)
        if provenance.compressed:
            try:
                blob = await asyncio.to_thread(gzip.decompress, blob)
            except (OSError, EOFError, zlib.error) as e:
                raise TransformError(f"Decompression failed: {e}") from e
        return blob
