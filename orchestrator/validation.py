"""Upload validation: size, filename, type policy, magic bytes and content hash."""

import io
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import BinaryIO, Iterable, List, Optional, Sequence, Union

from common.checksum import IncrementalChecksumCalculator
from common.constants import (
    LARGE_FILE_WARNING_BYTES,
    MAGIC_HEADER_SIZE,
    MAX_FILE_SIZE_BYTES,
    MAX_FILENAME_LENGTH,
    STREAM_PIECE_SIZE,
)
from common.logging_config import get_logger

logger = get_logger(__name__)

DENIED_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".vbe", ".js", ".jse",
    ".jar", ".msi", ".msp", ".hta", ".cpl", ".dll", ".ocx", ".sys", ".drv",
})

SUSPICIOUS_NAME_PATTERNS = (
    "virus", "malware", "trojan", "backdoor", "exploit", "payload", "keygen",
)

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

# extension -> signature prefix
MAGIC_SIGNATURES = {
    "jpg": (b"\xff\xd8\xff",),
    "jpeg": (b"\xff\xd8\xff",),
    "png": (b"\x89PNG",),
    "gif": (b"GIF8",),
    "pdf": (b"%PDF",),
    "zip": (b"PK\x03\x04",),
    "mp3": (b"ID3", b"\xff\xfb", b"\xff\xf3"),
    "exe": (b"MZ",),
}

MAGIC_MIME_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "pdf": "application/pdf",
    "zip": "application/zip",
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
    "exe": "application/x-msdownload",
}


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    detected_type: Optional[str] = None
    mime_type: str = "application/octet-stream"
    hash: Optional[str] = None
    size_bytes: int = 0


def file_extension(name: str) -> str:
    """Lower-cased final extension including the dot, or ''."""
    return PurePosixPath(name).suffix.lower()


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """
    Make a filename safe for use inside an object key.

    Replaces anything outside [A-Za-z0-9._-] with '_', collapses runs of
    underscores and trims the stem so the whole name fits in `max_length`.
    """
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", name)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_.") or "file"
    if len(cleaned) > max_length:
        path = PurePosixPath(cleaned)
        suffix = path.suffix[:max_length // 4]
        cleaned = path.stem[:max_length - len(suffix)] + suffix
    return cleaned


def detect_type_from_header(header: bytes) -> Optional[str]:
    """Identify a file type from its leading bytes, or None."""
    if header[4:8] == b"ftyp":
        return "mp4"
    for file_type, signatures in MAGIC_SIGNATURES.items():
        if file_type == "jpeg":
            continue
        if any(header.startswith(signature) for signature in signatures):
            return file_type
    return None


def guess_mime_type(name: str, detected_type: Optional[str] = None) -> str:
    if detected_type and detected_type in MAGIC_MIME_TYPES:
        return MAGIC_MIME_TYPES[detected_type]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


class FileValidator:
    """
    Validates one upload. Pure: holds only configuration.

    The content is consumed as a stream of STREAM_PIECE_SIZE pieces, so the
    hash is computed without the file ever being resident in full.
    """

    def __init__(
        self,
        max_file_size: int = MAX_FILE_SIZE_BYTES,
        max_filename_length: int = MAX_FILENAME_LENGTH,
        denied_extensions: Iterable[str] = DENIED_EXTENSIONS,
        suspicious_patterns: Sequence[str] = SUSPICIOUS_NAME_PATTERNS,
        piece_size: int = STREAM_PIECE_SIZE,
    ):
        self.max_file_size = max_file_size
        self.max_filename_length = max_filename_length
        self.denied_extensions = frozenset(ext.lower() for ext in denied_extensions)
        self.suspicious_patterns = tuple(p.lower() for p in suspicious_patterns)
        self.piece_size = piece_size

    def validate(
        self,
        stream: Union[BinaryIO, bytes],
        declared_name: str,
        size_hint: Optional[int] = None,
        allowed_types: Optional[Sequence[str]] = None,
        strict: bool = False,
    ) -> ValidationResult:
        if isinstance(stream, (bytes, bytearray, memoryview)):
            stream = io.BytesIO(bytes(stream))

        reasons = self.check_filename(declared_name, allowed_types)
        warnings = self.filename_warnings(declared_name)

        if size_hint is not None and size_hint > self.max_file_size:
            reasons.append(
                f"File size {size_hint} exceeds maximum allowed size {self.max_file_size}"
            )
            return ValidationResult(accepted=False, reasons=reasons, warnings=warnings, size_bytes=size_hint)

        calculator = IncrementalChecksumCalculator()
        header = b""
        while True:
            piece = stream.read(self.piece_size)
            if not piece:
                break
            if len(header) < MAGIC_HEADER_SIZE:
                header += piece[:MAGIC_HEADER_SIZE - len(header)]
            calculator.update(piece)
            if calculator.bytes_seen > self.max_file_size:
                reasons.append(f"File exceeds maximum allowed size {self.max_file_size}")
                return ValidationResult(
                    accepted=False, reasons=reasons, warnings=warnings, size_bytes=calculator.bytes_seen
                )

        size = calculator.bytes_seen
        if size == 0:
            reasons.append("File is empty")

        if size > LARGE_FILE_WARNING_BYTES:
            warnings.append("Large file may take longer to process")

        detected_type = detect_type_from_header(header)
        extension = file_extension(declared_name).lstrip(".")
        mismatch = self._header_mismatch(header, extension, detected_type) if size else None
        if mismatch:
            if strict:
                reasons.append(mismatch)
            else:
                warnings.append(mismatch)

        result = ValidationResult(
            accepted=not reasons,
            reasons=reasons,
            warnings=warnings,
            detected_type=detected_type or (extension or None),
            mime_type=guess_mime_type(declared_name, detected_type),
            hash=calculator.finalize(),
            size_bytes=size,
        )
        if not result.accepted:
            logger.info(f"Validation rejected [name={declared_name}]: {'; '.join(reasons)}")
        return result

    def check_filename(self, name: str, allowed_types: Optional[Sequence[str]] = None) -> List[str]:
        reasons: List[str] = []
        if not name or not name.strip():
            return ["Filename is required"]
        if len(name) > self.max_filename_length:
            reasons.append(f"Filename too long (max {self.max_filename_length} characters)")
        if INVALID_FILENAME_CHARS.search(name):
            reasons.append("Filename contains invalid characters")

        extension = file_extension(name)
        if extension in self.denied_extensions:
            reasons.append(f"File type {extension} is not allowed for security reasons")

        lowered = name.lower()
        for pattern in self.suspicious_patterns:
            if pattern in lowered:
                reasons.append(f"Filename contains suspicious pattern: {pattern}")
                break

        if allowed_types and "*" not in allowed_types:
            allowed = {t.lower().lstrip(".") for t in allowed_types}
            if extension.lstrip(".") not in allowed:
                reasons.append(
                    f"File type {extension or '(none)'} is not allowed. Allowed types: {', '.join(sorted(allowed))}"
                )
        return reasons

    def filename_warnings(self, name: str) -> List[str]:
        warnings: List[str] = []
        if not name:
            return warnings
        if len(PurePosixPath(name).suffixes) > 1:
            warnings.append("File has multiple extensions")
        if name.startswith("."):
            warnings.append("Hidden file detected")
        return warnings

    @staticmethod
    def _header_mismatch(header: bytes, extension: str, detected_type: Optional[str]) -> Optional[str]:
        """
        Compare the header with the signature the extension promises.

        Extensions without a known signature are only flagged when the
        content is an executable.
        """
        if extension == "mp4":
            matches = header[4:8] == b"ftyp"
        elif extension in MAGIC_SIGNATURES:
            matches = any(header.startswith(signature) for signature in MAGIC_SIGNATURES[extension])
        elif detected_type == "exe":
            return f"File content looks like an executable but extension is .{extension or '(none)'}"
        else:
            return None
        if not matches:
            return f"File header doesn't match expected type .{extension}"
        return None
