"""Project-wide constants (size units, default thresholds, stream sizes)."""

KIB: int = 1024
MIB: int = 1024 * KIB
GIB: int = 1024 * MIB

STREAM_PIECE_SIZE: int = 64 * KIB  # read size for hashing and sniffing
MAGIC_HEADER_SIZE: int = 16

MAX_FILE_SIZE_BYTES: int = 1 * GIB
MAX_FILENAME_LENGTH: int = 255
LARGE_FILE_WARNING_BYTES: int = 100 * MIB

CHUNK_SIZE_BYTES: int = 50 * MIB
COMPRESSION_THRESHOLD_BYTES: int = 1 * MIB
COMPRESSION_BENEFIT_RATIO: float = 0.9

SMALL_FILE_CEILING_BYTES: int = 10 * MIB
LARGE_FILE_CEILING_BYTES: int = 100 * MIB
CRITICAL_SIZE_CEILING_BYTES: int = 200 * MIB

ROLE_PRIMARY = "primary"
ROLE_BACKUP = "backup"
