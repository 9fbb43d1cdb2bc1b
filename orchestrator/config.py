"""Configuration settings for the orchestrator service."""

import os

from common.constants import (
    CHUNK_SIZE_BYTES,
    COMPRESSION_BENEFIT_RATIO,
    COMPRESSION_THRESHOLD_BYTES,
    CRITICAL_SIZE_CEILING_BYTES,
    LARGE_FILE_CEILING_BYTES,
    MAX_FILE_SIZE_BYTES,
    MAX_FILENAME_LENGTH,
    MIB,
    SMALL_FILE_CEILING_BYTES,
)


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_PATH = os.environ.get("STRATA_DATABASE_PATH", "/app/data/metadata.db")

ORCHESTRATOR_HOST = os.environ.get("STRATA_HOST", "0.0.0.0")

ORCHESTRATOR_PORT = int(os.environ.get("STRATA_PORT", "8000"))

# Backends
PRIMARY_BACKEND_NAME = os.environ.get("STRATA_PRIMARY_BACKEND_NAME", "primary")
PRIMARY_BACKEND_URL = os.environ.get("STRATA_PRIMARY_BACKEND_URL", "file:///app/data/primary")
ARCHIVAL_BACKEND_NAME = os.environ.get("STRATA_ARCHIVAL_BACKEND_NAME", "archival")
ARCHIVAL_BACKEND_URL = os.environ.get("STRATA_ARCHIVAL_BACKEND_URL", "file:///app/data/archival")
MULTIPART_PART_SIZE = int(os.environ.get("STRATA_MULTIPART_PART_SIZE", str(50 * MIB)))
MULTIPART_CONCURRENCY = int(os.environ.get("STRATA_MULTIPART_CONCURRENCY", "3"))
UPLOAD_TIMEOUT_SECONDS = float(os.environ.get("STRATA_UPLOAD_TIMEOUT_SECONDS", "300"))

# Placement
SMALL_FILE_CEILING = int(os.environ.get("STRATA_SMALL_FILE_CEILING", str(SMALL_FILE_CEILING_BYTES)))
LARGE_FILE_CEILING = int(os.environ.get("STRATA_LARGE_FILE_CEILING", str(LARGE_FILE_CEILING_BYTES)))
CRITICAL_SIZE_CEILING = int(os.environ.get("STRATA_CRITICAL_SIZE_CEILING", str(CRITICAL_SIZE_CEILING_BYTES)))
FAILOVER_ENABLED = _flag("STRATA_FAILOVER_ENABLED", "true")
HEALTH_CHECK_INTERVAL = int(os.environ.get("STRATA_HEALTH_CHECK_INTERVAL", "300"))
HEALTH_CHECK_TIMEOUT = float(os.environ.get("STRATA_HEALTH_CHECK_TIMEOUT", "10"))

# Validation
MAX_FILE_SIZE = int(os.environ.get("STRATA_MAX_FILE_SIZE", str(MAX_FILE_SIZE_BYTES)))
FILENAME_MAX_LENGTH = int(os.environ.get("STRATA_MAX_FILENAME_LENGTH", str(MAX_FILENAME_LENGTH)))
STRICT_TYPE_CHECK = _flag("STRATA_STRICT_TYPE_CHECK", "false")

# Transform pipeline
CHUNK_SIZE = int(os.environ.get("STRATA_CHUNK_SIZE", str(CHUNK_SIZE_BYTES)))
COMPRESSION_THRESHOLD = int(os.environ.get("STRATA_COMPRESSION_THRESHOLD", str(COMPRESSION_THRESHOLD_BYTES)))
COMPRESSION_RATIO_LIMIT = float(os.environ.get("STRATA_COMPRESSION_RATIO_LIMIT", str(COMPRESSION_BENEFIT_RATIO)))
COMPRESSION_LEVEL = int(os.environ.get("STRATA_COMPRESSION_LEVEL", "6"))
ENABLE_DEDUPLICATION = _flag("STRATA_ENABLE_DEDUPLICATION", "true")
ENABLE_COMPRESSION = _flag("STRATA_ENABLE_COMPRESSION", "true")
ENABLE_ENCRYPTION = _flag("STRATA_ENABLE_ENCRYPTION", "true")
ENCRYPT_BY_DEFAULT = _flag("STRATA_ENCRYPT_BY_DEFAULT", "false")
ENABLE_CHUNKING = _flag("STRATA_ENABLE_CHUNKING", "true")

# Metadata store
MAX_VERSIONS = int(os.environ.get("STRATA_MAX_VERSIONS", "10"))
KEY_WRAPPING_SECRET = os.environ.get("STRATA_KEY_WRAPPING_SECRET", "dev-only-key-wrapping-secret")

# Ledger sync
LEDGER_SYNC_ENABLED = _flag("STRATA_LEDGER_SYNC_ENABLED", "true")
LEDGER_SYNC_INTERVAL = int(os.environ.get("STRATA_LEDGER_SYNC_INTERVAL", "30"))
LEDGER_BATCH_SIZE = int(os.environ.get("STRATA_LEDGER_BATCH_SIZE", "5"))
LEDGER_MAX_ATTEMPTS = int(os.environ.get("STRATA_LEDGER_MAX_ATTEMPTS", "3"))

# Orphaned placement cleanup
ORPHAN_CLEANUP_INTERVAL = int(os.environ.get("STRATA_ORPHAN_CLEANUP_INTERVAL", str(6 * 3600)))
ORPHAN_MAX_ATTEMPTS = int(os.environ.get("STRATA_ORPHAN_MAX_ATTEMPTS", "10"))

# Metrics
METRICS_ROLLUP_INTERVAL = int(os.environ.get("STRATA_METRICS_ROLLUP_INTERVAL", "300"))

# Security
JWT_SECRET = os.environ.get("STRATA_JWT_SECRET", "dev-only-jwt-secret-change-me-0123456789")
JWT_ALGORITHM = os.environ.get("STRATA_JWT_ALGORITHM", "HS256")
JWT_EXPIRY_SECONDS = int(os.environ.get("STRATA_JWT_EXPIRY_SECONDS", "3600"))
JWT_ISSUER = os.environ.get("STRATA_JWT_ISSUER", "strata-files")
DOWNLOAD_URL_EXPIRY_SECONDS = int(os.environ.get("STRATA_DOWNLOAD_URL_EXPIRY_SECONDS", "3600"))
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("STRATA_RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("STRATA_RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_LOCKOUT_SECONDS = int(os.environ.get("STRATA_RATE_LIMIT_LOCKOUT_SECONDS", "900"))
