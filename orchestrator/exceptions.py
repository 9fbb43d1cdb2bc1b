"""Custom exception classes for the orchestrator."""

from typing import Dict, List, Optional


class StrataError(Exception):
    """
    Base exception class for all orchestrator errors.
    """
    code = "INTERNAL_ERROR"


class ValidationError(StrataError):
    """
    Raised when an upload fails validation. Carries every rejection reason.
    """
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = list(reasons or [])


class TransformError(StrataError):
    """
    Raised when a compression, encryption or chunking stage fails.
    """
    code = "TRANSFORM_FAILED"


class BackendUnavailableError(StrataError):
    """
    Raised when no healthy backend can accept a placement.
    """
    code = "BACKEND_UNAVAILABLE"


class UploadFailedError(StrataError):
    """
    Raised when the primary and any failover backend both rejected a blob.
    """
    code = "UPLOAD_FAILED"

    def __init__(self, message: str, causes: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.causes = dict(causes or {})


class IntegrityError(StrataError):
    """
    Raised when stored bytes do not match their recorded hash.
    """
    code = "INTEGRITY_ERROR"


class NotFoundError(StrataError):
    """
    Raised when a requested file record does not exist.
    """
    code = "FILE_NOT_FOUND"


class RetrievalFailedError(StrataError):
    """
    Raised when every placement of a file failed to produce verified bytes.
    """
    code = "RETRIEVAL_FAILED"

    def __init__(self, message: str, causes: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.causes = dict(causes or {})


class RateLimitError(StrataError):
    """
    Raised when a caller exceeded its request allowance.
    """
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class LedgerSyncError(StrataError):
    """
    Raised by a ledger client when an anchoring attempt fails.
    """
    code = "LEDGER_SYNC_FAILED"


class UnauthorizedAccessError(StrataError):
    """
    Raised when a principal attempts an operation it is not permitted to do.
    """
    code = "UNAUTHORIZED_ACCESS"


class InvalidTokenError(StrataError):
    """
    Raised when an access token or download signature is invalid or expired.
    """
    code = "INVALID_TOKEN"
