"""Custom exceptions for structured error handling and propagation.

Every failure the relay knows how to recover from has a type here, so
pipeline stages can map it to the right acknowledgment or user-facing
fallback instead of inspecting error strings.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for categorizing failures."""

    # Inbound parsing / identity errors (1xxx)
    PARSE_RECOVERY_EXHAUSTED = "INBOUND_1001"
    IDENTITY_MISSING = "INBOUND_1002"

    # Transcription errors (2xxx)
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_2001"
    TRANSCRIPTION_TIMED_OUT = "TRANSCRIPTION_2002"

    # Integration errors (3xxx)
    BACKEND_UNREACHABLE = "INTEGRATION_3001"
    BACKEND_TIMEOUT = "INTEGRATION_3002"
    SEND_FAILED = "INTEGRATION_3003"
    STORAGE_ERROR = "INTEGRATION_3004"
    MEDIA_DOWNLOAD_ERROR = "INTEGRATION_3005"

    # Session errors (4xxx)
    CONCURRENT_WRITE = "SESSION_4001"

    # System errors (5xxx)
    INTERNAL_ERROR = "SYSTEM_5001"


class RelayException(Exception):
    """Base exception for all relay errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        """Initialize exception with structured error information.

        Args:
            message: Technical error message (for logging)
            error_code: Standard error code for categorization
            user_message: User-friendly message (never contains internals)
            details: Additional error context
            original_exception: Original exception if wrapping
        """
        super().__init__(message)
        self.error_code = error_code
        self.user_message = user_message or "Ocurrió un error"
        self.details = details or {}
        self.original_exception = original_exception


class ParseRecoveryExhausted(RelayException):
    """Raised when no decoding strategy could recover the wire payload."""

    def __init__(self, strategies: list, **kwargs):
        super().__init__(
            message=f"Could not decode inbound payload (tried: {', '.join(strategies)})",
            error_code=ErrorCode.PARSE_RECOVERY_EXHAUSTED,
            details={"strategies": strategies},
            **kwargs,
        )


class IdentityMissing(RelayException):
    """Raised when no phone/account identifier can be resolved."""

    def __init__(self, source: str = "webhook", **kwargs):
        super().__init__(
            message=f"No identity could be resolved from {source} request",
            error_code=ErrorCode.IDENTITY_MISSING,
            user_message="Falta el identificador de usuario",
            details={"source": source},
            **kwargs,
        )


class TranscriptionFailed(RelayException):
    """Raised when a transcription job ends without usable text."""

    def __init__(self, job_id: Optional[str], reason: str, **kwargs):
        super().__init__(
            message=f"Transcription job {job_id} failed: {reason}",
            error_code=ErrorCode.TRANSCRIPTION_FAILED,
            details={"job_id": job_id, "reason": reason},
            **kwargs,
        )


class TranscriptionTimedOut(RelayException):
    """Raised when a transcription job does not finish within the poll ceiling."""

    def __init__(self, job_id: str, attempts: int, **kwargs):
        super().__init__(
            message=f"Transcription job {job_id} still running after {attempts} polls",
            error_code=ErrorCode.TRANSCRIPTION_TIMED_OUT,
            details={"job_id": job_id, "attempts": attempts},
            **kwargs,
        )


class BackendUnreachable(RelayException):
    """Raised when the generation backend cannot be reached or answers badly."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            message=f"Generation backend unreachable: {reason}",
            error_code=ErrorCode.BACKEND_UNREACHABLE,
            details={"reason": reason},
            **kwargs,
        )


class BackendTimeout(RelayException):
    """Raised when the generation backend exceeds its hard timeout."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(
            message=f"Generation backend timed out after {timeout}s",
            error_code=ErrorCode.BACKEND_TIMEOUT,
            details={"timeout": timeout},
            **kwargs,
        )


class SendFailed(RelayException):
    """Raised when a single outbound fragment could not be delivered."""

    def __init__(self, channel: str, reason: str, **kwargs):
        super().__init__(
            message=f"{channel} send failed: {reason}",
            error_code=ErrorCode.SEND_FAILED,
            details={"channel": channel, "reason": reason},
            **kwargs,
        )


class MediaDownloadException(RelayException):
    """Raised when inbound media bytes cannot be fetched from the provider."""

    def __init__(self, source: str, reason: str, **kwargs):
        super().__init__(
            message=f"Media download failed from {source}: {reason}",
            error_code=ErrorCode.MEDIA_DOWNLOAD_ERROR,
            details={"source": source, "reason": reason},
            **kwargs,
        )


class StorageException(RelayException):
    """Raised when a blob store operation fails."""

    def __init__(self, operation: str, key: str, **kwargs):
        super().__init__(
            message=f"Storage error during {operation} of {key}",
            error_code=ErrorCode.STORAGE_ERROR,
            details={"operation": operation, "key": key},
            **kwargs,
        )


class VersionConflict(StorageException):
    """Raised by a conditional put whose expected version no longer matches."""

    def __init__(self, key: str, **kwargs):
        super().__init__(operation="conditional put", key=key, **kwargs)


class ConcurrentWriteConflict(RelayException):
    """Raised when a conditional history write keeps losing to another writer."""

    def __init__(self, user_id: str, attempts: int, **kwargs):
        super().__init__(
            message=f"History for {user_id} changed concurrently ({attempts} attempts)",
            error_code=ErrorCode.CONCURRENT_WRITE,
            details={"user_id": user_id, "attempts": attempts},
            **kwargs,
        )
