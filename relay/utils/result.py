"""Result wrapper for pipeline stages with structured error handling."""
from typing import Generic, TypeVar, Optional, Dict, Any, Union
from dataclasses import dataclass
from relay.exceptions import RelayException, ErrorCode

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """Outcome of a pipeline run.

    The HTTP layer picks the acknowledgment and status code from
    ``error_code`` instead of catching exceptions itself.
    """

    success: bool
    data: Optional[T] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    user_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @staticmethod
    def ok(data: T) -> 'Result[T]':
        return Result(success=True, data=data)

    @staticmethod
    def from_exception(exc: Union[RelayException, Exception]) -> 'Result[T]':
        """Failed result carrying the exception's code; unknown exceptions are INTERNAL_ERROR."""
        if isinstance(exc, RelayException):
            return Result(
                success=False,
                error_code=exc.error_code,
                error_message=str(exc),
                user_message=exc.user_message,
                details=exc.details
            )
        return Result(
            success=False,
            error_code=ErrorCode.INTERNAL_ERROR,
            error_message=str(exc),
            user_message="Ocurrió un error interno",
            details={"exception_type": type(exc).__name__}
        )
