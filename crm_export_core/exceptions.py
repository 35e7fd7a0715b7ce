"""
Consolidated exception system with error codes, context, and correlation support.

Every error raised by the credential, billing and export layers derives from
BaseError, which logs itself on construction and carries a stable error code,
an HTTP-style status code and arbitrary context for the job status views.
"""

import threading
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Stable error codes, grouped by the layer that raises them."""

    # System (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONFIGURATION_ERROR = "1003"

    # Validation (2xxx)
    VALIDATION_FAILED = "2000"
    INVALID_FORMAT = "2001"
    MISSING_REQUIRED = "2002"

    # Resources (3xxx)
    NOT_FOUND = "3000"
    CONFLICT = "3002"

    # Billing and job state (4xxx)
    INVALID_STATE_TRANSITION = "4001"
    INSUFFICIENT_FUNDS = "4002"
    CHARGE_FAILED = "4005"

    # Upstream and infrastructure (5xxx)
    QUEUE_ERROR = "5001"
    EXTERNAL_API_ERROR = "5002"
    BATCH_FAILED = "5003"

    # Credentials (6xxx)
    CREDENTIAL_NOT_FOUND = "6000"
    CREDENTIAL_EXPIRED = "6001"
    AUTHENTICATION_FAILED = "6002"


# Context keys kept out of API payloads; they are reported separately
_INTERNAL_CONTEXT_KEYS = frozenset({"cause", "error_id", "correlation_id"})


def _describe_cause(cause: Exception) -> Dict[str, Any]:
    return {
        "type": type(cause).__name__,
        "message": str(cause),
        "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__),
    }


class BaseError(Exception):
    """
    Root of the error hierarchy.

    Construction stamps an error id and the thread's correlation id into
    ``context`` and logs the error once, at a level picked from the status
    code. ``retryable`` tells the export worker whether the queue may
    redeliver the message.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.error_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc).isoformat()

        self.context = dict(context, error_id=self.error_id)
        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id
        if cause is not None:
            self.context["cause"] = _describe_cause(cause)

        self._log_error()

    @property
    def correlation_id(self) -> Optional[str]:
        return self.context.get("correlation_id")

    def public_context(self) -> Dict[str, Any]:
        """Caller-supplied context without the bookkeeping keys."""
        return {k: v for k, v in self.context.items() if k not in _INTERNAL_CONTEXT_KEYS}

    def _log_error(self) -> None:
        # Imported here because the logger module imports config, which imports this module
        from .utils.logger import get_logger

        code = self.error_code.value
        extra: Dict[str, Any] = {
            "error_id": self.error_id,
            "error_code": code,
            "status_code": self.status_code,
            "error_message": self.message,
            "context": {k: v for k, v in self.context.items() if k != "cause"},
        }
        if self.correlation_id:
            extra["correlation_id"] = self.correlation_id

        logger = get_logger()
        if self.status_code >= 500:
            logger.error(f"Error {code}: {self.message}", extra=extra)
        elif self.status_code >= 400:
            logger.warning(f"Client error {code}: {self.message}", extra=extra)
        else:
            logger.info(f"Error {code}: {self.message}", extra=extra)

    def to_dict(
        self, include_cause: bool = False, include_traceback: bool = False
    ) -> Dict[str, Any]:
        """
        Serializable payload for job status views and HTTP responses.

        Args:
            include_cause: Add the type and message of the wrapped exception
            include_traceback: Also add its formatted traceback (debug only)
        """
        body: Dict[str, Any] = {
            "id": self.error_id,
            "code": self.error_code.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
            "context": self.public_context(),
        }
        if self.correlation_id:
            body["correlation_id"] = self.correlation_id

        cause = self.context.get("cause")
        if include_cause and cause:
            body["cause"] = {"type": cause["type"], "message": cause["message"]}
            if include_traceback:
                body["cause"]["traceback"] = cause["traceback"]

        return {"error": body}

    @property
    def error_chain(self) -> List[Exception]:
        """This error followed by each nested ``cause``."""
        chain: List[Exception] = []
        current: Optional[Exception] = self
        while current is not None:
            chain.append(current)
            current = getattr(current, "cause", None)
        return chain


# Layer-specific base exceptions
class RepositoryError(BaseError):
    """Repository layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context,
    ):
        super().__init__(message, error_code, status_code, cause, **context)


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        status_code: int = 500,
        **context,
    ):
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, status_code, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[Exception] = None,
        **context,
    ):
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, **context)


class ExternalServiceError(BaseError):
    """External service integration errors."""

    def __init__(
        self,
        message: str,
        service_name: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        cause: Optional[Exception] = None,
        status_code: int = 502,
        **context,
    ):
        context["service_name"] = service_name
        super().__init__(message, error_code, status_code, cause, **context)


# Credential errors
class NoCredentialError(ServiceError):
    """No active credential exists for the requested tenant scope."""

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message,
            error_code=ErrorCode.CREDENTIAL_NOT_FOUND,
            cause=cause,
            status_code=401,
            **context,
        )


class UpstreamAuthExpiredError(ServiceError):
    """Credential renewal was rejected upstream; the tenant must re-authorize."""

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message,
            error_code=ErrorCode.CREDENTIAL_EXPIRED,
            cause=cause,
            status_code=401,
            **context,
        )


class AuthenticationFailedError(ServiceError):
    """Upstream still rejects a call after a forced renewal."""

    def __init__(
        self,
        message: str = "Authentication failed. Please reconnect your account.",
        cause: Optional[Exception] = None,
        **context,
    ):
        super().__init__(
            message,
            error_code=ErrorCode.AUTHENTICATION_FAILED,
            cause=cause,
            status_code=401,
            **context,
        )


# Upstream HTTP errors
class UpstreamRequestError(ExternalServiceError):
    """Non-successful response or transport failure talking to the CRM."""

    retryable = True

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        cause: Optional[Exception] = None,
        **context,
    ):
        if http_status is not None:
            context["http_status"] = http_status
        self.http_status = http_status
        super().__init__(message, service_name="crm", cause=cause, **context)


class UpstreamUnauthorizedError(UpstreamRequestError):
    """Upstream answered 401 for a resource call."""

    retryable = False

    def __init__(self, message: str = "Upstream rejected the access token", **context):
        super().__init__(message, http_status=401, **context)


# Billing errors
class InsufficientFundsError(ServiceError):
    """The company wallet cannot cover the export charge."""

    def __init__(self, message: str = "Insufficient funds in wallet", **context):
        super().__init__(
            message,
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            status_code=402,
            **context,
        )


class ChargeFailedError(ServiceError):
    """At least one meter charge was rejected; earlier charges may have succeeded."""

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message,
            error_code=ErrorCode.CHARGE_FAILED,
            cause=cause,
            status_code=402,
            **context,
        )


# Job orchestration errors
class DispatchFailedError(ServiceError):
    """The batch worker could not be scheduled; the job stays pending."""

    retryable = True

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(message, error_code=ErrorCode.QUEUE_ERROR, cause=cause, **context)


class BatchError(ServiceError):
    """A batch failed to fetch or write; previously persisted progress is kept."""

    retryable = True

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(message, error_code=ErrorCode.BATCH_FAILED, cause=cause, **context)


class ConcurrentModificationError(RepositoryError):
    """A conditional update found the row in an unexpected status or version."""

    def __init__(self, message: str, **context):
        super().__init__(message, error_code=ErrorCode.CONFLICT, status_code=409, **context)


class InvalidStateTransitionError(ServiceError):
    """Requested transition is not allowed from the current state."""

    def __init__(self, message: str, **context):
        super().__init__(
            message,
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            **context,
        )


# Factory functions for common error patterns
def not_found(
    resource_type: str, cause: Optional[Exception] = None, **identifiers
) -> RepositoryError:
    """
    Factory for not found errors.

    Args:
        resource_type: Type of resource (e.g., 'ExportJob', 'Credential')
        cause: Original exception if any
        **identifiers: Resource identifiers (e.g., job_id='123')

    Returns:
        Configured RepositoryError instance with 404 status
    """
    id_parts = [f"{k}={v}" for k, v in identifiers.items()]
    message = f"{resource_type} not found"
    if id_parts:
        message += f": {', '.join(id_parts)}"

    return RepositoryError(
        message,
        error_code=ErrorCode.NOT_FOUND,
        status_code=404,
        cause=cause,
        resource_type=resource_type,
        **identifiers,
    )


# Correlation ID management
def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current thread."""
    _thread_local.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current thread's correlation ID."""
    return getattr(_thread_local, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the current thread's correlation ID."""
    if hasattr(_thread_local, "correlation_id"):
        delattr(_thread_local, "correlation_id")
