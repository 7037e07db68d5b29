"""
Custom Exception Hierarchy

Structured exceptions shared by the webhook endpoint, the queue processor and
the operator endpoints. HTTP-facing errors carry their status code; errors
raised inside the processor are caught at the ``process_event`` boundary and
turned into retry or dead-letter outcomes.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    IP_NOT_ALLOWED = "ERR_2002"
    INVALID_WEBHOOK_PAYLOAD = "ERR_2003"

    # Queue processing errors (3xxx)
    EVENT_VALIDATION_FAILED = "ERR_3001"
    ORDER_NOT_FOUND = "ERR_3002"

    # External service errors (5xxx)
    PAYMENT_PROVIDER_ERROR = "ERR_5001"
    EMAIL_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class AuthenticationError(AppException):
    """Missing or invalid credentials (bad signature, bad bearer token)"""

    def __init__(
        self,
        message: str = "Unauthorized",
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class ForbiddenError(AppException):
    """Caller is identified but not allowed (IP outside the allow-list)"""

    def __init__(
        self,
        message: str = "Forbidden",
        error_code: ErrorCode = ErrorCode.FORBIDDEN,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=403,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class RateLimitedError(AppException):
    """Raised when a caller exceeds its request budget"""

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            message="Too many requests. Please try again later.",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"retry_after_seconds": retry_after_seconds}
        )


class EventValidationError(AppException):
    """
    A queued payment event carries data the pipeline cannot apply
    (missing external_reference, empty order id, unknown order).

    Counted against the event's retry budget like any other failure: an
    upstream inconsistency may still resolve on a later attempt, and if it
    does not, the event ends up in the dead-letter store.
    """

    def __init__(
        self,
        message: str,
        payment_id: str | None = None,
        error_code: ErrorCode = ErrorCode.EVENT_VALIDATION_FAILED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )
        if payment_id:
            self.details["payment_id"] = payment_id


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class PaymentProviderError(ExternalServiceException):
    """Raised when the Mercado Pago API fails or returns unusable data"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="mercadopago",
            message=f"Mercado Pago API error: {message}",
            error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "PaymentProviderError":
        """
        Build a PaymentProviderError from an HTTP response.

        Args:
            operation: API operation name (get_payment, create_preference)
            response: response object (httpx.Response)
            message: custom message; built from the status code when omitted
            max_response_chars: cap on the stored response body
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class EmailDispatchError(ExternalServiceException):
    """Raised when the email provider rejects a send"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="email",
            message=f"Email dispatch error: {message}",
            error_code=ErrorCode.EMAIL_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
