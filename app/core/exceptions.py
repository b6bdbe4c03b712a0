"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    SERVICE_NOT_CONFIGURED = "SERVICE_NOT_CONFIGURED"

    # Tenant / onboarding errors
    HOST_NOT_ALLOWED = "HOST_NOT_ALLOWED"
    SLUG_LOOKUP_FAILED = "SLUG_LOOKUP_FAILED"
    TENANT_LIMIT_EXCEEDED = "TENANT_LIMIT_EXCEEDED"

    # Payment errors
    PAYMENT_IDEMPOTENCY_CONFLICT = "PAYMENT_IDEMPOTENCY_CONFLICT"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    WEBHOOK_RECONCILIATION_FAILED = "WEBHOOK_RECONCILIATION_FAILED"

    # Move-online errors
    STUDENT_NOT_FOUND = "STUDENT_NOT_FOUND"
    PENDING_MIGRATION_EXISTS = "PENDING_MIGRATION_EXISTS"
    STAGING_INSERT_FAILED = "STAGING_INSERT_FAILED"
    MOVE_ONLINE_NOT_APPLIED = "MOVE_ONLINE_NOT_APPLIED"
    MOVE_ONLINE_TARGET_MISMATCH = "MOVE_ONLINE_TARGET_MISMATCH"
    MOVE_ONLINE_INVALID_TARGET_STATUS = "MOVE_ONLINE_INVALID_TARGET_STATUS"
    MOVE_ONLINE_FAILED = "MOVE_ONLINE_FAILED"


class AppException(Exception):
    """Base exception for all application errors.

    ``message`` הוא הטקסט שחוזר ללקוח; ``internal_message`` (אם קיים)
    נרשם בלוג בלבד.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        internal_message: str | None = None,
    ):
        super().__init__(internal_message or message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.internal_message = internal_message

    @property
    def code(self) -> str:
        return self.error_code.value

    @property
    def client_message(self) -> str:
        return self.message

    def to_dict(self, request_id: str) -> dict[str, Any]:
        """Public error body: {error, code, request_id, ...details}"""
        body: dict[str, Any] = {
            "error": self.message,
            "code": self.error_code.value,
            "request_id": request_id,
        }
        body.update(self.details)
        return body


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        super().__init__(message=message, error_code=error_code, status_code=404)


class RateLimitExceededError(AppException):
    """Raised when a fixed-window counter is exhausted"""

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class AuthenticationError(AppException):
    """Missing, invalid or expired bearer token"""

    def __init__(self, message: str = "Authentication required."):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class ForbiddenError(AppException):
    """Authenticated, but not allowed to perform the action"""

    def __init__(self, message: str = "Forbidden.", error_code: ErrorCode = ErrorCode.FORBIDDEN):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=403,
        )


class ServiceUnavailableError(AppException):
    """A backing procedure or table is not deployed in this environment"""

    def __init__(self, message: str, internal_message: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.SERVICE_NOT_CONFIGURED,
            status_code=503,
            internal_message=internal_message,
        )


class PayloadTooLargeError(AppException):
    """Request body exceeded the configured byte limit"""

    def __init__(self, message: str = "Payload too large."):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYLOAD_TOO_LARGE,
            status_code=413,
        )


class UnsupportedMediaTypeError(AppException):
    """Request content type is not accepted by the endpoint"""

    def __init__(self, message: str = "Unsupported content type."):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNSUPPORTED_MEDIA_TYPE,
            status_code=415,
        )


# ==================== Payments ====================


class PaymentException(AppException):
    """Base exception for payment errors"""


class PaymentIdempotencyConflictError(PaymentException):
    """The idempotency key is already bound to a different payment"""

    def __init__(self, internal_message: str | None = None):
        super().__init__(
            message="This checkout request was already used for a different payment. "
                    "Please restart checkout.",
            error_code=ErrorCode.PAYMENT_IDEMPOTENCY_CONFLICT,
            status_code=409,
            internal_message=internal_message,
        )


class PaymentProcessingError(PaymentException):
    """Generic payment failure — client message never carries internals"""

    def __init__(self, internal_message: str | None = None):
        super().__init__(
            message="Unable to process payment. Please try again.",
            error_code=ErrorCode.PAYMENT_FAILED,
            status_code=500,
            internal_message=internal_message,
        )


class PaymentGatewayError(PaymentException):
    """Raised when the payment gateway API call fails"""

    def __init__(self, status: int | None = None, internal_message: str | None = None):
        super().__init__(
            message="Payment gateway is unavailable. Please retry shortly.",
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            status_code=502,
            internal_message=internal_message or f"Billplz error {status}",
        )
        self.gateway_status = status


class GatewayBillMismatchError(PaymentException):
    """The bill returned by the gateway does not match the local payment"""

    def __init__(self, message: str, internal_message: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            status_code=502,
            internal_message=internal_message,
        )


class GatewayNotConfiguredError(PaymentException):
    """Raised when no gateway credentials are available for a tenant"""

    def __init__(self, setting_name: str):
        super().__init__(
            message="Payment gateway is not configured.",
            error_code=ErrorCode.SERVICE_NOT_CONFIGURED,
            status_code=503,
            internal_message=f"{setting_name} is not configured",
        )


class WebhookReconciliationError(PaymentException):
    """The atomic webhook procedure returned something outside the outcome set"""

    def __init__(self, internal_message: str):
        super().__init__(
            message="Unable to process payment webhook.",
            error_code=ErrorCode.WEBHOOK_RECONCILIATION_FAILED,
            status_code=500,
            internal_message=internal_message,
        )


# ==================== Move online ====================


class MoveOnlineError(AppException):
    """Typed failure of the staging → active student migration"""

    def __init__(
        self,
        status: int,
        code: ErrorCode,
        client_message: str,
        internal_message: str | None = None,
    ):
        super().__init__(
            message=client_message,
            error_code=code,
            status_code=status,
            internal_message=internal_message,
        )

    @property
    def status(self) -> int:
        return self.status_code


# ==================== Tenants ====================


class TenantPlanLimitExceededError(AppException):
    """Tenant reached the student + staff cap of its plan"""

    def __init__(self, payload: dict[str, Any]):
        super().__init__(
            message="Tenant has reached the student + staff limit. New additions are blocked.",
            error_code=ErrorCode.TENANT_LIMIT_EXCEEDED,
            status_code=409,
            details=payload,
        )
