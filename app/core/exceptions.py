"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"

    # Conversation errors (2xxx)
    CONVERSATION_NOT_FOUND = "ERR_2001"
    CONVERSATION_LOCKED = "ERR_2002"
    CONVERSATION_PROTECTED = "ERR_2003"

    # Dispatch errors (3xxx)
    NO_DELIVERY_CHANNEL = "ERR_3001"

    # External service errors (5xxx)
    ORACLE_ERROR = "ERR_5001"
    SMS_GATEWAY_ERROR = "ERR_5002"
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


class ConversationNotFoundError(AppException):
    """Raised when a conversation id does not exist"""

    def __init__(self, conversation_id: int):
        super().__init__(
            message=f"Conversation not found: {conversation_id}",
            error_code=ErrorCode.CONVERSATION_NOT_FOUND,
            status_code=404,
            details={"conversation_id": conversation_id}
        )


class ConversationLockedError(AppException):
    """Raised when a manual action cannot claim a conversation already being processed"""

    def __init__(self, conversation_id: int):
        super().__init__(
            message=f"Conversation {conversation_id} is already being processed",
            error_code=ErrorCode.CONVERSATION_LOCKED,
            status_code=409,
            details={"conversation_id": conversation_id}
        )


class NoDeliveryChannelError(AppException):
    """Raised when a lead has no usable phone number (permanent, not retried)"""

    def __init__(self, conversation_id: int, reason: str = "missing or invalid phone"):
        super().__init__(
            message=f"No delivery channel for conversation {conversation_id}: {reason}",
            error_code=ErrorCode.NO_DELIVERY_CHANNEL,
            status_code=422,
            details={"conversation_id": conversation_id, "reason": reason}
        )


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


def _response_details(operation: str, response: Any, max_response_chars: int) -> dict[str, Any]:
    status_code = getattr(response, "status_code", None)
    response_text = getattr(response, "text", "") or ""
    return {
        "operation": operation,
        "status_code": status_code,
        "response_text": response_text[:max_response_chars],
    }


class OracleError(ExternalServiceException):
    """Raised when the decision oracle fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="oracle",
            message=f"Decision oracle error: {message}",
            error_code=ErrorCode.ORACLE_ERROR,
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
    ) -> "OracleError":
        """Build an OracleError from an HTTP response (e.g. httpx.Response)."""
        status_code = getattr(response, "status_code", None)
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details=_response_details(operation, response, max_response_chars),
        )


class SmsGatewayError(ExternalServiceException):
    """Raised when the SMS gateway fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="sms_gateway",
            message=f"SMS gateway error: {message}",
            error_code=ErrorCode.SMS_GATEWAY_ERROR,
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
    ) -> "SmsGatewayError":
        """
        יצירת SmsGatewayError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: messages)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details=_response_details(operation, response, max_response_chars),
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


class ProtectedStateError(AppException):
    """Raised when a manual state change targets a conversation in a protected state"""

    def __init__(self, conversation_id: int, current_state: str):
        super().__init__(
            message=f"Conversation {conversation_id} is in protected state '{current_state}'",
            error_code=ErrorCode.CONVERSATION_PROTECTED,
            status_code=400,
            details={"conversation_id": conversation_id, "current_state": current_state},
        )
