"""Custom exceptions for the chatguard application.

Every rejection in the write path is a ChatGuardException subclass. None
of them is fatal: each describes one failed attempt that the user can
retry later or fix by editing their input.
"""

from typing import Any, Optional


class ChatGuardException(Exception):
    """Base class for chatguard exceptions with HTTP status code.

    Subclasses define `status_code` and the machine-readable `error` kind
    used in API responses.
    """
    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str = "Chat service error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Convert to API response body."""
        return {"error": self.error, "message": self.message}


class ContentRejectedError(ChatGuardException):
    """Raised when a message fails content admission.

    Carries the ValidationResult so callers can show the reason inline.
    Content errors are never recorded as security events.
    Maps to HTTP 422 Unprocessable Entity.
    """
    status_code = 422

    def __init__(self, result: Any):
        self.result = result
        self.error = result.error_kind.value if result.error_kind else "invalid_content"
        super().__init__(result.message or "Invalid message")


class RateLimitedError(ChatGuardException):
    """Raised when a session submits during cooldown or trips the burst limit.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error = "rate_limited"

    def __init__(self, retry_after: int, detail: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            detail or f"Please wait {retry_after} seconds before posting again."
        )

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["retry_after"] = self.retry_after
        return body


class AttestationError(ChatGuardException):
    """Base class for attestation failures.

    Attestation failures always block the privileged operation.
    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error = "attestation_failed"


class TokenRequestError(AttestationError):
    """Raised when the attestation provider fails to issue a token.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error = "token_request_failed"

    def __init__(self, detail: str = "Attestation token request failed"):
        super().__init__(detail)


class TokenValidationError(AttestationError):
    """Raised when a token does not have the expected structure."""
    error = "token_validation_failed"

    def __init__(self, detail: str = "Invalid attestation token"):
        super().__init__(detail)


class EnforcementError(AttestationError):
    """Raised when attestation enforcement blocks a privileged operation."""
    error = "app_check_enforcement_failed"

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        message = f"Attestation check failed for operation '{operation}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["operation"] = self.operation
        return body


class MessageNotFoundError(ChatGuardException):
    """Raised when a message id does not resolve to a live record.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error = "message_not_found"

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class StorageWriteError(ChatGuardException):
    """Raised when the storage collaborator rejects a write.

    Never retried automatically, to avoid duplicate sends.
    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502
    error = "storage_write_failed"

    def __init__(self, detail: str = "Failed to send message, please retry."):
        super().__init__(detail)
