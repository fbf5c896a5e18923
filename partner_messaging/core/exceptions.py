"""
Error taxonomy shared by every partner messaging component.

Each error carries a machine-readable code, the HTTP status the API layer
maps it to, a generic public message safe to return to callers, and a
context dict for structured logging. The detailed message stays internal.
"""
from typing import Any, Dict, Optional


class PartnerMessagingError(Exception):
    """Base class for partner messaging errors"""

    code = "internal_error"
    status_code = 500
    public_message = "An internal error occurred"

    def __init__(self, message: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        self.message = message or self.public_message
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form returned to API callers."""
        return {"code": self.code, "message": self.public_message}


class ValidationError(PartnerMessagingError):
    """Raised when caller input is invalid; never retried"""
    code = "validation_error"
    status_code = 400
    public_message = "The request is invalid"


class NotFoundError(PartnerMessagingError):
    """Raised when a local record does not exist"""
    code = "not_found"
    status_code = 404
    public_message = "The requested resource was not found"


class ConflictError(PartnerMessagingError):
    """Raised on duplicate resources or illegal state transitions"""
    code = "conflict"
    status_code = 409
    public_message = "The request conflicts with the current state of the resource"


class AuthenticationError(PartnerMessagingError):
    """Raised when gateway credentials or tokens are rejected"""
    code = "authentication_failed"
    status_code = 502
    public_message = "Authentication with the messaging gateway failed"


class ExternalServiceError(PartnerMessagingError):
    """Raised when the gateway rejects a request with a non-retryable status"""
    code = "external_service_error"
    status_code = 502
    public_message = "The messaging gateway rejected the request"

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
        payload: Any = None
    ):
        super().__init__(message, context)
        self.http_status = http_status
        self.payload = payload


class TransientNetworkError(PartnerMessagingError):
    """Raised when timeouts, network failures or 5xx responses outlast the retry budget"""
    code = "transient_network_error"
    status_code = 503
    public_message = "The messaging gateway is temporarily unavailable"


class QueueUnavailableError(PartnerMessagingError):
    """Raised when a background job cannot be handed to the task queue"""
    code = "queue_unavailable"
    status_code = 503
    public_message = "Background processing is temporarily unavailable"


class ConfigurationError(PartnerMessagingError):
    """Raised when required configuration is missing or gateway setup fails"""
    code = "configuration_error"
    status_code = 500
    public_message = "The service is not configured correctly"


class EncryptionError(PartnerMessagingError):
    """Raised when a secret cannot be encrypted"""
    code = "encryption_error"
    status_code = 500
    public_message = "A stored credential could not be processed"


class DecryptionError(EncryptionError):
    """Raised when a stored secret fails authentication or cannot be decoded"""
    code = "decryption_error"
