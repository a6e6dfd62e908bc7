# waflow/core/errors.py
"""
Error taxonomy shared by the engine and the HTTP layer.

Every error carries the HTTP status the API surfaces map it to. Webhook and
booking surfaces never let these escape; they log them and fall back.
"""
from typing import List, Optional


class WaflowError(Exception):
    """Base class for all engine errors"""
    status_code: int = 500

    def __init__(self, message: str = "", *, logs: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.logs: List[str] = list(logs or [])

    def to_dict(self) -> dict:
        data = {"detail": self.message, "error": self.__class__.__name__}
        if self.logs:
            data["logs"] = self.logs
        return data


class ConfigurationError(WaflowError):
    """Missing or malformed server-side configuration (e.g. private key)"""
    status_code = 500


class DecryptionError(WaflowError):
    """Encrypted request could not be decoded"""
    status_code = 400


class KeyUnwrapError(DecryptionError):
    """RSA-OAEP unwrap of the per-request AES key failed"""


class AuthenticationError(DecryptionError):
    """AES-GCM tag verification failed"""


class NotFoundError(WaflowError):
    status_code = 404


class ValidationError(WaflowError):
    status_code = 400


class DuplicateNameError(ValidationError):
    status_code = 409


class NotAFunctionError(ConfigurationError):
    """User code does not define a callable handler"""
    status_code = 400


class ExecutionTimeoutError(WaflowError):
    status_code = 408


class ExecutionFailureError(WaflowError):
    """User code raised, or used a forbidden construct"""
    status_code = 422


class ProviderError(WaflowError):
    """WhatsApp Cloud API call failed"""
    status_code = 502


class SendFailureError(ProviderError):
    """Provider rejected an outbound message"""
