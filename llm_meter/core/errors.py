"""
Error taxonomy for LLM Meter.

Every failure raised by the core derives from MeterError so callers can
catch one type at the UI or CLI boundary.
"""

from typing import Optional


class MeterError(Exception):
    """Base exception for all LLM Meter errors."""


class ConfigurationError(MeterError):
    """Raised for unknown providers, missing credentials or invalid settings."""


class CredentialNotFoundError(ConfigurationError):
    """Raised when no API key is stored for a provider."""


class CredentialRejectedError(ConfigurationError):
    """Raised when a provider answers 401/403 to a request."""
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(MeterError):
    """Raised for transport failures, timeouts and non-2xx responses.

    Attributes:
        status_code: HTTP status when the server answered, None otherwise
    """
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamDataError(MeterError):
    """Raised when a provider returns a body that is not valid JSON."""


class StorageError(MeterError):
    """Raised when a database operation or transaction fails."""
