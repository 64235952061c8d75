"""
Error taxonomy for the chat gateway and front door.

Every error carries the HTTP status the front door answers with, so handlers
never need a mapping table of their own.
"""

from typing import Optional


class GatewayError(Exception):
    """Base error for everything the gateway reports to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Bad or missing request fields (no model, no messages, empty model id)."""

    status_code = 400


class FeatureDisabledError(GatewayError):
    """AI features are switched off or the provider is set to disabled."""

    status_code = 403


class ConfigurationError(GatewayError):
    """A required credential is missing."""

    status_code = 400


class UpstreamError(GatewayError):
    """Provider answered with a non-success status."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProtocolError(GatewayError):
    """Provider payload does not match the expected shape."""

    status_code = 502


class TransportError(GatewayError):
    """Connection-level failure talking to a provider."""

    status_code = 502


class StorageError(GatewayError):
    """Settings file exists but cannot be read back; it is left untouched."""

    status_code = 500
