"""Custom exceptions for proxy discovery and credential negotiation."""


class ProxyError(Exception):
    """Base class for proxy-related errors."""


class PermissionDenied(ProxyError, PermissionError):
    """Raised when the platform refuses read access to its proxy configuration."""


class ProxyConfigurationError(ProxyError):
    """Raised when proxy configuration is invalid or incomplete."""


class MisconfiguredDispatch(ProxyError):
    """Raised when a dispatch table entry is not a routing function."""


class CredentialAcquisitionFailed(ProxyError):
    """Raised by a credential provider that could not produce credentials."""


class CredentialAcquisitionCancelled(CredentialAcquisitionFailed):
    """Raised when the user (or caller) cancelled the credential prompt."""
