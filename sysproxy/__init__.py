"""
OS proxy discovery and credential negotiation.

This package discovers the operating system's proxy configuration, installs
it as the process-wide routing policy, and answers proxy authentication
challenges with credentials acquired once per process.
"""

from .auth import CredentialProvider, ProxyAuthenticator
from .discovery import ProxyDiscovery
from .exceptions import (
    CredentialAcquisitionCancelled,
    CredentialAcquisitionFailed,
    MisconfiguredDispatch,
    PermissionDenied,
    ProxyConfigurationError,
    ProxyError,
)
from .installer import ProxyPolicyInstaller, detect_active_proxy, has_proxy, install
from .models import ChallengeContext, CredentialPair, ProxyEndpoint, RequestorKind, Strategy
from .providers import (
    ConsoleCredentialProvider,
    DispatchingCredentialProvider,
    StaticCredentialProvider,
    provider_from_callable,
)
from .routing import (
    NO_PROXY,
    BypassListRouting,
    FixedProxyRouting,
    NoProxy,
    ProtocolDispatch,
    RoutingFunction,
)

__all__ = [
    "BypassListRouting",
    "ChallengeContext",
    "ConsoleCredentialProvider",
    "CredentialAcquisitionCancelled",
    "CredentialAcquisitionFailed",
    "CredentialPair",
    "CredentialProvider",
    "DispatchingCredentialProvider",
    "FixedProxyRouting",
    "MisconfiguredDispatch",
    "NO_PROXY",
    "NoProxy",
    "PermissionDenied",
    "ProtocolDispatch",
    "ProxyAuthenticator",
    "ProxyConfigurationError",
    "ProxyDiscovery",
    "ProxyEndpoint",
    "ProxyError",
    "ProxyPolicyInstaller",
    "RequestorKind",
    "RoutingFunction",
    "StaticCredentialProvider",
    "Strategy",
    "detect_active_proxy",
    "has_proxy",
    "install",
    "provider_from_callable",
]
