from __future__ import annotations

import os
import threading
import urllib.request
from typing import Dict, Optional, Tuple

from helpers.unified_logger import get_core_logger

from .auth import CredentialProvider, ProxyAuthenticator
from .discovery import ProxyDiscovery
from .models import Strategy
from .routing import BypassListRouting, NoProxy, ProtocolDispatch, RoutingFunction
from .urllib_bridge import build_opener_for

logger = get_core_logger("installer")

PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy", "NO_PROXY", "no_proxy")


class ProxyPolicyInstaller:
    """
    Process-wide holder of the default routing policy and authentication hook.

    Installation is global and last-writer-wins: a second install() replaces
    both the routing function and the hook; connections already in flight keep
    whatever they resolved before.

    Usage:
        routing = ProxyPolicyInstaller.install(provider)
        if ProxyPolicyInstaller.detect_active_proxy(routing, "http"):
            ...
    """

    _lock = threading.RLock()
    _routing: Optional[RoutingFunction] = None
    _authenticator: Optional[ProxyAuthenticator] = None
    _saved_env: Optional[Dict[str, Optional[str]]] = None

    @classmethod
    def install(
        cls,
        credential_provider: CredentialProvider,
        *,
        strategy: Strategy = Strategy.OS_DEFAULT,
        discovery: Optional[ProxyDiscovery] = None,
        export_environment: bool = False,
    ) -> RoutingFunction:
        """
        Discover the OS proxy policy and install it together with an
        authentication hook bound to ``credential_provider``.

        Discovery runs before any process state is touched, so a failure
        (PermissionDenied, ProxyConfigurationError) leaves the previous
        policy and hook in place.

        Returns:
            The installed routing function, for later detect_active_proxy calls.
        """
        if credential_provider is None:
            raise ValueError("CredentialProvider is required")

        discovery = discovery or ProxyDiscovery()
        routing = discovery.discover(strategy)
        authenticator = ProxyAuthenticator(credential_provider)
        opener = build_opener_for(routing, authenticator)
        environment = environment_for(routing) if export_environment else None

        with cls._lock:
            cls._routing = routing
            cls._authenticator = authenticator
            urllib.request.install_opener(opener)
            if environment is None:
                cls._restore_environment()
            else:
                cls._apply_environment(environment)

        logger.info(f"Installed proxy policy: {routing.describe()}")
        return routing

    @classmethod
    def install_routing(cls, routing: RoutingFunction) -> None:
        """Install ``routing`` as the default policy, keeping the current hook."""
        if routing is None:
            raise ValueError("RoutingFunction is required")
        with cls._lock:
            cls._routing = routing
            urllib.request.install_opener(build_opener_for(routing, cls._authenticator))
        logger.info(f"Installed routing policy: {routing.describe()}")

    @classmethod
    def install_authenticator(cls, authenticator: ProxyAuthenticator) -> None:
        """Install ``authenticator`` as the default hook, keeping the current policy."""
        if authenticator is None:
            raise ValueError("ProxyAuthenticator is required")
        with cls._lock:
            cls._authenticator = authenticator
            urllib.request.install_opener(build_opener_for(cls._routing or NoProxy(), authenticator))
        logger.debug("Installed proxy authentication hook")

    @classmethod
    def current_routing(cls) -> Optional[RoutingFunction]:
        return cls._routing

    @classmethod
    def current_authenticator(cls) -> Optional[ProxyAuthenticator]:
        return cls._authenticator

    @classmethod
    def has_proxy(cls, protocol: str) -> bool:
        """Whether the currently installed policy proxies ``protocol``."""
        return cls.detect_active_proxy(cls._routing, protocol)

    @classmethod
    def reset(cls) -> None:
        """Forget the installed policy and hook and restore urllib and the environment."""
        with cls._lock:
            cls._routing = None
            cls._authenticator = None
            urllib.request.install_opener(None)
            cls._restore_environment()

    @staticmethod
    def detect_active_proxy(routing: Optional[RoutingFunction], protocol: str) -> bool:
        """
        Whether a proxy is actually in effect for ``protocol``.

        NoProxy means no. A protocol dispatch table answers per protocol: a
        missing or NoProxy entry means no. Any other routing function means
        yes whatever the protocol. Bypass wrappers are looked through,
        including those around dispatch entries.
        """
        while isinstance(routing, BypassListRouting):
            routing = routing.delegate

        if routing is None or isinstance(routing, NoProxy):
            return False

        if isinstance(routing, ProtocolDispatch):
            selector = routing.get_selector(protocol)
            while isinstance(selector, BypassListRouting):
                selector = selector.delegate
            if selector is None or isinstance(selector, NoProxy):
                return False
            if not isinstance(selector, RoutingFunction):
                logger.warning(
                    f"Dispatch entry for '{protocol}' is {type(selector).__name__}; assuming a proxy is active"
                )
            return True

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @classmethod
    def _apply_environment(cls, values: Dict[str, str]) -> None:
        if cls._saved_env is None:
            cls._saved_env = {key: os.environ.get(key) for key in PROXY_ENV_VARS}
        cls._clear_environment()
        os.environ.update(values)

    @classmethod
    def _clear_environment(cls) -> None:
        for key in PROXY_ENV_VARS:
            os.environ.pop(key, None)

    @classmethod
    def _restore_environment(cls) -> None:
        if cls._saved_env is None:
            return
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        cls._saved_env = None


def install(
    credential_provider: CredentialProvider,
    *,
    strategy: Strategy = Strategy.OS_DEFAULT,
    discovery: Optional[ProxyDiscovery] = None,
    export_environment: bool = False,
) -> RoutingFunction:
    """Install the OS proxy policy and credential hook process-wide (see ProxyPolicyInstaller.install)."""
    return ProxyPolicyInstaller.install(
        credential_provider,
        strategy=strategy,
        discovery=discovery,
        export_environment=export_environment,
    )


def detect_active_proxy(routing: Optional[RoutingFunction], protocol: str) -> bool:
    return ProxyPolicyInstaller.detect_active_proxy(routing, protocol)


def has_proxy(protocol: str) -> bool:
    return ProxyPolicyInstaller.has_proxy(protocol)


def environment_for(routing: RoutingFunction) -> Dict[str, str]:
    """
    Express a routing function as *_proxy variables for libraries that read
    the environment (requests, httpx, aiohttp with trust_env).

    Only host-independent routing can be mirrored; the bypass list becomes
    NO_PROXY and ``<local>`` has no environment equivalent.
    """
    values: Dict[str, str] = {}
    inner = routing
    bypass: Tuple[str, ...] = ()
    if isinstance(inner, BypassListRouting):
        bypass = inner.patterns
        inner = inner.delegate

    for protocol in ("http", "https"):
        endpoints = [endpoint for endpoint in inner.select(protocol, "") if endpoint.is_http]
        if not endpoints:
            continue
        values[f"{protocol.upper()}_PROXY"] = endpoints[0].url()
        values[f"{protocol}_proxy"] = endpoints[0].url()

    no_proxy = ",".join(pattern for pattern in bypass if pattern != "<local>")
    if values and no_proxy:
        values["NO_PROXY"] = no_proxy
        values["no_proxy"] = no_proxy
    return values
