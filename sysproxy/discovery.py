"""
Platform proxy discovery.

Reads the operating system's proxy configuration and turns it into a
RoutingFunction. Discovery never mutates process state; installing the result
is the installer's job.
"""

from __future__ import annotations

import os
import sys
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from helpers.unified_logger import get_core_logger

from .exceptions import PermissionDenied, ProxyConfigurationError
from .models import Strategy
from .routing import (
    NO_PROXY,
    BypassListRouting,
    FixedProxyRouting,
    ProtocolDispatch,
    RoutingFunction,
)

logger = get_core_logger("discovery")

# Protocols an "all" entry fans out to when other entries are protocol specific.
DISPATCH_PROTOCOLS: Tuple[str, ...] = ("http", "https", "ftp")

INTERNET_SETTINGS_KEY = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"


RegistryReader = Callable[[], Mapping[str, object]]
SysconfReader = Callable[[], Tuple[Mapping[str, str], Sequence[str]]]


def read_windows_registry() -> Mapping[str, object]:
    """Read the current user's WinINET proxy settings."""
    import winreg

    values: Dict[str, object] = {}
    try:
        key = winreg.OpenKey(winreg.HKEY_CURRENT_USER, INTERNET_SETTINGS_KEY)
    except FileNotFoundError:
        return values
    try:
        for name in ("ProxyEnable", "ProxyServer", "ProxyOverride", "AutoConfigURL"):
            try:
                values[name], _ = winreg.QueryValueEx(key, name)
            except FileNotFoundError:
                continue
    finally:
        winreg.CloseKey(key)
    return values


def read_macos_sysconf() -> Tuple[Mapping[str, str], Sequence[str]]:
    """Read per-protocol proxies and the exception list from the System Configuration framework."""
    from _scproxy import _get_proxy_settings
    from urllib.request import getproxies_macosx_sysconf

    proxies = getproxies_macosx_sysconf()
    settings = _get_proxy_settings()
    exceptions = list(settings.get("exceptions") or [])
    if settings.get("exclude_simple"):
        exceptions.append("<local>")
    return proxies, exceptions


class ProxyDiscovery:
    """
    Builds a RoutingFunction from platform proxy configuration.

    The platform stores are injectable so discovery can be exercised without
    touching the real registry, System Configuration or environment.
    """

    def __init__(
        self,
        *,
        platform: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        registry_reader: Optional[RegistryReader] = None,
        sysconf_reader: Optional[SysconfReader] = None,
    ) -> None:
        self._platform = platform or sys.platform
        self._environ = environ
        self._registry_reader = registry_reader or read_windows_registry
        self._sysconf_reader = sysconf_reader or read_macos_sysconf

    def resolve_strategy(self, strategy: Strategy) -> Strategy:
        """Map OS_DEFAULT onto the store of the running platform."""
        if strategy is not Strategy.OS_DEFAULT:
            return strategy
        if self._platform.startswith("win"):
            return Strategy.WIN
        if self._platform == "darwin":
            return Strategy.OSX
        return Strategy.ENV_VAR

    def discover(self, strategy: Strategy = Strategy.OS_DEFAULT) -> RoutingFunction:
        """
        Discover the proxy configuration allowed by ``strategy``.

        Returns:
            A RoutingFunction, or NO_PROXY when nothing is configured.

        Raises:
            PermissionDenied: the platform refused read access.
            ProxyConfigurationError: the configuration could not be parsed.
        """
        resolved = self.resolve_strategy(strategy)
        try:
            if resolved is Strategy.WIN:
                routing = self._from_registry()
            elif resolved is Strategy.OSX:
                routing = self._from_sysconf()
            else:
                routing = self._from_environment()
        except PermissionError as exc:
            if isinstance(exc, PermissionDenied):
                raise
            logger.error(f"Access to {resolved.name} proxy configuration denied: {exc}")
            raise PermissionDenied(f"Access to {resolved.name} proxy configuration denied") from exc

        logger.info(f"Discovered proxy policy via {resolved.name}: {routing.describe()}")
        return routing

    # ------------------------------------------------------------------
    # Platform stores
    # ------------------------------------------------------------------

    def _from_environment(self) -> RoutingFunction:
        environ = os.environ if self._environ is None else self._environ
        proxies, bypass = proxies_from_environment(environ)
        return build_routing(proxies, bypass)

    def _from_registry(self) -> RoutingFunction:
        values = self._registry_reader()
        auto_config = values.get("AutoConfigURL")
        if auto_config:
            logger.warning(f"Proxy auto-config script {auto_config} is configured but not evaluated")
        if not _truthy(values.get("ProxyEnable")):
            return NO_PROXY
        server = str(values.get("ProxyServer") or "").strip()
        if not server:
            return NO_PROXY
        override = str(values.get("ProxyOverride") or "")
        bypass = [entry for entry in override.split(";") if entry.strip()]
        return build_routing(parse_windows_proxy_server(server), bypass)

    def _from_sysconf(self) -> RoutingFunction:
        proxies, bypass = self._sysconf_reader()
        proxies = {scheme.lower(): url for scheme, url in proxies.items() if url}
        if not proxies:
            return NO_PROXY
        # The System Configuration store is always protocol segmented.
        selectors = {scheme: FixedProxyRouting([url]) for scheme, url in proxies.items()}
        return _with_bypass(ProtocolDispatch(selectors), bypass)


def proxies_from_environment(environ: Mapping[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """
    Collect ``<scheme>_proxy`` variables and the ``no_proxy`` list.

    Lower-case names win over upper-case ones. Under CGI (REQUEST_METHOD set)
    the upper-case HTTP_PROXY is ignored since clients can inject it as a header.
    """
    proxies: Dict[str, str] = {}
    no_proxy = None
    for prefer_lower in (False, True):
        for name, value in environ.items():
            if (name == name.lower()) != prefer_lower:
                continue
            lowered = name.lower()
            if not lowered.endswith("_proxy") or not value:
                continue
            if name == "HTTP_PROXY" and "REQUEST_METHOD" in environ:
                continue
            scheme = lowered[: -len("_proxy")]
            if scheme == "no":
                no_proxy = value
            else:
                proxies[scheme] = value
    bypass = [entry.strip() for entry in (no_proxy or "").split(",") if entry.strip()]
    return proxies, bypass


def parse_windows_proxy_server(value: str) -> Dict[str, str]:
    """
    Parse a WinINET ProxyServer value.

    ``host:port`` applies to all protocols; ``http=h:p;https=h:p;socks=h:p``
    is protocol specific.
    """
    value = value.strip()
    if "=" not in value:
        return {"all": value}
    proxies: Dict[str, str] = {}
    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ProxyConfigurationError(f"Malformed ProxyServer entry '{entry}'")
        scheme, address = entry.split("=", 1)
        scheme = scheme.strip().lower()
        address = address.strip()
        if not address:
            continue
        if scheme == "socks" and "://" not in address:
            address = f"socks://{address}"
        proxies[scheme] = address
    return proxies


def build_routing(proxies: Mapping[str, str], bypass: Sequence[str] = ()) -> RoutingFunction:
    """
    Turn a scheme -> proxy URL mapping into a routing function.

    Only an ``all`` entry yields flat routing; any protocol-specific entry
    yields a dispatch table where ``all`` fills the protocols left unset.
    """
    proxies = {scheme.lower(): url for scheme, url in proxies.items() if url}
    if not proxies:
        return NO_PROXY

    if set(proxies) == {"all"}:
        return _with_bypass(FixedProxyRouting([proxies["all"]]), bypass)

    fallback = proxies.pop("all", None)
    selectors: Dict[str, RoutingFunction] = {
        scheme: FixedProxyRouting([url]) for scheme, url in proxies.items()
    }
    if fallback:
        for protocol in DISPATCH_PROTOCOLS:
            selectors.setdefault(protocol, FixedProxyRouting([fallback]))
    return _with_bypass(ProtocolDispatch(selectors), bypass)


def _with_bypass(routing: RoutingFunction, bypass: Sequence[str]) -> RoutingFunction:
    if not bypass:
        return routing
    return BypassListRouting(routing, bypass)


def _truthy(value: object) -> bool:
    if isinstance(value, str):
        return value.strip() not in ("", "0")
    return bool(value)
