"""
Routing functions: decide, per (protocol, host), which proxies a connection
goes through.

An empty result means "connect directly". Routing functions are immutable
once constructed so they can be shared process-wide without locking.
"""

from __future__ import annotations

import fnmatch
import ipaddress
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .exceptions import MisconfiguredDispatch, ProxyConfigurationError
from .models import ProxyEndpoint


class RoutingFunction(ABC):
    """Maps a connection target to the proxies it must traverse."""

    @abstractmethod
    def select(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        """Return the proxies to try in order; an empty list means direct."""

    def __call__(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        return self.select(protocol, host)

    @abstractmethod
    def describe(self) -> str:
        """Human-readable summary for diagnostics."""


class NoProxy(RoutingFunction):
    """Sentinel routing function: every connection is direct."""

    _instance: Optional["NoProxy"] = None

    def __new__(cls) -> "NoProxy":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def select(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        return []

    def describe(self) -> str:
        return "DIRECT"

    def __repr__(self) -> str:
        return "NO_PROXY"


NO_PROXY = NoProxy()


class FixedProxyRouting(RoutingFunction):
    """Flat routing: the same proxies for every protocol and host."""

    def __init__(self, endpoints: Sequence[Union[ProxyEndpoint, str]]) -> None:
        if not endpoints:
            raise ProxyConfigurationError("No proxy endpoints provided")
        self._endpoints: Tuple[ProxyEndpoint, ...] = tuple(
            endpoint if isinstance(endpoint, ProxyEndpoint) else ProxyEndpoint(endpoint)
            for endpoint in endpoints
        )

    @property
    def endpoints(self) -> Tuple[ProxyEndpoint, ...]:
        return self._endpoints

    def select(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        return list(self._endpoints)

    def describe(self) -> str:
        return ", ".join(str(endpoint) for endpoint in self._endpoints)

    def __repr__(self) -> str:
        return f"FixedProxyRouting({[str(e) for e in self._endpoints]!r})"


class BypassListRouting(RoutingFunction):
    """
    Wraps another routing function and answers "direct" for hosts matching
    the bypass list.

    Supported patterns:
        ``*``                 every host
        ``<local>``           host names without a dot
        ``.example.com``      the domain and all its subdomains
        ``example.com``       the host itself and its subdomains
        ``192.168.*``         shell-style wildcards
        ``10.0.0.0/8``        IP networks (CIDR)
    """

    def __init__(self, delegate: RoutingFunction, bypass: Iterable[str]) -> None:
        self._delegate = delegate
        self._patterns: Tuple[str, ...] = tuple(
            pattern.strip().lower() for pattern in bypass if pattern and pattern.strip()
        )

    @property
    def delegate(self) -> RoutingFunction:
        return self._delegate

    @property
    def patterns(self) -> Tuple[str, ...]:
        return self._patterns

    def bypasses(self, host: str) -> bool:
        host = (host or "").strip().lower().strip("[]").rstrip(".")
        if not host:
            return False
        return any(_matches(pattern, host) for pattern in self._patterns)

    def select(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        if self.bypasses(host):
            return []
        return self._delegate.select(protocol, host)

    def describe(self) -> str:
        if not self._patterns:
            return self._delegate.describe()
        return f"{self._delegate.describe()} (bypass: {', '.join(self._patterns)})"

    def __repr__(self) -> str:
        return f"BypassListRouting({self._delegate!r}, {list(self._patterns)!r})"


class ProtocolDispatch(RoutingFunction):
    """
    Routing that holds a distinct sub-routing per protocol.

    Protocols without an entry connect directly. The table is read-only after
    construction.
    """

    def __init__(self, selectors: Mapping[str, RoutingFunction]) -> None:
        self._selectors = MappingProxyType(
            {protocol.lower(): selector for protocol, selector in selectors.items()}
        )

    @property
    def selectors(self) -> Mapping[str, RoutingFunction]:
        return self._selectors

    def get_selector(self, protocol: str) -> Optional[RoutingFunction]:
        return self._selectors.get((protocol or "").lower())

    def select(self, protocol: str, host: str) -> List[ProxyEndpoint]:
        selector = self.get_selector(protocol)
        if selector is None:
            return []
        if not isinstance(selector, RoutingFunction):
            raise MisconfiguredDispatch(
                f"Dispatch entry for '{protocol}' is {type(selector).__name__}, not a routing function"
            )
        return selector.select(protocol, host)

    def describe(self) -> str:
        if not self._selectors:
            return "DIRECT"
        return "; ".join(
            f"{protocol}={_describe(selector)}" for protocol, selector in sorted(self._selectors.items())
        )

    def __repr__(self) -> str:
        return f"ProtocolDispatch({dict(self._selectors)!r})"


def _describe(selector: object) -> str:
    if isinstance(selector, RoutingFunction):
        return selector.describe()
    return repr(selector)


def _matches(pattern: str, host: str) -> bool:
    if pattern == "*":
        return True
    if pattern == "<local>":
        return "." not in host and ":" not in host
    if "/" in pattern:
        try:
            network = ipaddress.ip_network(pattern, strict=False)
            return ipaddress.ip_address(host) in network
        except ValueError:
            return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(host, pattern)
    if pattern.startswith("."):
        return host.endswith(pattern) or host == pattern[1:]
    return host == pattern or host.endswith(f".{pattern}")
