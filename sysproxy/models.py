from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import quote, urlparse, urlunparse

from .exceptions import ProxyConfigurationError

_DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
    "socks": 1080,
    "socks5": 1080,
    "socks4": 1080,
    "socks4a": 1080,
}


class RequestorKind(str, Enum):
    """Who issued an authentication challenge."""

    PROXY = "proxy"
    SERVER = "server"


class Strategy(str, Enum):
    """
    Where proxy discovery is allowed to look.

    ``OS_DEFAULT`` picks the operating-system store of the running platform;
    the others force one particular store.
    """

    OS_DEFAULT = "os_default"
    ENV_VAR = "env_var"
    WIN = "win"
    OSX = "osx"

    @classmethod
    def parse(cls, value: str) -> "Strategy":
        normalized = value.strip().lower()
        for member in cls:
            if normalized in (member.value, member.name.lower()):
                return member
        raise ProxyConfigurationError(f"Unknown discovery strategy '{value}'")


@dataclass(frozen=True)
class CredentialPair:
    """Username/secret answering a proxy challenge. The secret never appears in repr."""

    username: str
    secret: str = field(repr=False)

    def as_tuple(self) -> Tuple[str, str]:
        return self.username, self.secret


@dataclass(frozen=True)
class ChallengeContext:
    """
    Describes one authentication challenge raised by the networking stack.

    Attributes:
        requestor_kind: PROXY when the challenge came from an intermediary,
            SERVER when it came from the destination.
        protocol: Scheme of the connection being challenged, when known.
        host: Host of the challenger (the proxy for PROXY challenges).
        port: Port of the challenger.
        realm: Authentication realm sent with the challenge.
        scheme: Authentication scheme (``basic``, ``digest``...).
    """

    requestor_kind: RequestorKind
    protocol: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    realm: Optional[str] = None
    scheme: Optional[str] = None

    @property
    def is_proxy(self) -> bool:
        return self.requestor_kind is RequestorKind.PROXY


@dataclass(slots=True)
class ProxyEndpoint:
    """
    A proxy address produced by a routing function.

    ``endpoint`` accepts ``host:port``, ``scheme://host:port`` and URLs with
    embedded credentials. Credentials are stripped: authentication is handled
    by the process-wide hook, never by the endpoint itself.
    """

    endpoint: str

    protocol: str = field(init=False)
    host: str = field(init=False)
    port: int = field(init=False)

    def __post_init__(self) -> None:
        raw = self.endpoint.strip()
        parsed = urlparse(raw)
        if not parsed.scheme or not parsed.netloc:
            # Default to http when scheme omitted.
            parsed = urlparse(f"http://{raw}")

        self.protocol = parsed.scheme.lower()
        self.host = parsed.hostname or ""
        if not self.host:
            raise ProxyConfigurationError(f"Proxy endpoint '{self.endpoint}' is missing a host")
        try:
            port = parsed.port or _DEFAULT_PORTS.get(self.protocol)
        except ValueError as exc:
            raise ProxyConfigurationError(f"Proxy endpoint '{self.endpoint}' has an invalid port") from exc
        if port is None:
            raise ProxyConfigurationError(f"Proxy endpoint '{self.endpoint}' is missing a port")
        self.port = port

        host = f"[{self.host}]" if ":" in self.host else self.host
        self.endpoint = urlunparse((self.protocol, f"{host}:{self.port}", "", "", "", ""))

    @property
    def hostport(self) -> str:
        return urlparse(self.endpoint).netloc

    @property
    def is_http(self) -> bool:
        return self.protocol in ("http", "https")

    def url(self, credentials: Optional[CredentialPair] = None, *, mask_password: bool = False) -> str:
        """
        Build the proxy URL, optionally with credentials embedded.

        Args:
            credentials: Pair to embed as userinfo.
            mask_password: Replace the secret with "***" for logging.
        """
        if credentials is None:
            return self.endpoint
        secret = "***" if mask_password and credentials.secret else credentials.secret
        username = quote(credentials.username, safe="")
        if secret and not mask_password:
            secret = quote(secret, safe="")
        auth_segment = username if not secret else f"{username}:{secret}"
        return f"{self.protocol}://{auth_segment}@{self.hostport}"

    def __str__(self) -> str:
        return self.endpoint
