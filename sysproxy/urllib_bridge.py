"""
Bindings between the proxy policy and ``urllib.request``.

``urllib.request.urlopen`` uses the process-wide opener; installing the opener
built here makes every urlopen call route through the installed routing
function and answer proxy challenges through the installed hook.
"""

from __future__ import annotations

import base64
import urllib.error
import urllib.request
from typing import Optional, Tuple
from urllib.parse import urlsplit

from helpers.unified_logger import get_binding_logger

from .auth import ProxyAuthenticator
from .exceptions import MisconfiguredDispatch
from .models import ChallengeContext, RequestorKind
from .routing import RoutingFunction

logger = get_binding_logger("urllib")


class RoutingProxyHandler(urllib.request.BaseHandler):
    """
    Chooses the proxy for every request from a routing function.

    Runs before the protocol handlers. Only HTTP-type endpoints can be used
    by urllib; SOCKS endpoints are skipped. Once credentials are cached they
    are sent pre-emptively, which is also what lets HTTPS tunnels authenticate.
    """

    handler_order = 100

    def __init__(self, routing: RoutingFunction, authenticator: Optional[ProxyAuthenticator] = None) -> None:
        self.routing = routing
        self.authenticator = authenticator

    def http_open(self, req: urllib.request.Request):
        return self._route(req)

    def https_open(self, req: urllib.request.Request):
        return self._route(req)

    def _route(self, req: urllib.request.Request):
        if req.has_proxy() or getattr(req, "_tunnel_host", None):
            # Already routed (auth retries re-enter the handler chain).
            return None

        parts = urlsplit(req.full_url)
        protocol = parts.scheme.lower()
        host = parts.hostname or ""
        try:
            endpoints = self.routing.select(protocol, host)
        except MisconfiguredDispatch as exc:
            raise urllib.error.URLError(exc) from exc

        endpoint = next((candidate for candidate in endpoints if candidate.is_http), None)
        if endpoint is None:
            if endpoints:
                logger.warning(
                    f"No HTTP-capable proxy among {[str(e) for e in endpoints]} for {host}; connecting directly"
                )
            return None

        logger.debug(f"Routing {protocol}://{host} via {endpoint}")
        credentials = self.authenticator.cached if self.authenticator else None
        if credentials is not None:
            req.add_unredirected_header("Proxy-authorization", basic_authorization(*credentials.as_tuple()))
        req.set_proxy(endpoint.hostport, endpoint.protocol)
        return None


class HookPasswordManager:
    """
    Password manager that forwards urllib's credential lookups to the hook.

    One instance serves proxy challenges (for ProxyBasicAuthHandler) and
    another serves server challenges (for HTTPBasicAuthHandler).
    """

    def __init__(self, authenticator: ProxyAuthenticator, requestor_kind: RequestorKind) -> None:
        self.authenticator = authenticator
        self.requestor_kind = requestor_kind

    def add_password(self, realm, uri, user, passwd) -> None:
        logger.debug("Ignoring static password registration; credentials come from the authentication hook")

    def find_user_password(self, realm: Optional[str], authuri: str) -> Tuple[Optional[str], Optional[str]]:
        context = challenge_from_uri(authuri, self.requestor_kind, realm=realm)
        credentials = self.authenticator(context)
        if credentials is None:
            return None, None
        return credentials.as_tuple()


def challenge_from_uri(
    authuri: str,
    requestor_kind: RequestorKind,
    *,
    realm: Optional[str] = None,
    scheme: Optional[str] = "basic",
) -> ChallengeContext:
    """Build a ChallengeContext from the URI or ``host:port`` urllib reports."""
    parts = urlsplit(authuri if "://" in authuri else f"//{authuri}")
    try:
        port = parts.port
    except ValueError:
        port = None
    return ChallengeContext(
        requestor_kind=requestor_kind,
        protocol=parts.scheme or None,
        host=parts.hostname,
        port=port,
        realm=realm,
        scheme=scheme,
    )


def basic_authorization(username: str, secret: str) -> str:
    raw = f"{username}:{secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def build_opener_for(
    routing: RoutingFunction,
    authenticator: Optional[ProxyAuthenticator] = None,
) -> urllib.request.OpenerDirector:
    """
    Build an opener bound to ``routing`` and ``authenticator``.

    The empty ProxyHandler replaces urllib's default one so environment
    proxies never override the routing function.
    """
    handlers = [urllib.request.ProxyHandler({}), RoutingProxyHandler(routing, authenticator)]
    if authenticator is not None:
        handlers.append(
            urllib.request.ProxyBasicAuthHandler(HookPasswordManager(authenticator, RequestorKind.PROXY))
        )
        handlers.append(
            urllib.request.HTTPBasicAuthHandler(HookPasswordManager(authenticator, RequestorKind.SERVER))
        )
    return urllib.request.build_opener(*handlers)
