"""
httpx bindings for the process-wide proxy policy.

httpx does not consult a global routing hook, so clients that should follow
the installed policy are built with a RoutingTransport. The transport picks
the proxy per request and, when the proxy answers 407 (either as a response or
while opening a CONNECT tunnel), asks the authentication hook for credentials
and retries once.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from helpers.unified_logger import get_binding_logger

from .auth import ProxyAuthenticator
from .installer import ProxyPolicyInstaller
from .models import ChallengeContext, CredentialPair, ProxyEndpoint, RequestorKind
from .routing import NO_PROXY, RoutingFunction

logger = get_binding_logger("httpx")

HTTPX_PROXY_PROTOCOLS = ("http", "https", "socks5")

TransportFactory = Callable[[Optional[httpx.Proxy]], httpx.BaseTransport]
AsyncTransportFactory = Callable[[Optional[httpx.Proxy]], httpx.AsyncBaseTransport]


def select_endpoint(routing: RoutingFunction, url: httpx.URL) -> Optional[ProxyEndpoint]:
    """First endpoint httpx can speak to for ``url``, or None for direct."""
    endpoints = routing.select(url.scheme, url.host)
    for endpoint in endpoints:
        if endpoint.protocol in HTTPX_PROXY_PROTOCOLS:
            return endpoint
    if endpoints:
        logger.warning(f"No httpx-capable proxy among {[str(e) for e in endpoints]} for {url.host}; connecting directly")
    return None


def build_proxy(endpoint: ProxyEndpoint, credentials: Optional[CredentialPair] = None) -> httpx.Proxy:
    auth = credentials.as_tuple() if credentials is not None else None
    return httpx.Proxy(endpoint.url(), auth=auth)


def _challenge_for(request: httpx.Request, endpoint: ProxyEndpoint, response: Optional[httpx.Response]) -> ChallengeContext:
    scheme = realm = None
    if response is not None:
        header = response.headers.get("Proxy-Authenticate", "")
        if header:
            scheme, _, params = header.partition(" ")
            scheme = scheme.lower()
            for param in params.split(","):
                key, _, value = param.strip().partition("=")
                if key.lower() == "realm":
                    realm = value.strip('"')
    return ChallengeContext(
        requestor_kind=RequestorKind.PROXY,
        protocol=request.url.scheme,
        host=endpoint.host,
        port=endpoint.port,
        realm=realm,
        scheme=scheme,
    )


def _tunnel_auth_required(exc: httpx.ProxyError) -> bool:
    return str(exc).startswith("407")


class _RoutingState:
    """Routing/hook lookup and transport cache shared by the sync and async transports."""

    def __init__(
        self,
        routing: Optional[RoutingFunction],
        authenticator: Optional[ProxyAuthenticator],
        factory: Callable[[Optional[httpx.Proxy]], Any],
    ) -> None:
        self._routing = routing
        self._authenticator = authenticator
        self._factory = factory
        self._lock = threading.Lock()
        self._transports: Dict[Tuple[Optional[str], Optional[CredentialPair]], Any] = {}

    @property
    def routing(self) -> RoutingFunction:
        if self._routing is not None:
            return self._routing
        return ProxyPolicyInstaller.current_routing() or NO_PROXY

    @property
    def authenticator(self) -> Optional[ProxyAuthenticator]:
        if self._authenticator is not None:
            return self._authenticator
        return ProxyPolicyInstaller.current_authenticator()

    def transport_for(self, endpoint: Optional[ProxyEndpoint], credentials: Optional[CredentialPair]):
        key = (endpoint.url() if endpoint else None, credentials)
        with self._lock:
            transport = self._transports.get(key)
            if transport is None:
                proxy = build_proxy(endpoint, credentials) if endpoint else None
                transport = self._factory(proxy)
                self._transports[key] = transport
            return transport

    def drain(self) -> list:
        with self._lock:
            transports = list(self._transports.values())
            self._transports.clear()
        return transports


class RoutingTransport(httpx.BaseTransport):
    """
    Sync transport following a routing function and authentication hook.

    Without explicit ``routing``/``authenticator`` the ones currently
    installed process-wide are used on every request.
    """

    def __init__(
        self,
        routing: Optional[RoutingFunction] = None,
        authenticator: Optional[ProxyAuthenticator] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        **transport_kwargs: Any,
    ) -> None:
        factory = transport_factory or (lambda proxy: httpx.HTTPTransport(proxy=proxy, **transport_kwargs))
        self._state = _RoutingState(routing, authenticator, factory)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        endpoint = select_endpoint(self._state.routing, request.url)
        if endpoint is None:
            return self._state.transport_for(None, None).handle_request(request)

        authenticator = self._state.authenticator
        credentials = authenticator.cached if authenticator else None
        transport = self._state.transport_for(endpoint, credentials)
        try:
            response = transport.handle_request(request)
        except httpx.ProxyError as exc:
            if authenticator is None or not _tunnel_auth_required(exc):
                raise
            answer = authenticator(_challenge_for(request, endpoint, None))
            if answer is None or answer == credentials:
                raise
            logger.debug(f"Retrying tunnel through {endpoint} with proxy credentials")
            return self._state.transport_for(endpoint, answer).handle_request(request)

        if response.status_code != 407 or authenticator is None:
            return response
        answer = authenticator(_challenge_for(request, endpoint, response))
        if answer is None or answer == credentials:
            return response
        response.close()
        logger.debug(f"Retrying request through {endpoint} with proxy credentials")
        return self._state.transport_for(endpoint, answer).handle_request(request)

    def close(self) -> None:
        for transport in self._state.drain():
            transport.close()


class AsyncRoutingTransport(httpx.AsyncBaseTransport):
    """Async counterpart of RoutingTransport; the hook runs in a worker thread."""

    def __init__(
        self,
        routing: Optional[RoutingFunction] = None,
        authenticator: Optional[ProxyAuthenticator] = None,
        *,
        transport_factory: Optional[AsyncTransportFactory] = None,
        **transport_kwargs: Any,
    ) -> None:
        factory = transport_factory or (lambda proxy: httpx.AsyncHTTPTransport(proxy=proxy, **transport_kwargs))
        self._state = _RoutingState(routing, authenticator, factory)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        endpoint = select_endpoint(self._state.routing, request.url)
        if endpoint is None:
            return await self._state.transport_for(None, None).handle_async_request(request)

        authenticator = self._state.authenticator
        credentials = authenticator.cached if authenticator else None
        transport = self._state.transport_for(endpoint, credentials)
        try:
            response = await transport.handle_async_request(request)
        except httpx.ProxyError as exc:
            if authenticator is None or not _tunnel_auth_required(exc):
                raise
            answer = await asyncio.to_thread(authenticator, _challenge_for(request, endpoint, None))
            if answer is None or answer == credentials:
                raise
            return await self._state.transport_for(endpoint, answer).handle_async_request(request)

        if response.status_code != 407 or authenticator is None:
            return response
        answer = await asyncio.to_thread(authenticator, _challenge_for(request, endpoint, response))
        if answer is None or answer == credentials:
            return response
        await response.aclose()
        return await self._state.transport_for(endpoint, answer).handle_async_request(request)

    async def aclose(self) -> None:
        for transport in self._state.drain():
            await transport.aclose()


def create_httpx_client(
    routing: Optional[RoutingFunction] = None,
    authenticator: Optional[ProxyAuthenticator] = None,
    *,
    timeout: Optional[httpx.Timeout] = None,
    **kwargs: Any,
) -> httpx.Client:
    """
    Return a Client that routes through the proxy policy.

    Args:
        routing: Explicit routing function; defaults to the installed one.
        authenticator: Explicit hook; defaults to the installed one.
        timeout: Optional explicit timeout. If omitted, httpx defaults are used.
        **kwargs: Additional parameters forwarded to ``httpx.Client``.
    """
    client_kwargs: Dict[str, Any] = dict(kwargs)
    if timeout is not None:
        client_kwargs["timeout"] = timeout
    client_kwargs.setdefault("transport", RoutingTransport(routing, authenticator))
    client_kwargs.setdefault("trust_env", False)
    return httpx.Client(**client_kwargs)


def create_async_httpx_client(
    routing: Optional[RoutingFunction] = None,
    authenticator: Optional[ProxyAuthenticator] = None,
    *,
    timeout: Optional[httpx.Timeout] = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Async variant of create_httpx_client."""
    client_kwargs: Dict[str, Any] = dict(kwargs)
    if timeout is not None:
        client_kwargs["timeout"] = timeout
    client_kwargs.setdefault("transport", AsyncRoutingTransport(routing, authenticator))
    client_kwargs.setdefault("trust_env", False)
    return httpx.AsyncClient(**client_kwargs)
