import base64
import threading
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sysproxy.auth import ProxyAuthenticator
from sysproxy.installer import ProxyPolicyInstaller
from sysproxy.models import CredentialPair, RequestorKind
from sysproxy.routing import NO_PROXY, BypassListRouting, FixedProxyRouting, ProtocolDispatch
from sysproxy.urllib_bridge import (
    HookPasswordManager,
    RoutingProxyHandler,
    basic_authorization,
    build_opener_for,
    challenge_from_uri,
)


class CountingProvider:
    def __init__(self, username="alice", secret="s3cr3t"):
        self.calls = 0
        self._pair = CredentialPair(username, secret)

    def request_proxy_credentials(self):
        self.calls += 1
        return self._pair


class AuthenticatingProxy(BaseHTTPRequestHandler):
    """Forward proxy stub: 407 until the expected Proxy-Authorization arrives."""

    expected = basic_authorization("alice", "s3cr3t")
    challenges = 0
    served = []

    def do_GET(self):
        if self.headers.get("Proxy-Authorization") != self.expected:
            type(self).challenges += 1
            self.send_response(407, "Proxy Authentication Required")
            self.send_header("Proxy-Authenticate", 'Basic realm="corp"')
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        body = b"proxied"
        type(self).served.append(self.path)
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def proxy_server():
    AuthenticatingProxy.challenges = 0
    AuthenticatingProxy.served = []
    server = ThreadingHTTPServer(("127.0.0.1", 0), AuthenticatingProxy)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


def routing_to(server):
    host, port = server.server_address[:2]
    return FixedProxyRouting([f"http://{host}:{port}"])


def test_handler_sets_proxy_for_routed_request():
    handler = RoutingProxyHandler(FixedProxyRouting(["proxy.corp:3128"]))
    request = urllib.request.Request("http://example.com/path")

    assert handler.http_open(request) is None
    assert request.host == "proxy.corp:3128"
    assert request.selector == "http://example.com/path"


def test_handler_tunnels_https_through_proxy():
    handler = RoutingProxyHandler(FixedProxyRouting(["proxy.corp:3128"]))
    request = urllib.request.Request("https://example.com/")

    handler.https_open(request)

    assert request.host == "proxy.corp:3128"
    assert request._tunnel_host == "example.com"


def test_handler_leaves_direct_and_bypassed_requests_alone():
    routing = BypassListRouting(ProtocolDispatch({"http": FixedProxyRouting(["proxy.corp:3128"])}), ["localhost"])
    handler = RoutingProxyHandler(routing)

    https_request = urllib.request.Request("https://example.com/")
    local_request = urllib.request.Request("http://localhost:8000/")
    handler.https_open(https_request)
    handler.http_open(local_request)

    assert https_request.host == "example.com"
    assert local_request.host == "localhost:8000"


def test_handler_skips_socks_only_routes():
    handler = RoutingProxyHandler(FixedProxyRouting(["socks5://127.0.0.1:9050"]))
    request = urllib.request.Request("http://example.com/")

    handler.http_open(request)

    assert request.host == "example.com"


def test_handler_sends_cached_credentials_preemptively():
    authenticator = ProxyAuthenticator(CountingProvider())
    authenticator(challenge_from_uri("proxy.corp:3128", RequestorKind.PROXY))
    handler = RoutingProxyHandler(FixedProxyRouting(["proxy.corp:3128"]), authenticator)
    request = urllib.request.Request("http://example.com/")

    handler.http_open(request)

    assert request.get_header("Proxy-authorization") == basic_authorization("alice", "s3cr3t")


def test_password_manager_forwards_proxy_lookups():
    provider = CountingProvider()
    manager = HookPasswordManager(ProxyAuthenticator(provider), RequestorKind.PROXY)

    assert manager.find_user_password("corp", "proxy.corp:3128") == ("alice", "s3cr3t")
    assert manager.find_user_password("corp", "proxy.corp:3128") == ("alice", "s3cr3t")
    assert provider.calls == 1


def test_password_manager_for_servers_answers_nothing():
    provider = CountingProvider()
    manager = HookPasswordManager(ProxyAuthenticator(provider), RequestorKind.SERVER)

    assert manager.find_user_password("api", "https://api.example.com/") == (None, None)
    assert provider.calls == 0


def test_challenge_from_uri_parses_host_port_and_urls():
    bare = challenge_from_uri("proxy.corp:3128", RequestorKind.PROXY, realm="corp")
    url = challenge_from_uri("https://api.example.com/x", RequestorKind.SERVER)

    assert (bare.host, bare.port, bare.realm, bare.protocol) == ("proxy.corp", 3128, "corp", None)
    assert (url.host, url.port, url.protocol) == ("api.example.com", None, "https")


def test_basic_authorization_header():
    expected = "Basic " + base64.b64encode(b"alice:s3cr3t").decode()

    assert basic_authorization("alice", "s3cr3t") == expected


def test_opener_answers_proxy_challenge_once(proxy_server):
    provider = CountingProvider()
    opener = build_opener_for(routing_to(proxy_server), ProxyAuthenticator(provider))

    with opener.open("http://example.test/first", timeout=5) as response:
        assert response.read() == b"proxied"
    with opener.open("http://example.test/second", timeout=5) as response:
        assert response.read() == b"proxied"

    assert provider.calls == 1
    assert AuthenticatingProxy.challenges == 1
    assert AuthenticatingProxy.served == ["http://example.test/first", "http://example.test/second"]


def test_opener_surfaces_407_when_credentials_refused(proxy_server):
    provider = CountingProvider(secret="wrong")
    opener = build_opener_for(routing_to(proxy_server), ProxyAuthenticator(provider))

    with pytest.raises(urllib.error.HTTPError) as excinfo:
        opener.open("http://example.test/", timeout=5)

    assert excinfo.value.code == 407
    assert provider.calls == 1


def test_installed_policy_drives_urlopen(proxy_server):
    provider = CountingProvider()
    ProxyPolicyInstaller.install_routing(routing_to(proxy_server))
    ProxyPolicyInstaller.install_authenticator(ProxyAuthenticator(provider))

    with urllib.request.urlopen("http://example.test/installed", timeout=5) as response:
        assert response.status == 200

    assert provider.calls == 1


def test_opener_without_hook_has_no_auth_handlers():
    opener = build_opener_for(NO_PROXY)

    names = {type(handler).__name__ for handler in opener.handlers}
    assert "RoutingProxyHandler" in names
    assert "ProxyBasicAuthHandler" not in names
