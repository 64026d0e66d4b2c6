import threading
import time

import pytest

from sysproxy.auth import CredentialProvider, ProxyAuthenticator
from sysproxy.exceptions import CredentialAcquisitionCancelled, CredentialAcquisitionFailed
from sysproxy.models import ChallengeContext, CredentialPair, RequestorKind

PROXY_CHALLENGE = ChallengeContext(RequestorKind.PROXY, protocol="http", host="proxy.corp", port=3128)
SERVER_CHALLENGE = ChallengeContext(RequestorKind.SERVER, protocol="https", host="api.example.com", port=443)


class CountingProvider:
    def __init__(self, results):
        self._results = list(results)
        self.calls = 0
        self._lock = threading.Lock()

    def request_proxy_credentials(self):
        with self._lock:
            self.calls += 1
            result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


class SlowProvider:
    def __init__(self, delay: float = 0.05):
        self.calls = 0
        self._delay = delay

    def request_proxy_credentials(self):
        self.calls += 1
        time.sleep(self._delay)
        return CredentialPair(f"user-{self.calls}", "secret")


class DelayedProvider:
    """Holds the lock long enough for every waiting challenge to queue behind it."""

    def __init__(self, inner, delay: float = 0.2):
        self._inner = inner
        self._delay = delay

    def request_proxy_credentials(self):
        time.sleep(self._delay)
        return self._inner.request_proxy_credentials()


def test_provider_protocol_is_structural():
    assert isinstance(CountingProvider([None]), CredentialProvider)


def test_first_proxy_challenge_acquires_and_caches():
    provider = CountingProvider([CredentialPair("alice", "s3cr3t")])
    authenticator = ProxyAuthenticator(provider)

    first = authenticator(PROXY_CHALLENGE)
    second = authenticator(PROXY_CHALLENGE)

    assert first == CredentialPair("alice", "s3cr3t")
    assert second == first
    assert provider.calls == 1
    assert authenticator.is_cached()


@pytest.mark.parametrize("count", [1, 2, 10])
def test_repeated_proxy_challenges_acquire_once(count):
    provider = CountingProvider([CredentialPair("alice", "s3cr3t")])
    authenticator = ProxyAuthenticator(provider)

    answers = [authenticator.get_password_authentication(PROXY_CHALLENGE) for _ in range(count)]

    assert provider.calls == 1
    assert all(answer == CredentialPair("alice", "s3cr3t") for answer in answers)


def test_server_challenge_never_acquires():
    provider = CountingProvider([CredentialPair("alice", "s3cr3t")])
    authenticator = ProxyAuthenticator(provider)

    assert authenticator(SERVER_CHALLENGE) is None
    assert provider.calls == 0
    assert authenticator.cached is None


def test_server_challenge_never_sees_cached_proxy_pair():
    provider = CountingProvider([CredentialPair("alice", "s3cr3t")])
    authenticator = ProxyAuthenticator(provider)
    authenticator(PROXY_CHALLENGE)

    assert authenticator(SERVER_CHALLENGE) is None
    assert provider.calls == 1


def test_concurrent_first_challenges_acquire_once():
    provider = SlowProvider()
    authenticator = ProxyAuthenticator(provider)
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def challenge():
        barrier.wait()
        answer = authenticator(PROXY_CHALLENGE)
        with results_lock:
            results.append(answer)

    threads = [threading.Thread(target=challenge) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert provider.calls == 1
    assert len(results) == workers
    assert set(results) == {CredentialPair("user-1", "secret")}


def test_cancelled_acquisition_returns_nothing_and_stays_unchallenged():
    provider = CountingProvider(
        [CredentialAcquisitionCancelled("dismissed"), CredentialPair("alice", "s3cr3t")]
    )
    authenticator = ProxyAuthenticator(provider)

    assert authenticator(PROXY_CHALLENGE) is None
    assert authenticator.is_cached() is False

    assert authenticator(PROXY_CHALLENGE) == CredentialPair("alice", "s3cr3t")
    assert provider.calls == 2


@pytest.mark.parametrize(
    "failure",
    [None, CredentialAcquisitionFailed("no keyring"), RuntimeError("dialog crashed")],
)
def test_failed_acquisition_is_scoped_to_the_challenge(failure):
    provider = CountingProvider([failure])
    authenticator = ProxyAuthenticator(provider)

    assert authenticator(PROXY_CHALLENGE) is None
    assert authenticator.cached is None


def test_concurrent_challenges_share_a_cancelled_acquisition():
    provider = CountingProvider([CredentialAcquisitionCancelled("dismissed"), CredentialPair("alice", "s3cr3t")])
    slow_provider = DelayedProvider(provider)
    authenticator = ProxyAuthenticator(slow_provider)
    workers = 5
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def challenge():
        barrier.wait()
        answer = authenticator(PROXY_CHALLENGE)
        with results_lock:
            results.append(answer)

    threads = [threading.Thread(target=challenge) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert provider.calls == 1
    assert results == [None] * workers
    assert authenticator.is_cached() is False

    # A later, separate challenge asks again.
    assert authenticator(PROXY_CHALLENGE) == CredentialPair("alice", "s3cr3t")
    assert provider.calls == 2


@pytest.mark.parametrize("answer", [("only-user",), 42, ("a", "b", "c")])
def test_malformed_answers_count_as_failure(answer):
    provider = CountingProvider([answer])
    authenticator = ProxyAuthenticator(provider)

    assert authenticator(PROXY_CHALLENGE) is None
    assert authenticator.cached is None


def test_tuple_answers_are_normalised():
    authenticator = ProxyAuthenticator(CountingProvider([("bob", "pw")]))

    assert authenticator(PROXY_CHALLENGE) == CredentialPair("bob", "pw")


def test_invalidate_forces_new_acquisition():
    provider = CountingProvider([CredentialPair("alice", "old"), CredentialPair("alice", "new")])
    authenticator = ProxyAuthenticator(provider)
    authenticator(PROXY_CHALLENGE)

    authenticator.invalidate()

    assert authenticator.cached is None
    assert authenticator(PROXY_CHALLENGE) == CredentialPair("alice", "new")
    assert provider.calls == 2


def test_provider_is_required():
    with pytest.raises(ValueError):
        ProxyAuthenticator(None)  # type: ignore[arg-type]
