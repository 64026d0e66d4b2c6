"""
Proxy authentication hook.

The networking stack calls the installed ProxyAuthenticator whenever a
connection receives an authentication challenge. Proxy challenges are answered
with credentials obtained from a CredentialProvider exactly once per process;
every later challenge reuses the cached pair.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol, runtime_checkable

from helpers.unified_logger import get_core_logger

from .exceptions import CredentialAcquisitionCancelled, CredentialAcquisitionFailed
from .models import ChallengeContext, CredentialPair

logger = get_core_logger("authenticator")


@runtime_checkable
class CredentialProvider(Protocol):
    """
    Obtains proxy credentials, typically by asking a human.

    Implementations may block until an answer is available. Returning ``None``
    or raising CredentialAcquisitionCancelled means the prompt was dismissed.
    """

    def request_proxy_credentials(self) -> Optional[CredentialPair]:
        ...


class ProxyAuthenticator:
    """
    Process-wide authentication hook bridging challenges to a CredentialProvider.

    State moves from Unchallenged to Cached on the first successful proxy
    acquisition and stays there until invalidate() is called. The cache check,
    acquisition and store happen under one lock, so concurrent first
    challenges acquire once and all observe the same pair.
    """

    def __init__(self, provider: CredentialProvider) -> None:
        if provider is None:
            raise ValueError("CredentialProvider is required")
        self._provider = provider
        self._lock = threading.Lock()
        self._credentials: Optional[CredentialPair] = None
        self._attempts = 0

    @property
    def provider(self) -> CredentialProvider:
        return self._provider

    @property
    def cached(self) -> Optional[CredentialPair]:
        """The cached pair, without triggering acquisition."""
        with self._lock:
            return self._credentials

    def is_cached(self) -> bool:
        return self.cached is not None

    def __call__(self, context: ChallengeContext) -> Optional[CredentialPair]:
        return self.get_password_authentication(context)

    def get_password_authentication(self, context: ChallengeContext) -> Optional[CredentialPair]:
        """
        Answer one challenge.

        A challenge that was already waiting while an acquisition ran shares
        that acquisition's outcome, even when it produced nothing. Only a
        challenge arriving after a failed attempt asks the provider again.

        Returns:
            The cached proxy credentials for PROXY challenges, ``None`` for
            server challenges or when acquisition failed/was cancelled.
        """
        if not context.is_proxy:
            # Server authentication is left to the networking stack's own handling.
            return None

        # Read before waiting on the lock; the counter only grows.
        seen_attempts = self._attempts
        with self._lock:
            if self._credentials is None and self._attempts == seen_attempts:
                self._credentials = self._acquire(context)
                self._attempts += 1
            return self._credentials

    def invalidate(self) -> None:
        """Forget the cached pair so the next proxy challenge prompts again."""
        with self._lock:
            if self._credentials is not None:
                logger.info("Proxy credentials invalidated")
            self._credentials = None

    def _acquire(self, context: ChallengeContext) -> Optional[CredentialPair]:
        target = context.host or "proxy"
        if context.host and context.port:
            target = f"{context.host}:{context.port}"
        logger.info(f"Requesting proxy credentials for {target}")
        try:
            credentials = self._provider.request_proxy_credentials()
            if credentials is not None and not isinstance(credentials, CredentialPair):
                credentials = _as_pair(credentials)
        except CredentialAcquisitionCancelled:
            logger.warning(f"Proxy credential prompt for {target} cancelled")
            return None
        except CredentialAcquisitionFailed as exc:
            logger.warning(f"Proxy credential acquisition for {target} failed: {exc}")
            return None
        except Exception as exc:
            logger.exception(f"Credential provider raised {type(exc).__name__}: {exc}")
            return None

        if credentials is None:
            logger.warning(f"No proxy credentials supplied for {target}")
            return None
        logger.info(f"Proxy credentials cached for user '{credentials.username}'")
        return credentials


def _as_pair(answer: object) -> CredentialPair:
    try:
        username, secret = answer  # type: ignore[misc]
    except (TypeError, ValueError) as exc:
        raise CredentialAcquisitionFailed(
            f"Provider returned {type(answer).__name__}, expected a username/secret pair"
        ) from exc
    return CredentialPair(username, secret)
