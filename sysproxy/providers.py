"""Ready-made credential providers."""

from __future__ import annotations

import getpass
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from rich.console import Console
from rich.prompt import Prompt

from helpers.unified_logger import get_core_logger

from .auth import CredentialProvider
from .exceptions import CredentialAcquisitionCancelled, CredentialAcquisitionFailed
from .models import CredentialPair

logger = get_core_logger("providers")


class StaticCredentialProvider:
    """Returns a fixed pair; for headless processes configured up front."""

    def __init__(self, username: str, secret: str) -> None:
        if not username:
            raise ValueError("username is required")
        self._credentials = CredentialPair(username, secret)

    def request_proxy_credentials(self) -> CredentialPair:
        return self._credentials


class CallableCredentialProvider:
    """Adapts a plain function returning a CredentialPair (or None)."""

    def __init__(self, func: Callable[[], Optional[CredentialPair]]) -> None:
        self._func = func

    def request_proxy_credentials(self) -> Optional[CredentialPair]:
        return self._func()


def provider_from_callable(func: Callable[[], Optional[CredentialPair]]) -> CredentialProvider:
    return CallableCredentialProvider(func)


class ConsoleCredentialProvider:
    """
    Prompts for proxy credentials on the terminal.

    The username is read with a rich prompt, the secret with hidden input. An
    empty username or Ctrl+C/Ctrl+D counts as a cancelled prompt.
    """

    def __init__(
        self,
        *,
        console: Optional[Console] = None,
        message: str = "Proxy authentication required",
        read_username: Optional[Callable[[str], str]] = None,
        read_secret: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._console = console or Console(stderr=True)
        self._message = message
        self._read_username = read_username or (lambda prompt: Prompt.ask(prompt, console=self._console))
        self._read_secret = read_secret or getpass.getpass

    def request_proxy_credentials(self) -> CredentialPair:
        self._console.print(f"[bold yellow]{self._message}[/bold yellow]")
        try:
            username = self._read_username("Proxy username").strip()
            if not username:
                raise CredentialAcquisitionCancelled("Empty proxy username")
            secret = self._read_secret("Proxy password: ")
        except (KeyboardInterrupt, EOFError) as exc:
            raise CredentialAcquisitionCancelled("Proxy credential prompt interrupted") from exc
        return CredentialPair(username, secret)


class DispatchingCredentialProvider:
    """
    Runs another provider in a different execution context and blocks the
    caller until it answers.

    ``submit`` receives a zero-argument callable and must arrange for it to run
    elsewhere, e.g. ``QTimer.singleShot(0, fn)``, ``loop.call_soon_threadsafe``
    or ``executor.submit``. The network thread waits on a Future, so no
    polling happens while the human answers.

    Args:
        provider: Provider to run in the target context.
        submit: Schedules a callable in the target context.
        timeout: Seconds to wait before giving up; ``None`` waits indefinitely.
    """

    def __init__(
        self,
        provider: CredentialProvider,
        submit: Callable[[Callable[[], None]], object],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._provider = provider
        self._submit = submit
        self._timeout = timeout

    def request_proxy_credentials(self) -> Optional[CredentialPair]:
        future: "Future[Optional[CredentialPair]]" = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._provider.request_proxy_credentials())
            except BaseException as exc:
                future.set_exception(exc)

        self._submit(run)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(f"No proxy credentials received within {self._timeout}s")
            raise CredentialAcquisitionCancelled("Timed out waiting for proxy credentials") from exc
        except CancelledError as exc:
            raise CredentialAcquisitionCancelled("Proxy credential request cancelled") from exc
        except CredentialAcquisitionFailed:
            raise
        except Exception as exc:
            raise CredentialAcquisitionFailed(str(exc)) from exc
