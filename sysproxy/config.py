"""
Settings for proxy installation, read from the environment and an optional
``.env`` file.

Variables:
    SYSPROXY_STRATEGY         discovery strategy (os_default, env_var, win, osx)
    SYSPROXY_EXPORT_ENV       mirror the policy into *_proxy variables (true/false)
    SYSPROXY_USERNAME         static proxy username (headless deployments)
    SYSPROXY_PASSWORD         static proxy password
    SYSPROXY_PROMPT_TIMEOUT   seconds to wait for an interactive answer
    LOG_LEVEL                 console log level
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

import dotenv

from .auth import CredentialProvider
from .exceptions import ProxyConfigurationError
from .models import Strategy
from .providers import ConsoleCredentialProvider, DispatchingCredentialProvider, StaticCredentialProvider

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class ProxySettings:
    strategy: Strategy = Strategy.OS_DEFAULT
    export_environment: bool = False
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    prompt_timeout: Optional[float] = None
    log_level: str = "INFO"

    @property
    def has_static_credentials(self) -> bool:
        return bool(self.username) and self.password is not None

    def credential_provider(self) -> CredentialProvider:
        """
        Static credentials when configured, an interactive console prompt
        otherwise. With a prompt timeout the prompt runs on a daemon thread so
        the waiting network thread can give up and an abandoned prompt never
        keeps the process alive.
        """
        if self.has_static_credentials:
            return StaticCredentialProvider(self.username, self.password)
        console = ConsoleCredentialProvider()
        if self.prompt_timeout is None:
            return console
        return DispatchingCredentialProvider(console, _start_prompt_thread, timeout=self.prompt_timeout)


def _start_prompt_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="proxy-prompt", daemon=True).start()


def load_settings(
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxySettings:
    """
    Load settings.

    Args:
        env_file: ``.env`` file to load first. Existing environment variables
            are never overridden by it.
        environ: Mapping to read instead of ``os.environ`` (the env file is
            not loaded in that case).

    Raises:
        ProxyConfigurationError: a variable holds an invalid value.
    """
    if environ is None:
        if env_file is not None:
            dotenv.load_dotenv(env_file, override=False)
        environ = os.environ

    strategy_raw = environ.get("SYSPROXY_STRATEGY")
    strategy = Strategy.parse(strategy_raw) if strategy_raw else Strategy.OS_DEFAULT

    return ProxySettings(
        strategy=strategy,
        export_environment=_parse_bool("SYSPROXY_EXPORT_ENV", environ.get("SYSPROXY_EXPORT_ENV", "")),
        username=environ.get("SYSPROXY_USERNAME") or None,
        password=environ.get("SYSPROXY_PASSWORD"),
        prompt_timeout=_parse_timeout(environ.get("SYSPROXY_PROMPT_TIMEOUT")),
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
    )


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ProxyConfigurationError(f"{name} must be a boolean, got '{value}'")


def _parse_timeout(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError as exc:
        raise ProxyConfigurationError(f"SYSPROXY_PROMPT_TIMEOUT must be a number, got '{value}'") from exc
    if timeout <= 0:
        raise ProxyConfigurationError("SYSPROXY_PROMPT_TIMEOUT must be positive")
    return timeout
