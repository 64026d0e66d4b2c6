"""Pytest configuration for sysproxy tests."""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sysproxy.installer import PROXY_ENV_VARS, ProxyPolicyInstaller  # noqa: E402


@pytest.fixture(autouse=True)
def reset_proxy_policy():
    saved_env = {key: os.environ.get(key) for key in PROXY_ENV_VARS}
    ProxyPolicyInstaller.reset()
    yield
    ProxyPolicyInstaller.reset()
    for key, value in saved_env.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
