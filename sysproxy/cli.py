#!/usr/bin/env python3
"""
Proxy policy diagnostics.

Usage:
    python -m sysproxy [--env-file .env] [--strategy os_default] [--host example.com]
    python -m sysproxy --fetch https://example.com
"""

import argparse
import sys
import urllib.error
import urllib.request
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from helpers.unified_logger import set_console_level

from .config import load_settings
from .discovery import ProxyDiscovery
from .exceptions import PermissionDenied, ProxyConfigurationError, ProxyError
from .installer import ProxyPolicyInstaller
from .models import Strategy
from .routing import RoutingFunction

DEFAULT_PROTOCOLS = ["http", "https", "ftp", "socks"]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="sysproxy",
        description="Show the operating system proxy policy as this process would install it.",
    )

    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to an environment file with SYSPROXY_* settings (default: .env).",
    )

    parser.add_argument(
        "--strategy",
        "-s",
        type=str,
        default=None,
        choices=[member.value for member in Strategy],
        help="Discovery strategy (default: SYSPROXY_STRATEGY or os_default).",
    )

    parser.add_argument(
        "--protocol",
        "-p",
        action="append",
        default=None,
        help="Protocol to check; repeat for several (default: http, https, ftp, socks).",
    )

    parser.add_argument(
        "--host",
        type=str,
        default="example.com",
        help="Target host used to resolve endpoints (default: example.com).",
    )

    parser.add_argument(
        "--fetch",
        type=str,
        default=None,
        metavar="URL",
        help="Install the policy and fetch URL through it, prompting for credentials if challenged.",
    )

    parser.add_argument(
        "--log-level",
        "-l",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL or INFO).",
    )

    return parser.parse_args(argv)


def render_policy(console: Console, routing: RoutingFunction, protocols: List[str], host: str) -> None:
    table = Table(title=f"Proxy policy: {routing.describe()}")
    table.add_column("Protocol", style="cyan")
    table.add_column("Proxy active", justify="center")
    table.add_column(f"Endpoints for {host}")

    for protocol in protocols:
        active = ProxyPolicyInstaller.detect_active_proxy(routing, protocol)
        try:
            endpoints = ", ".join(str(e) for e in routing.select(protocol, host)) or "DIRECT"
        except ProxyError as exc:
            endpoints = f"[red]{exc}[/red]"
        table.add_row(protocol, "[green]yes[/green]" if active else "no", endpoints)

    console.print(table)


def fetch(console: Console, url: str) -> int:
    try:
        with urllib.request.urlopen(url, timeout=30) as response:
            console.print(f"[green]{url} -> HTTP {response.status}[/green]")
            return 0
    except urllib.error.HTTPError as exc:
        console.print(f"[yellow]{url} -> HTTP {exc.code} {exc.reason}[/yellow]")
        return 1
    except (urllib.error.URLError, OSError) as exc:
        console.print(f"[red]{url} failed: {exc}[/red]")
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    console = Console()

    try:
        settings = load_settings(args.env_file)
    except ProxyConfigurationError as exc:
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        return 1

    set_console_level(args.log_level or settings.log_level)
    strategy = Strategy.parse(args.strategy) if args.strategy else settings.strategy
    protocols = args.protocol or DEFAULT_PROTOCOLS

    try:
        if args.fetch:
            routing = ProxyPolicyInstaller.install(
                settings.credential_provider(),
                strategy=strategy,
                export_environment=settings.export_environment,
            )
        else:
            routing = ProxyDiscovery().discover(strategy)
    except PermissionDenied as exc:
        console.print(f"[red]{exc}[/red]")
        return 2
    except ProxyConfigurationError as exc:
        console.print(f"[red]Unusable proxy configuration: {exc}[/red]")
        return 1

    render_policy(console, routing, protocols, args.host)

    if args.fetch:
        return fetch(console, args.fetch)
    return 0


if __name__ == "__main__":
    sys.exit(main())
