"""
Keepalive CLI.

Usage:
    keepalive                          # Run the launcher (same as `keepalive run`)
    keepalive run --script bot.py      # Supervise bot.py, health endpoint on :8080
    keepalive run --port 9000 --cwd /srv/bot
    keepalive status                   # Query a running launcher
    keepalive status --url http://host:8080
    keepalive config                   # Show effective configuration
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

import yaml
from pydantic import ValidationError

from keepalive import __version__
from keepalive.config import Settings, get_config_path, reload_settings


# --- Helpers ---


def _api_get(url: str) -> dict:
    """Make a GET request to a running launcher."""
    req = Request(url)
    req.add_header("Accept", "application/json")
    with urlopen(req, timeout=5) as resp:
        return json.loads(resp.read())


def _settings_from_args(args: argparse.Namespace) -> Settings:
    """Build settings, letting CLI flags override env and config file."""
    overrides: dict[str, Any] = {
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "script": getattr(args, "script", None),
        "working_dir": getattr(args, "cwd", None),
        "interpreter": getattr(args, "interpreter", None),
        "log_level": getattr(args, "log_level", None),
    }
    try:
        return reload_settings(**overrides)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(2)


def _default_url() -> str:
    try:
        port = reload_settings().port
    except ValidationError:
        port = 8080
    return f"http://localhost:{port}"


# --- Commands ---


def cmd_run(args: argparse.Namespace) -> None:
    """Run the launcher in the foreground until SIGINT/SIGTERM."""
    settings = _settings_from_args(args)

    from keepalive.lib.logger import setup_logging
    from keepalive.server import run

    setup_logging(level=settings.log_level, format_string=settings.log_format)
    run(settings)


def cmd_status(args: argparse.Namespace) -> None:
    """Show the worker status reported by a running launcher."""
    url = (args.url or _default_url()).rstrip("/")

    print(f"Keepalive: {url}")
    try:
        health = _api_get(f"{url}/health?detailed=true")
    except (URLError, OSError):
        print("  status: not running")
        sys.exit(1)

    alive = health.get("alive", False)
    print(f"  worker: {'alive' if alive else 'DOWN'} ({health.get('state', '?')})")
    if health.get("pid"):
        print(f"  pid: {health['pid']}")
        print(f"  uptime: {health.get('child_uptime') or 0:.0f}s")
    print(f"  restarts: {health.get('restarts', 0)}")
    print(f"  next delay: {health.get('current_delay', 0):g}s")

    last_exit = health.get("last_exit")
    if last_exit:
        print(
            f"  last exit: code={last_exit.get('code')} signal={last_exit.get('signal')}"
            f" after {last_exit.get('uptime', 0):.1f}s"
        )
    print(f"  launcher: v{health.get('version', '?')}, up {health.get('uptime', 0):.0f}s")

    if not alive:
        sys.exit(1)


def cmd_config(args: argparse.Namespace) -> None:
    """Print effective settings as YAML."""
    settings = _settings_from_args(args)
    config_path = get_config_path(settings.working_dir)

    print(f"# Config file: {config_path}{'' if config_path.exists() else ' (not found)'}")
    data = settings.model_dump(mode="json")
    print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), end="")


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", help="Health endpoint bind address (default: 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, help="Health endpoint port (default: 8080)")
    parser.add_argument("--script", "-s", type=Path, help="Worker script (default: bot.py)")
    parser.add_argument("--cwd", type=Path, help="Worker working directory (default: .)")
    parser.add_argument("--interpreter", help="Interpreter for the worker script")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="keepalive",
        description="Keep a worker process running and report its health over HTTP",
    )
    parser.add_argument("--version", action="version", version=f"keepalive {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser("run", help="Run the launcher (default)")
    _add_run_options(run_parser)

    # status
    status_parser = subparsers.add_parser("status", help="Query a running launcher")
    status_parser.add_argument("--url", help="Launcher URL (default: http://localhost:$PORT)")

    # config
    config_parser = subparsers.add_parser("config", help="Show effective configuration")
    _add_run_options(config_parser)

    args = parser.parse_args(argv)

    if args.command == "status":
        cmd_status(args)
    elif args.command == "config":
        cmd_config(args)
    else:
        cmd_run(args)


if __name__ == "__main__":
    main()
