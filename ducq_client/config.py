"""
ducq client configuration

Resolves the effective client configuration from three layers, lowest
precedence first:
- Built-in defaults
- $HOME/.config/ducq.yaml (optional, may define `host` and `port`)
- Command-line arguments
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import yaml

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_HOST = "localhost"
DEFAULT_PORT = "9090"
DEFAULT_COMMAND = "list_commands"
DEFAULT_ROUTE = "*"
DEFAULT_PAYLOAD = ""

# Config file location, relative to the home directory
CONFIG_FILE = Path(".config") / "ducq.yaml"

# Longest values accepted from the config file
HOST_MAX_LENGTH = 255
PORT_MAX_LENGTH = 5

# Settings the config file may override, with their length limits
FILE_SETTINGS = {
    "host": HOST_MAX_LENGTH,
    "port": PORT_MAX_LENGTH,
}


class ConfigurationError(Exception):
    """The configuration cannot be resolved. Fatal before any connection."""


class UsageRequested(Exception):
    """The user asked for the usage text."""


@dataclass(frozen=True)
class ClientConfig:
    """Effective configuration for one client run."""
    host: str = DEFAULT_HOST
    port: str = DEFAULT_PORT
    command: str = DEFAULT_COMMAND
    route: str = DEFAULT_ROUTE
    payload: bytes = DEFAULT_PAYLOAD.encode()
    argv: tuple[str, ...] = ()


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting the process."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigurationError(message)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser. `-h` is --host, so help is handled apart."""
    parser = _ArgumentParser(
        prog="ducq",
        description="Send one command to a ducq server and print what it sends back.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "--host", "-h",
        metavar="ADDR",
        help=f"server host address (default: {DEFAULT_HOST})"
    )
    parser.add_argument(
        "--port", "-p",
        metavar="PORT",
        help=f"server port (default: {DEFAULT_PORT})"
    )
    parser.add_argument(
        "--command", "-c",
        metavar="CMD",
        help=f"mandatory. use '{DEFAULT_COMMAND}' to get the server's available commands."
    )
    parser.add_argument(
        "--route", "-r",
        metavar="ROUTE",
        help=f"route to publish to (default: '{DEFAULT_ROUTE}')"
    )
    parser.add_argument(
        "--payload", "-l",
        metavar="PAYLOAD",
        help="payload to be sent (default: empty)"
    )
    return parser


# Every flag takes the next token as its value, even one starting with "-"
_VALUE_FLAGS = {
    "--host": "--host", "-h": "--host",
    "--port": "--port", "-p": "--port",
    "--command": "--command", "-c": "--command",
    "--route": "--route", "-r": "--route",
    "--payload": "--payload", "-l": "--payload",
}


def _join_flag_values(argv: Sequence[str]) -> list[str]:
    """Rewrite `flag value` pairs as `--flag=value` so argparse keeps the value as is."""
    joined = []
    i = 0
    while i < len(argv):
        flag = _VALUE_FLAGS.get(argv[i])
        if flag is not None and i + 1 < len(argv):
            joined.append(f"{flag}={argv[i + 1]}")
            i += 2
        else:
            joined.append(argv[i])
            i += 1
    return joined


def usage() -> str:
    """Get the usage text printed for --help."""
    return build_parser().format_help()


def config_file_path(home: str) -> Path:
    """Get the config file path under the given home directory."""
    return Path(home) / CONFIG_FILE


def load_config_file(path: Path) -> dict[str, str]:
    """
    Read host/port overrides from the YAML config file.

    A file that is missing, unreadable, malformed or not a mapping
    contributes nothing. Only string values are used.

    Args:
        path: Path to the config file.

    Returns:
        Overrides found in the file.

    Raises:
        ConfigurationError: If a value exceeds its length limit.
    """
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.debug(f"Config file {path} not used: {e}")
        return {}

    if not isinstance(raw, dict):
        logger.debug(f"Config file {path} has no settings mapping, ignored")
        return {}

    overrides = {}
    for key, max_length in FILE_SETTINGS.items():
        value = raw.get(key)
        if not isinstance(value, str):
            continue
        if len(value) > max_length:
            raise ConfigurationError(
                f"{key} in {path} is longer than {max_length} characters"
            )
        overrides[key] = value

    return overrides


def resolve_config(argv: Sequence[str], home: Optional[str] = None) -> ClientConfig:
    """
    Merge defaults, config file and command-line arguments.

    Args:
        argv: Command-line arguments, without the program name.
        home: Home directory holding .config/ducq.yaml (default: $HOME).

    Returns:
        The effective ClientConfig.

    Raises:
        UsageRequested: If the first argument is --help.
        ConfigurationError: If $HOME is missing, a flag lacks its value,
            or a resolved value is invalid.
    """
    argv = list(argv)

    if argv and argv[0] == "--help":
        raise UsageRequested()

    if home is None:
        home = os.environ.get("HOME")
    if not home:
        raise ConfigurationError("HOME is not set, cannot locate the config file")

    settings = {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "command": DEFAULT_COMMAND,
        "route": DEFAULT_ROUTE,
        "payload": DEFAULT_PAYLOAD,
    }

    settings.update(load_config_file(config_file_path(home)))

    args, ignored = build_parser().parse_known_args(_join_flag_values(argv))
    if ignored:
        logger.debug(f"Ignoring arguments: {' '.join(ignored)}")

    for key in settings:
        value = getattr(args, key)
        if value is not None:
            settings[key] = value

    for key in ("host", "port"):
        if not settings[key]:
            raise ConfigurationError(f"{key} must not be empty")

    return ClientConfig(
        host=settings["host"],
        port=settings["port"],
        command=settings["command"],
        route=settings["route"],
        payload=settings["payload"].encode(),
        argv=tuple(argv),
    )
