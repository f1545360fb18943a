#!/usr/bin/env python3
"""
ducq - command-line client for a ducq server

Usage:
  ducq [-h HOST] [-p PORT] [-c COMMAND] [-r ROUTE] [-l PAYLOAD]
        Send COMMAND on ROUTE with PAYLOAD, then print the events the
        server sends back until it closes the exchange.

  ducq --help
        Print usage and exit.

Settings are read from built-in defaults, then ~/.config/ducq.yaml
(`host` and `port`), then the command line.

Signals:
  SIGINT, SIGTERM  stop and shut down cleanly
  SIGQUIT          detach and keep running in the background
"""

from __future__ import annotations

import asyncio
import sys
from typing import Optional, Sequence

from ducq_client.config import ConfigurationError, UsageRequested, resolve_config, usage
from ducq_client.listener import InitializationError, initialize
from ducq_client.log import configure_logging
from ducq_client.orchestrator import run_client


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    try:
        config = resolve_config(argv)
    except UsageRequested:
        print(usage(), file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    configure_logging()

    try:
        context = initialize(config)
    except InitializationError as e:
        print(f"client initialization failed: {e}", file=sys.stderr)
        return 1

    if context.log_handler is not None:
        configure_logging(handler=context.log_handler)

    return asyncio.run(run_client(config, context))


if __name__ == "__main__":
    sys.exit(main())
