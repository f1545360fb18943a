"""
ducq client logging

Process-wide, replaceable log sink for every ducq_client component.
Each record is tagged with the process id and its level, e.g.:

    pid 4242: [INFO] connection try #1.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Optional

LOGGER_NAME = "ducq_client"
LOG_FORMAT = "pid %(process)d: [%(levelname)s] %(message)s"

# The handler currently installed by configure_logging()
_sink: Optional[logging.Handler] = None


def configure_logging(
    stream: Optional[IO[str]] = None,
    level: int = logging.DEBUG,
    handler: Optional[logging.Handler] = None,
) -> logging.Handler:
    """
    Install the log sink for the ducq_client logger tree.

    Calling this again replaces the previous sink.

    Args:
        stream: Stream for the default sink (default: stdout).
        level: Minimum level to emit.
        handler: Custom sink. Used as-is instead of the default stream sink.

    Returns:
        The handler now attached.
    """
    global _sink

    root = logging.getLogger(LOGGER_NAME)

    if _sink is not None:
        root.removeHandler(_sink)

    if handler is None:
        handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root.addHandler(handler)
    root.setLevel(level)

    _sink = handler
    return handler
