"""
ducq listen context

Receives the events the server sends back and prints them. Created once
per process by initialize() and finalized once at shutdown.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Optional

from ducq_client.config import ClientConfig
from ducq_client.transport import Message, State


class InitializationError(Exception):
    """The listen context could not be created."""


class ListenContext:
    """Prints every event received on the connection."""

    def __init__(
        self,
        stream: Optional[IO[str]] = None,
        log_handler: Optional[logging.Handler] = None,
    ):
        self.stream = stream if stream is not None else sys.stdout
        # sink to log through instead of the default one, if set
        self.log_handler = log_handler
        self.received = 0
        self._finalized = False

    @property
    def finalized(self) -> bool:
        """Check if finalize() was called."""
        return self._finalized

    def on_message(self, message: Message) -> State:
        """Print one event. Stops the receive loop once finalized."""
        if self._finalized:
            return State.CLOSE

        payload = message.payload.decode("utf-8", errors="replace")
        self.stream.write(f"{message.command} {message.route}\n{payload}\n")
        self.stream.flush()
        self.received += 1
        return State.OK

    def finalize(self) -> None:
        """Flush the output. Calling it again does nothing."""
        if self._finalized:
            return
        self._finalized = True
        try:
            self.stream.flush()
        except (OSError, ValueError):
            # stdout may be gone after the process detached
            pass


def initialize(
    config: ClientConfig,
    stream: Optional[IO[str]] = None,
    log_handler: Optional[logging.Handler] = None,
) -> ListenContext:
    """
    Create the listen context for a run.

    Args:
        config: Effective client configuration.
        stream: Output for received events (default: stdout).
        log_handler: Log sink the run should use instead of the default.

    Returns:
        A ready ListenContext.

    Raises:
        InitializationError: If the output stream cannot be written to.
    """
    stream = stream if stream is not None else sys.stdout
    try:
        writable = stream.writable()
    except (OSError, ValueError) as e:
        raise InitializationError(f"output stream unusable: {e}") from e
    if not writable:
        raise InitializationError("output stream is not writable")

    return ListenContext(stream, log_handler=log_handler)
