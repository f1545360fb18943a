"""
ducq client orchestrator

Responsible for the lifecycle of one client run:
- Connect, send the request and listen, with bounded retries and backoff
- Cancellation by SIGINT/SIGTERM at any blocking point
- Shutdown sequence, run exactly once however the run ends
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from ducq_client.config import ClientConfig
from ducq_client.listener import ListenContext
from ducq_client.signals import (
    Cancellation,
    CancellationRequested,
    SignalController,
    SignalSetupError,
)
from ducq_client.transport import State, TcpConnection, TransportError

logger = logging.getLogger(__name__)

# Connection attempts per run
MAX_ATTEMPTS = 3

# Backoff before attempt n is BACKOFF_STEP * (n - 1) seconds
BACKOFF_STEP = 5

# Timeout requested from the transport on every attempt
TIMEOUT_SECONDS = 60


class Phase(Enum):
    """Where the orchestrator is in its connect/send/listen cycle."""
    INIT = "init"
    CONNECTING = "connecting"
    SENDING = "sending"
    LISTENING = "listening"
    SUCCEEDED = "succeeded"
    RETRY_PENDING = "retry_pending"
    EXHAUSTED = "exhausted"


# ============================================================================
# Orchestrator
# ============================================================================


class Orchestrator:
    """
    Drives one connection through connect -> send -> listen.

    Only one handle exists per run; each attempt closes it and reconnects.
    Failures are logged and retried, never raised. Only
    CancellationRequested escapes emit().
    """

    def __init__(
        self,
        config: ClientConfig,
        context: ListenContext,
        token: Cancellation,
        connection_factory: Callable[[str, str], TcpConnection] = TcpConnection,
        backoff_step: float = BACKOFF_STEP,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Effective client configuration.
            context: Receiver for the events read while listening.
            token: Cancellation observed at every blocking call.
            connection_factory: Creates the handle from (host, port).
            backoff_step: Seconds of backoff per previous attempt.
            logger: Logger (default: module logger).
        """
        self.config = config
        self.context = context
        self.token = token
        self.connection_factory = connection_factory
        self.backoff_step = backoff_step
        self.log = logger or logging.getLogger(__name__)

        self.connection: Optional[TcpConnection] = None
        self.phase = Phase.INIT
        self.attempts = 0

    async def emit(self) -> Optional[TcpConnection]:
        """
        Run up to MAX_ATTEMPTS connect/send/listen cycles.

        Returns:
            The handle, connected or not, for the caller to clean up.
            None if the handle could not be created.

        Raises:
            CancellationRequested: If the run was cancelled.
        """
        config = self.config
        self.log.info(f"{config.host}:{config.port}")
        self.log.info(
            f"'{config.command} {config.route}\n"
            f"{config.payload.decode('utf-8', errors='replace')}'"
        )

        try:
            self.connection = self.connection_factory(config.host, config.port)
        except TransportError as e:
            self.log.error(f"cannot create connection: {e}")
            return None

        while self.attempts < MAX_ATTEMPTS:
            self.token.raise_if_set()
            self.attempts += 1
            self.log.info(f"connection try #{self.attempts}.")

            if self.attempts > 1:
                self.phase = Phase.RETRY_PENDING
                delay = self.backoff_step * (self.attempts - 1)
                self.log.info(f"backing off {delay} seconds...")
                await self.token.sleep(delay)

            await self.token.guard(self.connection.close())
            if await self._attempt():
                self.phase = Phase.SUCCEEDED
                break
        else:
            self.phase = Phase.EXHAUSTED

        self.log.info(f"done after try #{self.attempts}.")
        return self.connection

    async def _attempt(self) -> bool:
        """
        Run one connect/send/listen cycle.

        Returns:
            True if the cycle ended without a hard error.
        """
        conn = self.connection
        config = self.config

        self.phase = Phase.CONNECTING
        state = await self.token.guard(conn.connect())
        if state != State.OK:
            self._log_error("connect", state)
            return False

        state = conn.set_timeout(TIMEOUT_SECONDS)
        if state != State.OK:
            self._log_error("set_timeout", state)
            return False

        self.phase = Phase.SENDING
        state = await self.token.guard(
            conn.emit(config.command, config.route, config.payload)
        )
        if state != State.OK:
            self._log_error("emit", state)
            return False

        self.phase = Phase.LISTENING
        self.log.info("listening")
        state = await self.token.guard(conn.listen(self.context))
        if not state.is_hard_error:
            return True

        self._log_error("listen returned", state)
        return False

    def _log_error(self, operation: str, state: State) -> None:
        """Log a failed operation with its status and the OS error text."""
        self.log.error(
            f"{operation}: {state.describe()} "
            f"(errno: {self.connection.last_error or 'none'})"
        )


# ============================================================================
# Shutdown
# ============================================================================


class Shutdown:
    """
    Teardown for a run: close and release the connection, then finalize
    the listen context. Runs once; every step is best effort.
    """

    def __init__(self, context: ListenContext, logger: Optional[logging.Logger] = None):
        self.context = context
        self.log = logger or logging.getLogger(__name__)
        self.done = False

    async def run(self, connection: Optional[TcpConnection]) -> None:
        """Execute the shutdown sequence. Later calls do nothing."""
        if self.done:
            return
        self.done = True

        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                self.log.error(f"Error closing connection: {e}")

            try:
                connection.release()
            except Exception as e:
                self.log.error(f"Error releasing connection: {e}")

        self.log.info("finalizing...")

        try:
            self.context.finalize()
        except Exception as e:
            self.log.error(f"Error finalizing listen context: {e}")


# ============================================================================
# Convenience Functions
# ============================================================================


async def run_client(
    config: ClientConfig,
    context: ListenContext,
    *,
    token: Optional[Cancellation] = None,
    controller: Optional[SignalController] = None,
    connection_factory: Callable[[str, str], TcpConnection] = TcpConnection,
    backoff_step: float = BACKOFF_STEP,
) -> int:
    """
    Run the client with signal handling and a guaranteed shutdown.

    Args:
        config: Effective client configuration.
        context: Listen context; finalized before returning.
        token: Cancellation token (default: a new one).
        controller: Signal controller (default: one bound to `token`).
        connection_factory: Creates the connection handle.
        backoff_step: Seconds of backoff per previous attempt.

    Returns:
        Exit code (0 for success, non-zero if signals could not be set up).
    """
    token = token or Cancellation()
    controller = controller or SignalController(token)
    orchestrator = Orchestrator(
        config,
        context,
        token,
        connection_factory=connection_factory,
        backoff_step=backoff_step,
    )
    shutdown = Shutdown(context)
    exit_code = 0

    try:
        controller.install()
        await orchestrator.emit()

    except SignalSetupError as e:
        logger.error(str(e))
        exit_code = 1

    except CancellationRequested as e:
        logger.info(f"received {e.reason or 'cancellation'}")

    finally:
        controller.restore()
        await shutdown.run(orchestrator.connection)

    return exit_code
