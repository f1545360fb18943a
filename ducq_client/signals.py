"""
ducq client signal handling

- SIGINT/SIGTERM: cancel the run. Any blocking operation guarded by the
  Cancellation token is abandoned and the caller unwinds to shutdown.
- SIGQUIT: detach from the terminal and keep running in the background.
- SIGPIPE: ignored, so writes to a closed peer fail with an error instead
  of killing the process.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Signals that cancel the run
ABORT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class CancellationRequested(Exception):
    """The run was cancelled by a signal."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason


class SignalSetupError(RuntimeError):
    """Signal handlers could not be installed."""


class Cancellation:
    """
    One-shot cancellation token.

    trigger() arms it once; every guarded await observes it immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def is_set(self) -> bool:
        """Check if cancellation was requested."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Get what triggered the cancellation (a signal name)."""
        return self._reason

    def trigger(self, reason: str) -> bool:
        """
        Request cancellation.

        Returns:
            True if this call armed the token, False if it was already set.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    def raise_if_set(self) -> None:
        """Raise CancellationRequested if cancellation was requested."""
        if self._event.is_set():
            raise CancellationRequested(self._reason)

    async def guard(self, aw: Awaitable[Any]) -> Any:
        """
        Await `aw` unless cancellation arrives first.

        Returns:
            The result of `aw`.

        Raises:
            CancellationRequested: If the token is or becomes set. `aw` is
                cancelled and awaited before raising.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise CancellationRequested(self._reason)

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled operation failed while unwinding: {e}")
        raise CancellationRequested(self._reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds` unless cancellation arrives first."""
        await self.guard(asyncio.sleep(seconds))


def daemonize() -> None:
    """
    Continue as a background process, like daemon(0, 0).

    The parent exits at once; the child becomes a session leader, moves to
    / and points stdin, stdout and stderr at /dev/null.

    Raises:
        OSError: If fork or setsid fails. The process is unchanged.
    """
    pid = os.fork()
    if pid > 0:
        os._exit(0)

    os.setsid()
    os.chdir("/")

    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)


class SignalController:
    """
    Routes process signals into the running event loop.

    Handlers run as ordinary loop callbacks, never inside an interrupted
    operation.
    """

    def __init__(
        self,
        token: Cancellation,
        daemonize: Callable[[], None] = daemonize,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the controller.

        Args:
            token: Token armed by SIGINT/SIGTERM.
            daemonize: Called on SIGQUIT to detach the process.
            logger: Logger for SIGQUIT handling (default: module logger).
        """
        self.token = token
        self._daemonize = daemonize
        self._logger = logger or logging.getLogger(__name__)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._original_sigpipe = None
        self.detached = False

    @property
    def installed(self) -> bool:
        """Check if handlers are installed."""
        return self._loop is not None

    def install(self) -> None:
        """
        Install handlers on the running event loop.

        Raises:
            SignalSetupError: If a handler cannot be installed.
        """
        if self._loop is not None:
            return

        loop = asyncio.get_running_loop()
        try:
            for sig in ABORT_SIGNALS:
                loop.add_signal_handler(sig, self._on_abort, sig)
            loop.add_signal_handler(signal.SIGQUIT, self._on_quit)
            self._original_sigpipe = signal.signal(signal.SIGPIPE, signal.SIG_IGN)
        except (NotImplementedError, RuntimeError, ValueError, OSError) as e:
            for sig in (*ABORT_SIGNALS, signal.SIGQUIT):
                loop.remove_signal_handler(sig)
            raise SignalSetupError(f"cannot install signal handlers: {e}") from e

        self._loop = loop

    def restore(self) -> None:
        """Remove the handlers installed by install()."""
        if self._loop is None:
            return

        for sig in (*ABORT_SIGNALS, signal.SIGQUIT):
            self._loop.remove_signal_handler(sig)
        if self._original_sigpipe is not None:
            signal.signal(signal.SIGPIPE, self._original_sigpipe)
            self._original_sigpipe = None

        self._loop = None

    def _on_abort(self, signum: int) -> None:
        """Handle SIGINT/SIGTERM. Only the first one counts."""
        self.token.trigger(signal.Signals(signum).name)

    def _on_quit(self) -> None:
        """Handle SIGQUIT by detaching. The run is not interrupted."""
        self._logger.info("received SIGQUIT")
        self._logger.info("becoming daemon")
        try:
            self._daemonize()
        except OSError as e:
            self._logger.error(f"daemon() failed: {e}")
            return

        self.detached = True
        self._logger.info(f"became daemon (pid {os.getpid()})")
