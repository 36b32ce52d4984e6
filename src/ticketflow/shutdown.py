"""
Graceful shutdown coordination for participant processes.

This module provides:
- ShutdownReason: What triggered the shutdown
- ShutdownResult: Outcome of a shutdown
- ShutdownCoordinator: SIGTERM/SIGINT handling and a bounded drain

On the first signal the process stops fetching and lets in-flight handlers
finish within the grace timeout. A second signal forces the drain to end
immediately; envelopes still in flight stay uncommitted and are redelivered
to the next group member.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownReason(Enum):
    """Reason for shutdown initiation."""

    SIGNAL_SIGTERM = "signal_sigterm"
    """Shutdown triggered by SIGTERM (container orchestrators)."""

    SIGNAL_SIGINT = "signal_sigint"
    """Shutdown triggered by SIGINT (Ctrl+C)."""

    PROGRAMMATIC = "programmatic"
    """Shutdown triggered via request_shutdown()."""

    DOUBLE_SIGNAL = "double_signal"
    """Drain cut short by a second termination signal."""


@dataclass(frozen=True)
class ShutdownResult:
    """
    Result of a shutdown.

    Attributes:
        reason: What triggered the shutdown
        duration_seconds: Time spent draining
        forced: True if the grace period expired or a second signal arrived
        error: Error message if stopping raised, None otherwise
    """

    reason: ShutdownReason | None
    duration_seconds: float
    forced: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value if self.reason else None,
            "duration_seconds": self.duration_seconds,
            "forced": self.forced,
            "error": self.error,
        }


@dataclass
class ShutdownCoordinator:
    """
    Coordinates graceful shutdown of a participant process.

    Example:
        >>> shutdown = ShutdownCoordinator(timeout=10.0)
        >>> shutdown.register_signals()
        >>> await shutdown.wait_for_shutdown()
        >>> result = await shutdown.shutdown(subscriber.stop)

    Attributes:
        timeout: Grace period in seconds for in-flight handlers
    """

    timeout: float = 30.0

    _shutdown_requested: bool = field(default=False, repr=False)
    _forced: bool = field(default=False, repr=False)
    _reason: ShutdownReason | None = field(default=None, repr=False)
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _forced_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _signal_handlers_registered: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if self.timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {self.timeout}")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_requested

    @property
    def is_forced(self) -> bool:
        return self._forced

    @property
    def reason(self) -> ShutdownReason | None:
        return self._reason

    def register_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Register SIGTERM and SIGINT handlers on the running loop.

        Note:
            On Windows, add_signal_handler is not available; a warning is
            logged and Ctrl+C surfaces as KeyboardInterrupt instead.
        """
        if self._signal_handlers_registered:
            logger.warning("Signal handlers already registered")
            return

        loop = loop or asyncio.get_running_loop()

        for sig in _SIGNALS:
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
                logger.debug("Registered signal handler", extra={"signal": sig.name})
            except NotImplementedError:
                logger.warning(
                    "Event loop cannot install a handler for this signal",
                    extra={"signal": sig.name},
                )

        self._signal_handlers_registered = True

    def unregister_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if not self._signal_handlers_registered:
            return

        loop = loop or asyncio.get_running_loop()

        for sig in _SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, ValueError):
                pass

        self._signal_handlers_registered = False

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_requested:
            logger.warning(
                "Second termination signal, abandoning the drain",
                extra={"signal": sig.name},
            )
            self._forced = True
            self._reason = ShutdownReason.DOUBLE_SIGNAL
            self._forced_event.set()
            return

        self._reason = (
            ShutdownReason.SIGNAL_SIGTERM if sig == signal.SIGTERM else ShutdownReason.SIGNAL_SIGINT
        )
        logger.info(
            "Termination signal received, draining in-flight envelopes",
            extra={"signal": sig.name, "timeout": self.timeout},
        )
        self._shutdown_requested = True
        self._shutdown_event.set()

    def request_shutdown(self, reason: ShutdownReason = ShutdownReason.PROGRAMMATIC) -> None:
        """Trigger the same sequence as a first signal."""
        if self._shutdown_requested:
            return
        self._reason = reason
        logger.info("Shutdown requested", extra={"reason": reason.value})
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """Block until a signal arrives or request_shutdown() is called."""
        await self._shutdown_event.wait()

    async def shutdown(self, stop: Callable[[float], Awaitable[None]]) -> ShutdownResult:
        """
        Run ``stop(timeout)`` unless a forced shutdown interrupts it.

        Args:
            stop: Coroutine function that drains in-flight work within the
                given grace period, e.g. ``Subscriber.stop``.

        Returns:
            The shutdown result.
        """
        started = time.monotonic()
        stopping = asyncio.create_task(stop(self.timeout))
        forced = asyncio.create_task(self._forced_event.wait())
        error: str | None = None
        try:
            done, _ = await asyncio.wait(
                {stopping, forced},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stopping in done:
                exc = stopping.exception()
                if exc is not None:
                    error = str(exc)
                    logger.error("Error during shutdown", extra={"error": error}, exc_info=exc)
            else:
                stopping.cancel()
                await asyncio.gather(stopping, return_exceptions=True)
        finally:
            forced.cancel()

        result = ShutdownResult(
            reason=self._reason,
            duration_seconds=time.monotonic() - started,
            forced=self._forced,
            error=error,
        )
        logger.info("Shutdown complete", extra=result.to_dict())
        return result


__all__ = [
    "ShutdownCoordinator",
    "ShutdownReason",
    "ShutdownResult",
]
