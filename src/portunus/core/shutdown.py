"""
Interruption handling for migration runs.

SIGTERM/SIGINT cancel the task running the migration. Cancellation surfaces
as ``asyncio.CancelledError`` at the next await inside the executor, which
rolls back the in-flight transaction; the migrator then releases the lock
before the cancellation propagates out of the run.
"""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Coroutine, Optional, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownPhase(str, Enum):
    """Phases of an interrupted run."""

    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    COMPLETED = "completed"


@dataclass
class ShutdownProgress:
    """Tracks what happened to an interrupted run."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    signal_received: Optional[str] = None
    received_at: Optional[datetime] = None

    @property
    def interrupted(self) -> bool:
        return self.signal_received is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "phase": self.phase.value,
            "signal_received": self.signal_received,
            "received_at": self.received_at.isoformat() if self.received_at else None,
        }


class ShutdownManager:
    """Cancels the running migration task when a shutdown signal arrives.

    Usage:
        manager = ShutdownManager()
        report = await manager.run(migrator.up())

    A second signal while the first is being handled is logged and ignored;
    rollback and lock release must be allowed to finish.
    """

    def __init__(self) -> None:
        self._progress = ShutdownProgress()
        self._task: Optional[asyncio.Task] = None
        self._log = log.bind(component="shutdown_manager")

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Install SIGTERM and SIGINT handlers.

        Returns False when the platform or loop does not support them.
        """
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._log.warning("no_event_loop_for_signal_handlers")
                return False

        try:
            for sig in HANDLED_SIGNALS:
                loop.add_signal_handler(sig, self._handle_signal, sig)
        except (NotImplementedError, RuntimeError):
            self._log.debug("signal_handlers_unsupported")
            return False

        self._log.debug("signal_handlers_installed", signals=[s.name for s in HANDLED_SIGNALS])
        return True

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Remove installed signal handlers."""
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return

        for sig in HANDLED_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        signal_name = sig.name if hasattr(sig, "name") else str(sig)

        if self._progress.phase != ShutdownPhase.RUNNING:
            self._log.warning("shutdown_already_in_progress", signal=signal_name)
            return

        self._log.warning("shutdown_signal_received", signal=signal_name)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._progress.signal_received = signal_name
        self._progress.received_at = datetime.now(timezone.utc)

        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` as a task that shutdown signals will cancel."""
        self._task = asyncio.ensure_future(coro)
        installed = self.install_signal_handlers()
        try:
            return await self._task
        finally:
            if installed:
                self.remove_signal_handlers()
            self._progress.phase = ShutdownPhase.COMPLETED
            self._task = None
            if self._progress.interrupted:
                self._log.warning("run_interrupted", **self._progress.to_dict())
