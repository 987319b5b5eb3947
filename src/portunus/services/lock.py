"""Lock Coordinator - one migration run per database at a time.

Runs in different processes (two deploy jobs, two replicas starting up)
cannot share an in-memory lock, so the lock lives in the database itself.
The database adapter provides a single non-blocking ``try_lock``; this
module adds waiting, timeouts and the UNLOCKED -> LOCKED -> UNLOCKED state
machine.
"""

import os
import socket
import time
import uuid
from enum import Enum
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from portunus.core.errors import DatabaseError, LockLostError, LockTimeoutError
from portunus.db.base import Database

log = structlog.get_logger()

DEFAULT_LOCK_NAME = "portunus"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0


class LockState(str, Enum):
    """Lock coordinator state."""

    UNLOCKED = "unlocked"
    LOCKED = "locked"


class _LockBusy(Exception):
    """Another session holds the lock; try again."""


def default_owner() -> str:
    """Owner token identifying this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LockCoordinator:
    """Database-backed mutual exclusion for migration runs.

    Usage:
        coordinator = LockCoordinator(database, timeout_seconds=30)
        async with coordinator:
            ...  # plan and execute

    Args:
        database: Connected database providing try_lock/unlock.
        name: Lock name; runs using the same name exclude each other.
        timeout_seconds: Give up after this long (None waits forever,
            0 tries exactly once).
        poll_interval_seconds: Delay between attempts.
        owner: Owner token (defaults to host:pid:random).
    """

    def __init__(
        self,
        database: Database,
        name: str = DEFAULT_LOCK_NAME,
        timeout_seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        owner: Optional[str] = None,
    ):
        if timeout_seconds is not None and timeout_seconds < 0:
            raise ValueError(f"timeout_seconds must be >= 0, got {timeout_seconds}")
        if poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds must be > 0, got {poll_interval_seconds}")

        self._db = database
        self._name = name
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._owner = owner or default_owner()
        self._state = LockState.UNLOCKED
        self._log = log.bind(component="lock", lock=name, owner=self._owner)

    @property
    def name(self) -> str:
        return self._name

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def is_locked(self) -> bool:
        return self._state == LockState.LOCKED

    def _log_wait(self, state: RetryCallState) -> None:
        self._log.info(
            "lock_wait",
            attempt=state.attempt_number,
            waited_seconds=round(state.seconds_since_start or 0.0, 3),
            timeout_seconds=self._timeout,
        )

    async def _try_once(self) -> None:
        if not await self._db.try_lock(self._name, self._owner):
            raise _LockBusy()
        self._state = LockState.LOCKED

    async def acquire(self) -> None:
        """Block until the lock is held.

        Raises:
            LockTimeoutError: the lock stayed busy for ``timeout_seconds``.
        """
        if self._state == LockState.LOCKED:
            self._log.debug("lock_already_held")
            return

        started = time.monotonic()
        stop = stop_never if self._timeout is None else stop_after_delay(self._timeout)
        try:
            async for attempt in AsyncRetrying(
                stop=stop,
                wait=wait_fixed(self._poll_interval),
                retry=retry_if_exception_type(_LockBusy),
                before_sleep=self._log_wait,
            ):
                with attempt:
                    await self._try_once()
        except RetryError:
            holder = await self._holder()
            self._log.warning("lock_timeout", timeout_seconds=self._timeout, holder=holder)
            raise LockTimeoutError(self._name, self._timeout or 0.0, holder=holder) from None

        self._log.info("lock_acquired", waited_seconds=round(time.monotonic() - started, 3))

    async def _holder(self) -> Optional[str]:
        try:
            return await self._db.lock_holder(self._name)
        except DatabaseError as e:
            self._log.debug("lock_holder_unknown", error=str(e))
            return None

    async def refresh(self) -> None:
        """Record that the held lock is still in use.

        Called inside each migration's transaction, so a long run is never
        mistaken for a crashed one.

        Raises:
            LockLostError: another run broke the lock.
        """
        if self._state != LockState.LOCKED:
            return
        if not await self._db.refresh_lock(self._name, self._owner):
            self._log.error("lock_lost")
            raise LockLostError(self._name, self._owner)

    async def release(self) -> None:
        """Release the lock. Idempotent; safe if it was never acquired.

        Release is best effort: a failure is logged and the coordinator still
        returns to UNLOCKED (a PostgreSQL advisory lock dies with the session,
        a stale SQLite lock row can be broken by a later run).
        """
        if self._state != LockState.LOCKED:
            return

        try:
            await self._db.unlock(self._name, self._owner)
        except Exception as e:
            self._log.warning("lock_release_failed", error=str(e))
        else:
            self._log.info("lock_released")
        finally:
            self._state = LockState.UNLOCKED

    async def __aenter__(self) -> "LockCoordinator":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
