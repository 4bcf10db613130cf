"""Single-flight snapshot reloads with at most one queued rerun."""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .cache import SnapshotCache
from .errors import NetworkTransientError, PlannerError
from .schemas import Snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_transient_retry(
    operation: Callable[[], Awaitable[T]], *, delay: float = 0.35
) -> T:
    """Run ``operation``; on a transient network failure wait ``delay`` and try once more."""

    try:
        return await operation()
    except NetworkTransientError as exc:
        logger.warning("Transient network failure, retrying once in %.2fs: %s", delay, exc)
        await asyncio.sleep(delay)
        return await operation()


class RefreshState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_QUEUED_RERUN = "running_with_queued_rerun"


class RefreshCoordinator:
    """Collapses concurrent ``refresh()`` calls into one load plus one follow-up.

    Every caller awaits the same cycle loop, so a call that arrives mid-flight
    resolves only after a load that started after the call was made.
    """

    def __init__(
        self,
        load: Callable[[], Awaitable[Snapshot]],
        cache: SnapshotCache,
        *,
        retry_delay: float = 0.35,
        overlay: Callable[[Snapshot], Snapshot] | None = None,
    ) -> None:
        self._load = load
        self._cache = cache
        self._retry_delay = retry_delay
        self._overlay = overlay
        self._state = RefreshState.IDLE
        self._task: asyncio.Future[Snapshot] | None = None
        self._scheduled: asyncio.TimerHandle | None = None
        self.completed_cycles = 0
        self.last_error: PlannerError | None = None

    @property
    def state(self) -> RefreshState:
        return self._state

    async def refresh(self) -> Snapshot:
        if self._task is not None:
            self._state = RefreshState.RUNNING_WITH_QUEUED_RERUN
            return await asyncio.shield(self._task)
        self._state = RefreshState.RUNNING
        self._task = asyncio.ensure_future(self._run_cycles())
        return await asyncio.shield(self._task)

    async def _run_cycles(self) -> Snapshot:
        try:
            while True:
                error: PlannerError | None = None
                try:
                    snapshot = await with_transient_retry(self._load, delay=self._retry_delay)
                except PlannerError as exc:
                    # The previous snapshot stays visible.
                    logger.warning("Snapshot refresh failed", exc_info=True)
                    error = exc
                else:
                    if self._overlay is not None:
                        snapshot = self._overlay(snapshot)
                    snapshot = self._cache.publish(snapshot)
                self.completed_cycles += 1
                self.last_error = error
                if self._state is RefreshState.RUNNING_WITH_QUEUED_RERUN:
                    self._state = RefreshState.RUNNING
                    continue
                if error is not None:
                    raise error
                return snapshot
        finally:
            self._state = RefreshState.IDLE
            self._task = None

    def schedule(self, delay: float) -> None:
        """Run one refresh ``delay`` seconds after the most recent call."""

        self.cancel_scheduled()
        loop = asyncio.get_running_loop()
        self._scheduled = loop.call_later(delay, self._fire_scheduled)

    def cancel_scheduled(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None

    def _fire_scheduled(self) -> None:
        self._scheduled = None
        task = asyncio.ensure_future(self.refresh())
        task.add_done_callback(_log_background_failure)

    async def wait_idle(self) -> None:
        if self._task is not None:
            await asyncio.gather(asyncio.shield(self._task), return_exceptions=True)


def _log_background_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Scheduled refresh failed: %s", exc)


__all__ = ["RefreshCoordinator", "RefreshState", "with_transient_retry"]
