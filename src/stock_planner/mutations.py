"""Optimistic mutations: apply locally, persist remotely, roll back on failure."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .cache import SnapshotCache
from .errors import NotAuthenticatedError, PlannerError
from .schemas import Snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

Transform = Callable[[Snapshot], Snapshot]
# A commit may hand back a transform carrying server-assigned state into the cache.
Commit = Callable[[], Awaitable[Optional[Transform]]]
ErrorListener = Callable[[str, PlannerError], None]

_UNKNOWN = object()

RECENT_MESSAGES = 50


@dataclass(frozen=True)
class Mutation:
    """An ``apply``/``commit``/``revert`` triple run by :class:`MutationExecutor`."""

    description: str
    apply: Transform
    commit: Commit
    revert: Transform
    refresh_on_failure: bool = True
    value: Any = None


@dataclass(frozen=True)
class MutationResult:
    ok: bool
    value: Any = None
    error: PlannerError | None = None
    message: str | None = None


class ErrorNotifier:
    """Fan-out of user-facing failure messages; keeps only the most recent ones."""

    def __init__(self, keep: int = RECENT_MESSAGES) -> None:
        self._listeners: list[ErrorListener] = []
        self.messages: deque[str] = deque(maxlen=keep)

    def subscribe(self, listener: ErrorListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def report(self, message: str, error: PlannerError) -> None:
        self.messages.append(message)
        for listener in list(self._listeners):
            listener(message, error)


def failure_message(description: str, error: PlannerError) -> str:
    return f"{description} failed. {error.user_message}"


class MutationExecutor:
    def __init__(
        self,
        cache: SnapshotCache,
        notifier: ErrorNotifier,
        refresh: Callable[[], Awaitable[Any]] | None = None,
        *,
        refresh_after_failure: bool = True,
    ) -> None:
        self._cache = cache
        self._notifier = notifier
        self._refresh = refresh
        self._refresh_after_failure = refresh_after_failure
        self._inflight: list[Mutation] = []

    def overlay(self, snapshot: Snapshot) -> Snapshot:
        """Re-apply mutations whose commit is still pending on top of ``snapshot``."""

        for mutation in self._inflight:
            snapshot = mutation.apply(snapshot)
        return snapshot

    async def execute(self, mutation: Mutation) -> MutationResult:
        before = self._cache.snapshot
        applied = self._cache.publish(mutation.apply(before))
        self._inflight.append(mutation)
        try:
            settle = await mutation.commit()
        except PlannerError as exc:
            self._forget(mutation)
            logger.warning("%s failed, rolling back", mutation.description, exc_info=True)
            self._roll_back(mutation, before, applied)
            message = failure_message(mutation.description, exc)
            self._notifier.report(message, exc)
            if mutation.refresh_on_failure:
                await self.resync(exc)
            return MutationResult(ok=False, value=mutation.value, error=exc, message=message)
        except BaseException:
            self._forget(mutation)
            self._roll_back(mutation, before, applied)
            raise
        self._forget(mutation)
        if settle is not None:
            self._cache.publish(settle(self._cache.snapshot))
        return MutationResult(ok=True, value=mutation.value)

    def _forget(self, mutation: Mutation) -> None:
        self._inflight = [m for m in self._inflight if m is not mutation]

    def _roll_back(self, mutation: Mutation, before: Snapshot, applied: Snapshot) -> None:
        if self._cache.snapshot is applied:
            self._cache.restore(before)
        else:
            # Something else was published meanwhile; undo only our rows.
            self._cache.publish(mutation.revert(self._cache.snapshot))

    async def resync(self, error: PlannerError) -> None:
        if self._refresh is None or not self._refresh_after_failure:
            return
        if isinstance(error, NotAuthenticatedError):
            return
        try:
            await self._refresh()
        except PlannerError:
            logger.warning("Resync refresh after failed mutation also failed", exc_info=True)


@dataclass
class DebouncedEdit(Generic[T]):
    """A high-frequency edit to one keyed row.

    ``capture`` reads the row's value out of a snapshot and ``restore`` writes a
    captured value back; together they roll a failed commit back to the last
    value the server accepted.
    """

    description: str
    apply: Transform
    commit: Callable[[], Awaitable[None]]
    capture: Callable[[Snapshot], T]
    restore: Callable[[Snapshot, T], Snapshot]
    committed_candidate: Any = field(default=None, init=False)


class DebouncedCommitter:
    """Per-key cancel-and-reschedule of remote commits."""

    def __init__(
        self,
        cache: SnapshotCache,
        executor: MutationExecutor,
        notifier: ErrorNotifier,
        delay: float,
    ) -> None:
        self._cache = cache
        self._executor = executor
        self._notifier = notifier
        self._delay = delay
        self._timers: dict[Hashable, tuple[asyncio.TimerHandle, DebouncedEdit]] = {}
        self._baseline: dict[Hashable, Any] = {}
        self._inflight: set[asyncio.Task] = set()
        self._inflight_per_key: dict[Hashable, int] = {}
        self._latest: dict[Hashable, DebouncedEdit] = {}
        self.commits = 0

    def pending_keys(self) -> list[Hashable]:
        return list(self._timers)

    def submit(self, key: Hashable, edit: DebouncedEdit) -> None:
        if key not in self._baseline:
            self._baseline[key] = edit.capture(self._cache.snapshot)
        applied = self._cache.publish(edit.apply(self._cache.snapshot))
        edit.committed_candidate = edit.capture(applied)
        self._latest[key] = edit
        self._cancel_timer(key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self._delay, self._fire, key)
        self._timers[key] = (handle, edit)

    def overlay(self, snapshot: Snapshot) -> Snapshot:
        """Re-apply edits the server has not confirmed yet on top of ``snapshot``."""

        for edit in self._latest.values():
            snapshot = edit.apply(snapshot)
        return snapshot

    async def flush_where(self, predicate: Callable[[Hashable], bool]) -> None:
        """Commit scheduled edits whose key matches now, e.g. rows of a store about to go."""

        for key in [key for key in self._timers if predicate(key)]:
            handle, _ = self._timers[key]
            handle.cancel()
            self._fire(key)
        await self.wait_idle()

    def _cancel_timer(self, key: Hashable) -> None:
        entry = self._timers.pop(key, None)
        if entry is not None:
            entry[0].cancel()

    def _fire(self, key: Hashable) -> None:
        _, edit = self._timers.pop(key)
        task = asyncio.ensure_future(self._commit(key, edit))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _superseded(self, key: Hashable) -> bool:
        return key in self._timers or self._inflight_per_key.get(key, 0) > 0

    async def _commit(self, key: Hashable, edit: DebouncedEdit) -> None:
        self.commits += 1
        self._inflight_per_key[key] = self._inflight_per_key.get(key, 0) + 1
        try:
            await edit.commit()
        except PlannerError as exc:
            self._release(key, edit)
            logger.warning("%s failed for %r", edit.description, key, exc_info=True)
            if not self._superseded(key):
                baseline = self._baseline.pop(key, _UNKNOWN)
                if baseline is not _UNKNOWN:
                    self._cache.publish(edit.restore(self._cache.snapshot, baseline))
            message = failure_message(edit.description, exc)
            self._notifier.report(message, exc)
            await self._executor.resync(exc)
            return
        except BaseException:
            self._release(key, edit)
            raise
        self._release(key, edit)
        if self._superseded(key):
            self._baseline[key] = edit.committed_candidate
        else:
            self._baseline.pop(key, None)

    def _release(self, key: Hashable, edit: DebouncedEdit) -> None:
        if self._latest.get(key) is edit:
            del self._latest[key]
        remaining = self._inflight_per_key.get(key, 1) - 1
        if remaining > 0:
            self._inflight_per_key[key] = remaining
        else:
            self._inflight_per_key.pop(key, None)

    async def flush(self) -> None:
        """Fire every scheduled commit now and wait for all of them."""

        for key in list(self._timers):
            handle, _ = self._timers[key]
            handle.cancel()
            self._fire(key)
        await self.wait_idle()

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self._cancel_timer(key)
        self._baseline.clear()
        self._latest.clear()


__all__ = [
    "Mutation",
    "MutationResult",
    "MutationExecutor",
    "ErrorNotifier",
    "DebouncedEdit",
    "DebouncedCommitter",
    "failure_message",
]
