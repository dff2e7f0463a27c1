"""Per-thread stall episode tracking."""

import time
from collections.abc import Callable, Iterable

import structlog

from stallguard.models import (
    ProblemThread,
    StallLifecycle,
    SupervisorState,
    ThreadStallState,
    ThreadWaitState,
)

log = structlog.get_logger(__name__)


class StallTracker:
    """
    Maintains the thread-id -> ThreadStallState map inside SupervisorState.

    A thread is tracked from its first stalled observation until it has been
    absent from the stalled set for longer than the purge window.
    """

    def __init__(
        self,
        state: SupervisorState,
        warn_threshold: float,
        purge_window: float,
        critical_threshold: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._warn_threshold = warn_threshold
        self._purge_window = purge_window
        self._critical_threshold = critical_threshold
        self._clock = clock

    def update(self, stalled_threads: Iterable[ThreadWaitState]) -> list[ProblemThread]:
        """
        Advance every episode by one observation cycle.

        Returns the currently stalled threads whose episode started more than
        warn_threshold seconds ago, in no particular order.
        """
        now = self._clock()
        stalls = self._state.stalls
        seen: set[int] = set()

        for thread in stalled_threads:
            seen.add(thread.tid)
            entry = stalls.get(thread.tid)
            if entry is None:
                stalls[thread.tid] = ThreadStallState(
                    tid=thread.tid,
                    first_seen=now,
                    last_seen=now,
                    attributes=thread,
                )
                log.debug("thread_stall_observed", tid=thread.tid, wait_reason=thread.wait_reason)
            else:
                entry.observations += 1
                entry.last_seen = now

        self._purge_absent(now, seen)

        problems: list[ProblemThread] = []
        for tid in seen:
            entry = stalls[tid]
            if now - entry.first_seen > self._warn_threshold:
                problems.append(
                    ProblemThread(
                        tid=tid,
                        duration=entry.duration,
                        observations=entry.observations,
                        recovery_attempts=entry.recovery_attempts,
                        critical=entry.duration >= self._critical_threshold,
                    )
                )
        return problems

    def record_attempt(self, tid: int) -> int:
        """Count a recovery attempt against a thread; returns the new count."""
        entry = self._state.stalls[tid]
        entry.recovery_attempts += 1
        entry.lifecycle = StallLifecycle.RECOVERING
        return entry.recovery_attempts

    def reset(self) -> None:
        """Forget every episode (the owning process is gone)."""
        self._state.stalls.clear()

    def _purge_absent(self, now: float, seen: set[int]) -> None:
        stalls = self._state.stalls
        expired = [
            tid
            for tid, entry in stalls.items()
            if tid not in seen and now - entry.last_seen > self._purge_window
        ]
        for tid in expired:
            entry = stalls.pop(tid)
            entry.lifecycle = StallLifecycle.CLEARED
            log.info(
                "thread_stall_cleared",
                tid=tid,
                duration=round(entry.duration, 1),
                observations=entry.observations,
                recovery_attempts=entry.recovery_attempts,
            )
