"""Rate-limited, stability-gated recovery actions."""

import time
from collections.abc import Callable, Iterable

import structlog

from stallguard.config import SupervisorConfig
from stallguard.errors import MetricsUnavailable, RecoveryActionFailure
from stallguard.inspector import ProcessInspector, ThreadSignaler
from stallguard.logs import log_action, log_success
from stallguard.models import (
    MemoryPressure,
    ProblemThread,
    RecoveryAction,
    RecoveryOutcome,
    RecoveryResult,
    StallClear,
    SupervisorState,
)
from stallguard.sampler import is_stalled
from stallguard.stability import StabilityClassifier
from stallguard.tracker import StallTracker

log = structlog.get_logger(__name__)

DAY_SECONDS = 86_400.0


class RecoveryController:
    """
    Applies StallClear and MemoryPressure actions under strict limits.

    Every action must pass these gates, otherwise it is skipped (never
    deferred):
    - the latest snapshot is stable
    - the global cooldown has elapsed since the last action of any kind
    - the daily recovery quota is not used up
    - for StallClear only: the thread is below its attempt cap and the
      per-cycle thread cap is not reached
    - for MemoryPressure only: the signaler has a relief primitive
    """

    def __init__(
        self,
        state: SupervisorState,
        config: SupervisorConfig,
        inspector: ProcessInspector,
        signaler: ThreadSignaler,
        tracker: StallTracker,
        classifier: StabilityClassifier,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._state = state
        self._config = config
        self._inspector = inspector
        self._signaler = signaler
        self._tracker = tracker
        self._classifier = classifier
        self._clock = clock
        self._sleep = sleep
        self._wait_reasons = frozenset(config.stall_wait_reasons)
        self._cycle_count = 0

    @property
    def cycle_count(self) -> int:
        """Threads acted upon since the last begin_cycle()."""
        return self._cycle_count

    def begin_cycle(self) -> None:
        self._cycle_count = 0

    def handle_problem_threads(self, problems: Iterable[ProblemThread]) -> list[RecoveryResult]:
        """
        Run one recovery cycle over the current problem threads.

        Longest-stalled threads go first. Threads below the action threshold
        or out of attempts are not submitted at all.
        """
        self.begin_cycle()
        results: list[RecoveryResult] = []
        ordered = sorted(problems, key=lambda p: p.duration, reverse=True)
        for problem in ordered:
            if self._cycle_count >= self._config.max_thread_recovery_per_cycle:
                break
            if problem.duration < self._config.action_threshold:
                continue
            if problem.recovery_attempts >= self._config.max_recovery_attempts:
                continue
            results.append(
                self.recover(problem.tid, f"stalled for {problem.duration:.0f}s")
            )
        return results

    def recover(self, tid: int, reason: str) -> RecoveryResult:
        """Attempt a StallClear on one thread."""
        return self._submit(StallClear(tid=tid), reason)

    def relieve_memory(self, reason: str) -> RecoveryResult:
        """Attempt a process-wide MemoryPressure action."""
        return self._submit(MemoryPressure(), reason)

    def _submit(self, action: RecoveryAction, reason: str) -> RecoveryResult:
        now = self._clock()
        self._roll_daily_window(now)

        blocked = self._gate(action, now)
        if blocked:
            self._state.budget.skipped += 1
            result = RecoveryResult(
                action=action,
                outcome=RecoveryOutcome.SKIPPED,
                reasons=tuple(blocked),
                detail=reason,
            )
            log.debug("recovery_skipped", action=_describe(action), reasons=blocked)
            return result

        budget = self._state.budget
        budget.last_action_at = now
        budget.recoveries_today += 1
        log_action(log, "recovery_started", action=_describe(action), reason=reason, pid=self._state.pid)

        outcome, detail = self._apply(action)

        if outcome is RecoveryOutcome.SUCCESS:
            budget.successes += 1
            log_success(log, "recovery_succeeded", action=_describe(action), detail=detail)
        else:
            budget.failures += 1
            log.warning("recovery_failed", action=_describe(action), detail=detail)

        result = RecoveryResult(
            action=action,
            outcome=outcome,
            reasons=(reason,),
            started_at=now,
            detail=detail,
        )
        self._state.recovery_history.append(result)
        return result

    def _gate(self, action: RecoveryAction, now: float) -> list[str]:
        """Return the reasons an action may not run now; empty means go."""
        config = self._config
        budget = self._state.budget
        blocked: list[str] = []

        if self._state.pid is None:
            blocked.append("process not running")

        stable, reasons = self._classifier.is_stable(self._state.last_snapshot)
        if not stable:
            blocked.extend(f"unstable: {r}" for r in reasons)

        if budget.last_action_at is not None and now - budget.last_action_at <= config.action_cooldown:
            remaining = config.action_cooldown - (now - budget.last_action_at)
            blocked.append(f"cooldown active for another {remaining:.0f}s")

        if budget.recoveries_today >= config.max_daily_recoveries:
            blocked.append(f"daily quota of {config.max_daily_recoveries} recoveries used")

        match action:
            case StallClear(tid=tid):
                entry = self._state.stalls.get(tid)
                if entry is None:
                    blocked.append(f"thread {tid} is not tracked")
                elif entry.recovery_attempts >= config.max_recovery_attempts:
                    blocked.append(f"thread {tid} exhausted {config.max_recovery_attempts} attempts")
                if self._cycle_count >= config.max_thread_recovery_per_cycle:
                    blocked.append("per-cycle thread recovery cap reached")
            case MemoryPressure():
                if not self._signaler.can_trim_memory():
                    blocked.append("memory relief is not configured")

        return blocked

    def _apply(self, action: RecoveryAction) -> tuple[RecoveryOutcome, str]:
        match action:
            case StallClear(tid=tid):
                self._cycle_count += 1
                self._tracker.record_attempt(tid)
                return self._clear_stall(tid)
            case MemoryPressure():
                return self._relieve_memory()

    def _clear_stall(self, tid: int) -> tuple[RecoveryOutcome, str]:
        """
        Wake the thread, then nudge its priority if it is still stalled.

        Both halves together wait at most grace_window seconds.
        """
        pid = self._state.pid
        half = self._config.grace_window / 2
        try:
            self._signaler.wake(pid, tid)
            self._sleep(half)
            if not self._still_stalled(pid, tid):
                return RecoveryOutcome.SUCCESS, "thread resumed after wake"

            previous = self._signaler.boost_priority(pid, tid)
            try:
                self._sleep(half)
            finally:
                self._signaler.restore_priority(pid, tid, previous)
            if not self._still_stalled(pid, tid):
                return RecoveryOutcome.SUCCESS, "thread resumed after priority boost"
        except (RecoveryActionFailure, MetricsUnavailable) as exc:
            return RecoveryOutcome.FAILED, str(exc)

        return RecoveryOutcome.FAILED, "thread still stalled after grace window"

    def _still_stalled(self, pid: int, tid: int) -> bool:
        thread = self._inspector.read_thread(pid, tid)
        # A thread that exited has left the stalled state
        return thread is not None and is_stalled(thread, self._wait_reasons)

    def _relieve_memory(self) -> tuple[RecoveryOutcome, str]:
        try:
            self._signaler.trim_memory(self._state.pid)
        except RecoveryActionFailure as exc:
            return RecoveryOutcome.FAILED, str(exc)
        return RecoveryOutcome.SUCCESS, "working set trim requested"

    def _roll_daily_window(self, now: float) -> None:
        budget = self._state.budget
        if budget.day_started_at is None or now - budget.day_started_at >= DAY_SECONDS:
            if budget.recoveries_today:
                log.info("daily_recovery_quota_reset", previous=budget.recoveries_today)
            budget.day_started_at = now
            budget.recoveries_today = 0


def _describe(action: RecoveryAction) -> str:
    match action:
        case StallClear(tid=tid):
            return f"stall-clear:{tid}"
        case MemoryPressure():
            return "memory-pressure"
