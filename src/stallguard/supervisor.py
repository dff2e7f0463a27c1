"""Top-level supervision loop for stallguard."""

import copy
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from queue import Full, Queue

import structlog

from stallguard.config import SupervisorConfig
from stallguard.errors import MetricsUnavailable
from stallguard.incident import IncidentReporter, ReportHandle
from stallguard.inspector import ProcessInspector, ThreadSignaler
from stallguard.integrity import ArtifactWatcher
from stallguard.logs import EventLog, log_success
from stallguard.models import (
    IncidentReason,
    LoopPhase,
    MemoryPressure,
    ProcessSnapshot,
    RecoveryBudget,
    RecoveryResult,
    StallClear,
    SupervisorState,
    ThreadStallState,
)
from stallguard.recovery import RecoveryController
from stallguard.sampler import MetricsSampler
from stallguard.stability import StabilityClassifier
from stallguard.tracker import StallTracker

log = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class SupervisorStatus:
    """Copy of the supervisor's view, published once per tick."""

    target: str
    phase: LoopPhase
    pid: int | None
    snapshot: ProcessSnapshot | None
    threads: tuple[ThreadStallState, ...]
    budget: RecoveryBudget
    stable: bool
    instability_reasons: tuple[str, ...]
    last_report: Path | None


class SupervisorLoop:
    """
    Polls for the target process and drives sampling, stall tracking,
    stability checks and recovery at their own intervals.

    The loop ticks every poll_tick seconds. Sub-cycles run when the time
    since their last run reaches their interval, so poll frequency and
    action frequency are independent. All monitoring state lives in one
    SupervisorState owned by the thread that calls tick().
    """

    def __init__(
        self,
        target: str,
        config: SupervisorConfig,
        inspector: ProcessInspector,
        signaler: ThreadSignaler,
        artifact: Path | None = None,
        status_queue: Queue[SupervisorStatus] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.target = target
        self.config = config
        self.state = SupervisorState()
        self._inspector = inspector
        self._clock = clock
        self._status_queue = status_queue
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_report: Path | None = None

        self.sampler = MetricsSampler(inspector, config.stall_wait_reasons, clock=clock)
        self.tracker = StallTracker(
            self.state,
            warn_threshold=config.warn_threshold,
            purge_window=config.purge_window,
            critical_threshold=config.critical_threshold,
            clock=clock,
        )
        self.classifier = StabilityClassifier(
            self.state,
            max_memory_mb=config.max_memory_mb,
            max_cpu_percent=config.max_cpu_percent,
            max_delayed_threads=config.max_delayed_threads,
            clock=clock,
        )
        self.controller = RecoveryController(
            self.state,
            config,
            inspector,
            signaler,
            self.tracker,
            self.classifier,
            clock=clock,
            sleep=sleep,
        )
        self.reporter = IncidentReporter(self.state, config.report_dir, inspector, clock=clock)
        self.event_log = EventLog(config.report_dir / "events.jsonl")
        self.artifact_watcher = ArtifactWatcher(artifact) if artifact is not None else None

    @property
    def is_active(self) -> bool:
        """Whether the loop has been opened and not yet asked to stop."""
        return self.event_log.is_open and not self._stop_event.is_set()

    @property
    def is_running(self) -> bool:
        """Check if the background loop thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def open(self) -> None:
        """
        Prepare report directory and event log.

        Raises:
            FatalInitFailure: The report directory or event log is unusable.
        """
        self.reporter.prepare()
        self.event_log.open()
        self._stop_event.clear()
        self.event_log.append("supervisor_started", target=self.target)
        log.info("supervisor_started", target=self.target, report_dir=str(self.config.report_dir))

    def close(self) -> None:
        if self.event_log.is_open:
            self.event_log.append("supervisor_stopped", target=self.target)
            self.event_log.close()
        log.info("supervisor_stopped", target=self.target)

    def run(self) -> None:
        """Run ticks until stop() is called; the current tick always completes."""
        if not self.event_log.is_open:
            self.open()
        try:
            while not self._stop_event.is_set():
                self.tick()
                self._stop_event.wait(timeout=self.config.poll_tick)
        finally:
            self.close()

    def start(self) -> None:
        """Run the loop on a daemon thread."""
        if self.is_running:
            return
        if not self.event_log.is_open:
            self.open()
        self._thread = threading.Thread(target=self.run, daemon=True, name="SupervisorLoop")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Ask the loop to finish its current tick and return.

        Args:
            timeout: How long to wait for a background thread (seconds).
        """
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            self._thread = None

    def tick(self) -> None:
        """Run one polling cycle; per-cycle errors are logged, never raised."""
        try:
            self._cycle()
        except Exception:
            log.exception("supervisor_cycle_failed", target=self.target, phase=self.state.phase.value)
        self._publish()

    def _cycle(self) -> None:
        now = self._clock()
        state = self.state
        pid = self._inspector.find_process(self.target)

        if state.phase is LoopPhase.WAITING_FOR_PROCESS:
            if pid is None:
                return
            self._enter_running(pid, now)
        elif pid != state.pid:
            # Gone, or replaced by a new instance under the same name
            self._enter_waiting("process absent" if pid is None else f"pid changed to {pid}")
            return

        try:
            snapshot = self.sampler.sample(state.pid, state.last_snapshot)
        except MetricsUnavailable as exc:
            self._enter_waiting(str(exc))
            return
        state.record_snapshot(snapshot)

        if self._due(state.last_monitor_at, self.config.monitor_interval, now):
            state.last_monitor_at = now
            self._monitor_threads(snapshot)

        if self._due(state.last_safety_at, self.config.safety_check_interval, now):
            state.last_safety_at = now
            self._check_stability(snapshot)

        if self._due(state.last_trim_at, self.config.memory_trim_interval, now):
            state.last_trim_at = now
            self._check_memory(snapshot)

        if self.artifact_watcher is not None:
            self._check_artifact(snapshot)

    @staticmethod
    def _due(last_run: float | None, interval: float, now: float) -> bool:
        return last_run is None or now - last_run >= interval

    def _enter_running(self, pid: int, now: float) -> None:
        state = self.state
        state.reset_episode()
        state.phase = LoopPhase.RUNNING
        state.pid = pid
        state.started_at = now
        # First trim check waits a full interval after start
        state.last_trim_at = now
        self.event_log.append("process_started", target=self.target, pid=pid)
        log.info("process_detected", target=self.target, pid=pid)

    def _enter_waiting(self, cause: str) -> None:
        state = self.state
        pid = state.pid
        uptime = self._clock() - state.started_at if state.started_at is not None else None
        log.error("process_terminated", target=self.target, pid=pid, cause=cause)

        # Capture before the episode state is cleared
        handle = self.reporter.capture(
            IncidentReason.PROCESS_TERMINATED,
            state.last_snapshot,
            cause=cause,
            uptime_seconds=round(uptime, 3) if uptime is not None else "unknown",
        )
        self._remember(handle)
        self.event_log.append(
            "process_terminated",
            target=self.target,
            pid=pid,
            cause=cause,
            report=str(handle.path) if handle.path else None,
        )

        self.tracker.reset()
        state.reset_episode()
        state.phase = LoopPhase.WAITING_FOR_PROCESS

    def _monitor_threads(self, snapshot: ProcessSnapshot) -> None:
        problems = self.tracker.update(snapshot.stalled_threads)
        for problem in problems:
            if problem.critical:
                log.error(
                    "thread_stall_critical",
                    tid=problem.tid,
                    duration=round(problem.duration, 1),
                    recovery_attempts=problem.recovery_attempts,
                )
            else:
                log.warning(
                    "thread_stall_detected",
                    tid=problem.tid,
                    duration=round(problem.duration, 1),
                    observations=problem.observations,
                    recovery_attempts=problem.recovery_attempts,
                )
        if problems:
            for result in self.controller.handle_problem_threads(problems):
                self._record_recovery(result)

    def _check_stability(self, snapshot: ProcessSnapshot) -> None:
        state = self.state
        stable, reasons = self.classifier.is_stable(snapshot)
        was_stable = state.stable
        state.stable = stable
        state.instability_reasons = tuple(reasons)

        if not stable and was_stable:
            log.warning("process_unstable", pid=state.pid, reasons=reasons)
            handle = self.reporter.capture(
                IncidentReason.INSTABILITY_DETECTED, snapshot, reasons=reasons
            )
            self._remember(handle)
            self.event_log.append(
                "instability_detected",
                pid=state.pid,
                reasons=reasons,
                report=str(handle.path) if handle.path else None,
            )
        elif stable and not was_stable:
            log_success(log, "process_stable_again", pid=state.pid)
            self.event_log.append("stability_restored", pid=state.pid)
        else:
            log.debug("stability_checked", stable=stable, reasons=reasons)

    def _check_memory(self, snapshot: ProcessSnapshot) -> None:
        threshold_mb = self.config.max_memory_mb * self.config.memory_trim_ratio
        if snapshot.working_set_mb <= threshold_mb:
            return
        log.info(
            "memory_trim_due",
            working_set_mb=round(snapshot.working_set_mb, 1),
            threshold_mb=round(threshold_mb, 1),
        )
        result = self.controller.relieve_memory(
            f"working set {snapshot.working_set_mb:.0f}MB above {threshold_mb:.0f}MB"
        )
        self._record_recovery(result)

    def _check_artifact(self, snapshot: ProcessSnapshot) -> None:
        change = self.artifact_watcher.check()
        if change is None:
            return
        details = change.describe()
        log.warning("artifact_changed", **details)
        handle = self.reporter.capture(IncidentReason.EXTERNAL_SIGNAL_CHANGED, snapshot, **details)
        self._remember(handle)
        self.event_log.append(
            "artifact_changed",
            report=str(handle.path) if handle.path else None,
            **details,
        )

    def _record_recovery(self, result: RecoveryResult) -> None:
        if not result.applied:
            return
        match result.action:
            case StallClear(tid=tid):
                action, extra = "stall-clear", {"tid": tid}
            case MemoryPressure():
                action, extra = "memory-pressure", {}
        self.event_log.append(
            "recovery",
            action=action,
            outcome=result.outcome.value,
            detail=result.detail,
            pid=self.state.pid,
            **extra,
        )

    def _remember(self, handle: ReportHandle) -> None:
        if handle.path is not None:
            self._last_report = handle.path

    def status(self) -> SupervisorStatus:
        """Build an immutable copy of the current state."""
        state = self.state
        return SupervisorStatus(
            target=self.target,
            phase=state.phase,
            pid=state.pid,
            snapshot=state.last_snapshot,
            threads=tuple(copy.copy(entry) for entry in state.stalls.values()),
            budget=copy.copy(state.budget),
            stable=state.stable,
            instability_reasons=state.instability_reasons,
            last_report=self._last_report,
        )

    def _publish(self) -> None:
        if self._status_queue is None:
            return
        try:
            self._status_queue.put_nowait(self.status())
        except Full:
            log.debug("status_queue_full")
