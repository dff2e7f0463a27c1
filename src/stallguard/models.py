"""Data models for stallguard."""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum


class StallLifecycle(Enum):
    """Lifecycle tags of a tracked stall episode."""

    OBSERVING = "observing"
    RECOVERING = "recovering"
    CLEARED = "cleared"


class LoopPhase(Enum):
    """States of the supervisor loop."""

    WAITING_FOR_PROCESS = "waiting-for-process"
    RUNNING = "running"


class IncidentReason(Enum):
    """Why an incident report was captured."""

    PROCESS_TERMINATED = "process-terminated"
    INSTABILITY_DETECTED = "instability-detected"
    EXTERNAL_SIGNAL_CHANGED = "external-signal-changed"


class RecoveryOutcome(Enum):
    """Result of a recovery request."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class ThreadWaitState:
    """Point-in-time scheduler view of a single thread."""

    tid: int
    state: str  # 'R', 'S', 'D', etc.
    wait_reason: str  # kernel wait channel, '' when running
    priority: int
    start_time: float  # Seconds since boot


@dataclass(slots=True, frozen=True)
class ProcessMetrics:
    """Raw resource counters read from the supervised process."""

    cpu_time: float  # user + system seconds
    working_set: int  # Bytes
    private_bytes: int
    paged_bytes: int
    thread_count: int
    handle_count: int


@dataclass(slots=True, frozen=True)
class HostLoad:
    """Host-level load at a point in time."""

    memory_percent: float
    cpu_percent: float
    memory_available: int
    load_avg: tuple[float, float, float]


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """Immutable sample of the supervised process."""

    pid: int
    sampled_at: float  # Monotonic seconds
    cpu_time: float
    cpu_percent: float
    working_set: int
    memory_delta: int
    thread_count: int
    handle_count: int
    delayed_thread_count: int
    private_bytes: int
    paged_bytes: int
    stalled_threads: tuple[ThreadWaitState, ...] = ()

    @property
    def working_set_mb(self) -> float:
        """Working set in megabytes."""
        return self.working_set / (1024 * 1024)


@dataclass(slots=True)
class ThreadStallState:
    """Stall episode of one thread, advanced every monitor cycle."""

    tid: int
    first_seen: float
    last_seen: float
    attributes: ThreadWaitState
    observations: int = 1
    recovery_attempts: int = 0
    lifecycle: StallLifecycle = StallLifecycle.OBSERVING

    @property
    def duration(self) -> float:
        """Length of the episode between first and last observation."""
        return self.last_seen - self.first_seen


@dataclass(slots=True, frozen=True)
class ProblemThread:
    """A stalled thread that crossed the warning threshold."""

    tid: int
    duration: float
    observations: int
    recovery_attempts: int
    critical: bool = False


@dataclass(slots=True)
class RecoveryBudget:
    """Process-wide rate limiting state for recovery actions."""

    last_action_at: float | None = None
    recoveries_today: int = 0
    day_started_at: float | None = None
    successes: int = 0
    failures: int = 0
    skipped: int = 0


@dataclass(slots=True, frozen=True)
class StallClear:
    """Wake a specific stalled thread."""

    tid: int


@dataclass(slots=True, frozen=True)
class MemoryPressure:
    """Trim the process working set and request a collection."""


RecoveryAction = StallClear | MemoryPressure


@dataclass(slots=True, frozen=True)
class RecoveryResult:
    """Outcome of one recovery request, applied or skipped."""

    action: RecoveryAction
    outcome: RecoveryOutcome
    reasons: tuple[str, ...] = ()
    started_at: float | None = None
    detail: str = ""

    @property
    def applied(self) -> bool:
        """Whether an action was actually attempted."""
        return self.outcome is not RecoveryOutcome.SKIPPED


@dataclass(slots=True)
class SupervisorState:
    """
    Mutable monitoring state owned by the supervisor loop.

    Components receive this object by reference; nothing else holds
    process-wide counters.
    """

    phase: LoopPhase = LoopPhase.WAITING_FOR_PROCESS
    pid: int | None = None
    started_at: float | None = None
    stalls: dict[int, ThreadStallState] = field(default_factory=dict)
    budget: RecoveryBudget = field(default_factory=RecoveryBudget)
    stable: bool = True
    instability_reasons: tuple[str, ...] = ()
    last_stable_at: float | None = None
    last_snapshot: ProcessSnapshot | None = None
    metrics_history: deque[ProcessSnapshot] = field(default_factory=lambda: deque(maxlen=60))
    recovery_history: deque[RecoveryResult] = field(default_factory=lambda: deque(maxlen=100))
    last_monitor_at: float | None = None
    last_safety_at: float | None = None
    last_trim_at: float | None = None

    def record_snapshot(self, snapshot: ProcessSnapshot) -> None:
        """Remember the latest sample and append it to the bounded history."""
        self.last_snapshot = snapshot
        self.metrics_history.append(snapshot)

    def reset_episode(self) -> None:
        """Drop everything that belongs to a single process lifetime."""
        self.pid = None
        self.started_at = None
        self.stalls.clear()
        self.stable = True
        self.instability_reasons = ()
        self.last_snapshot = None
        self.metrics_history.clear()
        self.last_monitor_at = None
        self.last_safety_at = None
        self.last_trim_at = None
