"""Shared fakes and fixtures for stallguard tests."""

from pathlib import Path

import pytest
import structlog

from stallguard.config import SupervisorConfig
from stallguard.errors import MetricsUnavailable, RecoveryActionFailure
from stallguard.models import HostLoad, ProcessMetrics, ProcessSnapshot, ThreadWaitState

STALL_REASON = "hrtimer_nanosleep"


def stalled(tid: int, priority: int = 20) -> ThreadWaitState:
    """A thread blocked in an execution-delay wait."""
    return ThreadWaitState(tid=tid, state="S", wait_reason=STALL_REASON, priority=priority, start_time=1.0)


def running(tid: int) -> ThreadWaitState:
    """A thread that is not stalled."""
    return ThreadWaitState(tid=tid, state="R", wait_reason="", priority=20, start_time=1.0)


class FakeClock:
    """Manually advanced monotonic clock; also usable as a sleep function."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeInspector:
    """In-memory ProcessInspector."""

    def __init__(self, pid: int | None = 4000) -> None:
        self.pid = pid
        self.cpu_time = 0.0
        self.working_set = 100 * 1024 * 1024
        self.threads: dict[int, ThreadWaitState] = {}
        self.vanish_on_read = False
        self.host_error = False

    def find_process(self, target: str) -> int | None:
        return self.pid

    def read_metrics(self, pid: int) -> ProcessMetrics:
        if self.vanish_on_read or self.pid != pid:
            raise MetricsUnavailable(pid, "NoSuchProcess")
        return ProcessMetrics(
            cpu_time=self.cpu_time,
            working_set=self.working_set,
            private_bytes=self.working_set // 2,
            paged_bytes=self.working_set * 2,
            thread_count=len(self.threads) + 1,
            handle_count=12,
        )

    def read_threads(self, pid: int) -> list[ThreadWaitState]:
        if self.vanish_on_read or self.pid != pid:
            raise MetricsUnavailable(pid, "NoSuchProcess")
        return list(self.threads.values())

    def read_thread(self, pid: int, tid: int) -> ThreadWaitState | None:
        if self.pid != pid:
            raise MetricsUnavailable(pid, "process exited")
        return self.threads.get(tid)

    def host_load(self) -> HostLoad:
        if self.host_error:
            raise OSError("host metrics unavailable")
        return HostLoad(memory_percent=42.0, cpu_percent=12.5, memory_available=8 * 1024**3, load_avg=(0.5, 0.4, 0.3))

    def set_stalled(self, *tids: int) -> None:
        """Make exactly these threads stalled."""
        self.threads = {tid: stalled(tid) for tid in tids}


class FakeSignaler:
    """Records recovery primitives; optionally resumes the thread on a given call."""

    def __init__(self, inspector: FakeInspector) -> None:
        self.inspector = inspector
        self.calls: list[tuple] = []
        self.resume_on: str | None = None  # "wake" | "boost" | None
        self.fail_wake = False
        self.fail_trim = False
        self.trim_available = True

    def wake(self, pid: int, tid: int) -> None:
        self.calls.append(("wake", pid, tid))
        if self.fail_wake:
            raise RecoveryActionFailure("wake refused")
        if self.resume_on == "wake":
            self.inspector.threads[tid] = running(tid)

    def boost_priority(self, pid: int, tid: int) -> int:
        self.calls.append(("boost", pid, tid))
        if self.resume_on == "boost":
            self.inspector.threads[tid] = running(tid)
        return 20

    def restore_priority(self, pid: int, tid: int, previous: int) -> None:
        self.calls.append(("restore", pid, tid, previous))

    def trim_memory(self, pid: int) -> None:
        self.calls.append(("trim", pid))
        if self.fail_trim:
            raise RecoveryActionFailure("trim refused")

    def can_trim_memory(self) -> bool:
        return self.trim_available

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any logging configuration a test installed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def signaler(inspector: FakeInspector) -> FakeSignaler:
    return FakeSignaler(inspector)


@pytest.fixture
def report_dir(tmp_path: Path) -> Path:
    return tmp_path / "reports"


@pytest.fixture
def config(report_dir: Path) -> SupervisorConfig:
    return SupervisorConfig(report_dir=report_dir)


def make_snapshot(**overrides) -> ProcessSnapshot:
    """A healthy snapshot; override any field."""
    values = dict(
        pid=123,
        sampled_at=10.0,
        cpu_time=4.5,
        cpu_percent=25.0,
        working_set=512 * 1024 * 1024,
        memory_delta=0,
        thread_count=8,
        handle_count=40,
        delayed_thread_count=1,
        private_bytes=256 * 1024 * 1024,
        paged_bytes=1024 * 1024 * 1024,
    )
    values.update(overrides)
    return ProcessSnapshot(**values)
