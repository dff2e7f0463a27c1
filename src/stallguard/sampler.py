"""Point-in-time resource sampling of the supervised process."""

import time
from collections.abc import Callable, Iterable

from stallguard.inspector import ProcessInspector
from stallguard.models import ProcessSnapshot, ThreadWaitState


def is_stalled(thread: ThreadWaitState, wait_reasons: Iterable[str]) -> bool:
    """Whether a thread is blocked in one of the execution-delay wait channels."""
    return bool(thread.wait_reason) and thread.wait_reason in wait_reasons


class MetricsSampler:
    """
    Turns raw process counters into a ProcessSnapshot.

    CPU usage is derived from the CPU-time delta against the previous
    sample, so the first sample of a process always reports 0.0.
    """

    def __init__(
        self,
        inspector: ProcessInspector,
        stall_wait_reasons: Iterable[str],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the MetricsSampler.

        Args:
            inspector: OS-facing reader for the supervised process.
            stall_wait_reasons: Wait channels that count as a stall.
            clock: Monotonic time source in seconds.
        """
        self._inspector = inspector
        self._wait_reasons = frozenset(stall_wait_reasons)
        self._clock = clock

    def sample(self, pid: int, previous: ProcessSnapshot | None) -> ProcessSnapshot:
        """
        Sample the process.

        Raises:
            MetricsUnavailable: The process went away between the presence
                check and this call.
        """
        metrics = self._inspector.read_metrics(pid)
        threads = self._inspector.read_threads(pid)
        now = self._clock()

        # Only a sample of the same process can serve as a baseline
        baseline = previous if previous is not None and previous.pid == pid else None

        cpu_percent = 0.0
        memory_delta = 0
        if baseline is not None:
            wall_delta = now - baseline.sampled_at
            cpu_delta = metrics.cpu_time - baseline.cpu_time
            if wall_delta > 0:
                cpu_percent = round(max(0.0, cpu_delta) / wall_delta * 100, 2)
            memory_delta = metrics.working_set - baseline.working_set

        stalled = tuple(t for t in threads if is_stalled(t, self._wait_reasons))

        return ProcessSnapshot(
            pid=pid,
            sampled_at=now,
            cpu_time=metrics.cpu_time,
            cpu_percent=cpu_percent,
            working_set=metrics.working_set,
            memory_delta=memory_delta,
            thread_count=metrics.thread_count,
            handle_count=metrics.handle_count,
            delayed_thread_count=len(stalled),
            private_bytes=metrics.private_bytes,
            paged_bytes=metrics.paged_bytes,
            stalled_threads=stalled,
        )
