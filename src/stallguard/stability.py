"""Composite stability judgment of the supervised process."""

import time
from collections.abc import Callable

from stallguard.models import ProcessSnapshot, SupervisorState


class StabilityClassifier:
    """Checks a snapshot against the memory, CPU and delayed-thread ceilings."""

    def __init__(
        self,
        state: SupervisorState,
        max_memory_mb: float,
        max_cpu_percent: float,
        max_delayed_threads: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._max_memory_mb = max_memory_mb
        self._max_cpu_percent = max_cpu_percent
        self._max_delayed_threads = max_delayed_threads
        self._clock = clock

    def is_stable(self, snapshot: ProcessSnapshot | None) -> tuple[bool, list[str]]:
        """
        Classify a snapshot.

        Returns (stable, reasons); reasons is empty when stable. Records the
        last-known-stable time on the shared state only when stable.
        """
        if snapshot is None:
            return False, ["no metrics sample available"]

        reasons: list[str] = []
        memory_mb = snapshot.working_set_mb
        if memory_mb > self._max_memory_mb:
            reasons.append(f"memory {memory_mb:.0f}MB exceeds ceiling {self._max_memory_mb:.0f}MB")
        if snapshot.cpu_percent > self._max_cpu_percent:
            reasons.append(
                f"cpu {snapshot.cpu_percent:.1f}% exceeds ceiling {self._max_cpu_percent:.1f}%"
            )
        if snapshot.delayed_thread_count > self._max_delayed_threads:
            reasons.append(
                f"{snapshot.delayed_thread_count} delayed threads exceed ceiling "
                f"{self._max_delayed_threads}"
            )

        if not reasons:
            self._state.last_stable_at = self._clock()
            return True, []
        return False, reasons
