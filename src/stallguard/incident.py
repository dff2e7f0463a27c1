"""Durable incident reports captured at terminal or critical events."""

import contextlib
import json
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from stallguard.errors import FatalInitFailure, ReportWriteFailure
from stallguard.inspector import ProcessInspector
from stallguard.models import (
    IncidentReason,
    MemoryPressure,
    ProcessSnapshot,
    RecoveryResult,
    StallClear,
    SupervisorState,
)

log = structlog.get_logger(__name__)

UNKNOWN = "unknown"

_SNAPSHOT_FIELDS = (
    "cpu_percent",
    "working_set",
    "memory_delta",
    "thread_count",
    "handle_count",
    "delayed_thread_count",
    "private_bytes",
    "paged_bytes",
)


@dataclass(slots=True, frozen=True)
class IncidentReport:
    """Immutable record of monitoring state at capture time."""

    captured_at: str  # ISO-8601 local time
    reason: IncidentReason
    pid: int | str
    process: dict[str, Any]
    threads: tuple[dict[str, Any], ...]
    budget: dict[str, Any]
    host: dict[str, Any]
    last_stable_age: float | str
    metrics_history: tuple[dict[str, Any], ...]
    recovery_history: tuple[dict[str, Any], ...]
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["threads"] = list(self.threads)
        data["metrics_history"] = list(self.metrics_history)
        data["recovery_history"] = list(self.recovery_history)
        return data


@dataclass(slots=True, frozen=True)
class ReportHandle:
    """A captured report and where it was written (None if the write failed)."""

    report: IncidentReport
    path: Path | None

    @property
    def persisted(self) -> bool:
        return self.path is not None


def _snapshot_dict(snapshot: ProcessSnapshot | None) -> dict[str, Any]:
    if snapshot is None:
        return {name: UNKNOWN for name in _SNAPSHOT_FIELDS}
    return {name: getattr(snapshot, name) for name in _SNAPSHOT_FIELDS}


def _recovery_dict(result: RecoveryResult) -> dict[str, Any]:
    match result.action:
        case StallClear(tid=tid):
            action = {"kind": "stall-clear", "tid": tid}
        case MemoryPressure():
            action = {"kind": "memory-pressure"}
    return {
        "action": action,
        "outcome": result.outcome.value,
        "reasons": list(result.reasons),
        "detail": result.detail,
    }


class IncidentReporter:
    """
    Snapshots SupervisorState into incident report files.

    Capturing never mutates monitoring state and never raises: a report
    that cannot be written is logged in full instead.
    """

    def __init__(
        self,
        state: SupervisorState,
        report_dir: Path,
        inspector: ProcessInspector,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._state = state
        self._report_dir = report_dir
        self._inspector = inspector
        self._clock = clock
        self._wall_clock = wall_clock

    def prepare(self) -> None:
        """Create the report directory; failure is fatal at startup."""
        try:
            self._report_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalInitFailure(f"cannot create report directory {self._report_dir}: {exc}") from exc
        if not os.access(self._report_dir, os.W_OK):
            raise FatalInitFailure(f"report directory is not writable: {self._report_dir}")

    def capture(
        self,
        reason: IncidentReason,
        last_snapshot: ProcessSnapshot | None,
        **details: Any,
    ) -> ReportHandle:
        """Build and persist a report for the given reason."""
        stamp = self._wall_clock()
        report = self._build(reason, last_snapshot, stamp, details)
        try:
            path = self._write(report, stamp)
        except ReportWriteFailure as exc:
            log.error(
                "incident_report_write_failed",
                reason=reason.value,
                error=str(exc),
                report=report.to_dict(),
            )
            return ReportHandle(report=report, path=None)

        log.warning("incident_report_captured", reason=reason.value, path=str(path))
        return ReportHandle(report=report, path=path)

    def _build(
        self,
        reason: IncidentReason,
        snapshot: ProcessSnapshot | None,
        stamp: datetime,
        details: dict[str, Any],
    ) -> IncidentReport:
        state = self._state
        now = self._clock()

        threads = tuple(
            {
                "tid": entry.tid,
                "duration": round(entry.duration, 3),
                "observations": entry.observations,
                "recovery_attempts": entry.recovery_attempts,
                "lifecycle": entry.lifecycle.value,
                "priority": entry.attributes.priority,
                "wait_reason": entry.attributes.wait_reason,
                "start_time": entry.attributes.start_time,
            }
            for entry in sorted(state.stalls.values(), key=lambda e: e.tid)
        )

        budget = state.budget
        budget_dict = {
            "recoveries_today": budget.recoveries_today,
            "successes": budget.successes,
            "failures": budget.failures,
            "skipped": budget.skipped,
            "seconds_since_last_action": (
                round(now - budget.last_action_at, 3) if budget.last_action_at is not None else UNKNOWN
            ),
        }

        try:
            host: dict[str, Any] = asdict(self._inspector.host_load())
        except Exception as exc:
            log.debug("host_load_unavailable", error=str(exc))
            host = {"memory_percent": UNKNOWN, "cpu_percent": UNKNOWN}

        if snapshot is not None:
            pid: int | str = snapshot.pid
        elif state.pid is not None:
            pid = state.pid
        else:
            pid = UNKNOWN

        return IncidentReport(
            captured_at=stamp.isoformat(),
            reason=reason,
            pid=pid,
            process=_snapshot_dict(snapshot),
            threads=threads,
            budget=budget_dict,
            host=host,
            last_stable_age=(
                round(now - state.last_stable_at, 3) if state.last_stable_at is not None else UNKNOWN
            ),
            metrics_history=tuple(_snapshot_dict(s) for s in state.metrics_history),
            recovery_history=tuple(_recovery_dict(r) for r in state.recovery_history),
            details=dict(details),
        )

    def _write(self, report: IncidentReport, stamp: datetime) -> Path:
        """Write atomically so a report file is either complete or absent."""
        path = self._report_dir / f"incident_{stamp.strftime('%Y%m%d_%H%M%S_%f')}.json"
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._report_dir, prefix=".incident_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(report.to_dict(), fh, indent=2, default=str)
                os.replace(tmp_name, path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise ReportWriteFailure(f"cannot write {path}: {exc}") from exc
        return path
