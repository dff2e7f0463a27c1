"""OS-facing capabilities: reading the supervised process and nudging its threads."""

import os
import signal
from pathlib import Path
from typing import Protocol

import psutil

from stallguard.errors import MetricsUnavailable, RecoveryActionFailure
from stallguard.models import HostLoad, ProcessMetrics, ThreadWaitState

# Errors psutil raises when the target disappears or is off-limits mid-call
_GONE = (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied)


class ProcessInspector(Protocol):
    """Read-only view of the supervised process and the host."""

    def find_process(self, target: str) -> int | None: ...

    def read_metrics(self, pid: int) -> ProcessMetrics: ...

    def read_threads(self, pid: int) -> list[ThreadWaitState]: ...

    def read_thread(self, pid: int, tid: int) -> ThreadWaitState | None: ...

    def host_load(self) -> HostLoad: ...


class ThreadSignaler(Protocol):
    """Side-effecting primitives used by recovery actions."""

    def wake(self, pid: int, tid: int) -> None: ...

    def boost_priority(self, pid: int, tid: int) -> int: ...

    def restore_priority(self, pid: int, tid: int, previous: int) -> None: ...

    def trim_memory(self, pid: int) -> None: ...

    def can_trim_memory(self) -> bool: ...


def _normalize_name(name: str) -> str:
    name = name.lower()
    return name[:-4] if name.endswith(".exe") else name


class PsutilInspector:
    """
    ProcessInspector backed by psutil and, on Linux, /proc task files.

    Per-thread wait reasons come from /proc/<pid>/task/<tid>/wchan; on
    platforms without /proc every thread reports an empty wait reason and is
    never considered stalled.
    """

    def __init__(self, proc_root: Path = Path("/proc")) -> None:
        self._proc_root = proc_root
        self._own_pid = os.getpid()
        try:
            self._clock_ticks = os.sysconf("SC_CLK_TCK")
        except (AttributeError, ValueError, OSError):
            self._clock_ticks = 100
        # Initialize host CPU percent (first call returns 0.0)
        psutil.cpu_percent(interval=None)

    def find_process(self, target: str) -> int | None:
        """
        Resolve a process name or numeric pid to a live pid.

        Names match case-insensitively with any '.exe' suffix ignored; the
        lowest matching pid wins so repeated lookups are stable.
        """
        if target.isdigit():
            pid = int(target)
            try:
                proc = psutil.Process(pid)
                if proc.status() == psutil.STATUS_ZOMBIE:
                    return None
            except _GONE:
                return None
            return pid

        wanted = _normalize_name(target)
        matches: list[int] = []
        for proc in psutil.process_iter(attrs=["pid", "name"]):
            try:
                info = proc.info
                if info.get("pid") == self._own_pid:
                    continue
                if _normalize_name(info.get("name") or "") == wanted:
                    matches.append(info["pid"])
            except _GONE:
                continue
        return min(matches) if matches else None

    def read_metrics(self, pid: int) -> ProcessMetrics:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                cpu = proc.cpu_times()
                mem = proc.memory_info()
                threads = proc.num_threads()
                if hasattr(proc, "num_handles"):
                    handles = proc.num_handles()
                else:
                    handles = proc.num_fds()
        except _GONE as exc:
            raise MetricsUnavailable(pid, type(exc).__name__) from exc

        return ProcessMetrics(
            cpu_time=cpu.user + cpu.system,
            working_set=mem.rss,
            # Windows reports private/paged directly; Linux data segment is the closest
            private_bytes=getattr(mem, "private", getattr(mem, "data", 0)),
            paged_bytes=getattr(mem, "pagefile", getattr(mem, "vms", 0)),
            thread_count=threads,
            handle_count=handles,
        )

    def read_threads(self, pid: int) -> list[ThreadWaitState]:
        try:
            tids = [t.id for t in psutil.Process(pid).threads()]
        except _GONE as exc:
            raise MetricsUnavailable(pid, type(exc).__name__) from exc

        threads: list[ThreadWaitState] = []
        for tid in tids:
            state = self._read_task(pid, tid)
            if state is not None:
                threads.append(state)
        return threads

    def read_thread(self, pid: int, tid: int) -> ThreadWaitState | None:
        if not psutil.pid_exists(pid):
            raise MetricsUnavailable(pid, "process exited")
        return self._read_task(pid, tid)

    def host_load(self) -> HostLoad:
        mem = psutil.virtual_memory()
        return HostLoad(
            memory_percent=mem.percent,
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_available=mem.available,
            load_avg=psutil.getloadavg(),
        )

    def _read_task(self, pid: int, tid: int) -> ThreadWaitState | None:
        """Parse /proc/<pid>/task/<tid>/{stat,wchan}; None if the thread is gone."""
        task_dir = self._proc_root / str(pid) / "task" / str(tid)
        try:
            stat = (task_dir / "stat").read_text()
        except FileNotFoundError:
            if not self._proc_root.exists():
                # No /proc on this platform: thread exists but wait state is unknown
                return ThreadWaitState(tid=tid, state="?", wait_reason="", priority=0, start_time=0.0)
            return None
        except OSError:
            return None

        try:
            wchan = (task_dir / "wchan").read_text().strip()
        except OSError:
            wchan = ""
        if wchan == "0":
            wchan = ""

        # Fields after the parenthesised comm, which may itself contain spaces
        fields = stat[stat.rfind(")") + 2 :].split()
        try:
            state = fields[0]
            priority = int(fields[15])
            start_time = int(fields[19]) / self._clock_ticks
        except (IndexError, ValueError):
            return None

        return ThreadWaitState(
            tid=tid,
            state=state,
            wait_reason=wchan,
            priority=priority,
            start_time=start_time,
        )


def _resolve_signal(name: str) -> signal.Signals:
    try:
        return signal.Signals[name.upper()]
    except KeyError as exc:
        raise RecoveryActionFailure(f"unknown signal {name!r}") from exc


class PosixSignaler:
    """
    ThreadSignaler built on POSIX signals and per-thread scheduling priority.

    On Linux, setpriority() with a thread id changes only that thread. kill()
    with a thread id is delivered to the whole thread group, so wake() resumes
    the process as a whole rather than the single stalled thread.
    """

    def __init__(self, wake_signal: str = "SIGCONT", memory_relief_signal: str | None = None) -> None:
        self._wake_signal = wake_signal
        self._memory_relief_signal = memory_relief_signal

    def wake(self, pid: int, tid: int) -> None:
        sig = _resolve_signal(self._wake_signal)
        try:
            os.kill(tid, sig)
        except OSError as exc:
            raise RecoveryActionFailure(f"wake of thread {tid} failed: {exc}") from exc

    def boost_priority(self, pid: int, tid: int) -> int:
        """Raise the thread's scheduling priority by one nice step; returns the old nice."""
        try:
            previous = os.getpriority(os.PRIO_PROCESS, tid)
            os.setpriority(os.PRIO_PROCESS, tid, max(-20, previous - 1))
        except OSError as exc:
            raise RecoveryActionFailure(f"priority boost of thread {tid} failed: {exc}") from exc
        return previous

    def restore_priority(self, pid: int, tid: int, previous: int) -> None:
        try:
            os.setpriority(os.PRIO_PROCESS, tid, previous)
        except ProcessLookupError:
            pass  # Thread exited during the boost
        except OSError as exc:
            raise RecoveryActionFailure(f"priority restore of thread {tid} failed: {exc}") from exc

    def can_trim_memory(self) -> bool:
        """Whether a memory relief signal is configured."""
        return self._memory_relief_signal is not None

    def trim_memory(self, pid: int) -> None:
        """Ask the process to release memory via its configured relief signal."""
        if self._memory_relief_signal is None:
            raise RecoveryActionFailure("memory relief signal is not configured")
        sig = _resolve_signal(self._memory_relief_signal)
        try:
            os.kill(pid, sig)
        except OSError as exc:
            raise RecoveryActionFailure(f"memory relief for pid {pid} failed: {exc}") from exc
