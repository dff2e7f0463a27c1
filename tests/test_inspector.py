"""Tests for the psutil-backed inspector and the POSIX signaler."""

import os
import subprocess
import sys

import pytest

from stallguard.errors import MetricsUnavailable, RecoveryActionFailure
from stallguard.inspector import PosixSignaler, PsutilInspector

linux_only = pytest.mark.skipif(sys.platform != "linux", reason="requires /proc task files")

# Well above any kernel pid_max
MISSING_PID = 99_999_999


@pytest.fixture
def child():
    """A short-lived sleeping child process."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    yield proc
    proc.kill()
    proc.wait()


def write_task(proc_root, pid: int, tid: int, stat: str, wchan: str) -> None:
    task_dir = proc_root / str(pid) / "task" / str(tid)
    task_dir.mkdir(parents=True)
    (task_dir / "stat").write_text(stat)
    (task_dir / "wchan").write_text(wchan)


class TestPsutilInspector:
    """Tests for PsutilInspector against real processes."""

    def test_find_by_pid(self, child):
        assert PsutilInspector().find_process(str(child.pid)) == child.pid

    def test_find_missing_pid(self):
        assert PsutilInspector().find_process(str(MISSING_PID)) is None

    def test_find_by_name_skips_own_process(self):
        own_name = os.path.basename(sys.executable)
        found = PsutilInspector().find_process(own_name)

        assert found != os.getpid()

    def test_find_unknown_name(self):
        assert PsutilInspector().find_process("no-such-server-binary-xyz") is None

    def test_read_metrics(self):
        metrics = PsutilInspector().read_metrics(os.getpid())

        assert metrics.cpu_time >= 0
        assert metrics.working_set > 0
        assert metrics.thread_count >= 1
        assert metrics.handle_count >= 0

    def test_read_metrics_of_missing_process(self):
        with pytest.raises(MetricsUnavailable):
            PsutilInspector().read_metrics(MISSING_PID)

    @linux_only
    def test_read_threads_includes_main_thread(self):
        threads = PsutilInspector().read_threads(os.getpid())

        assert os.getpid() in {t.tid for t in threads}

    def test_read_thread_of_missing_process(self):
        with pytest.raises(MetricsUnavailable):
            PsutilInspector().read_thread(MISSING_PID, 1)

    def test_host_load(self):
        load = PsutilInspector().host_load()

        assert 0 <= load.memory_percent <= 100
        assert load.memory_available > 0
        assert len(load.load_avg) == 3


class TestTaskParsing:
    """Tests for /proc task file parsing against a fake proc tree."""

    def test_parses_state_priority_and_wait_reason(self, tmp_path):
        pid = os.getpid()
        fields = ["S"] + ["0"] * 14 + ["25", "5", "1", "0", "12345"]
        write_task(tmp_path, pid, 4021, f"4021 (my server) {' '.join(fields)}\n", "hrtimer_nanosleep")
        inspector = PsutilInspector(proc_root=tmp_path)

        thread = inspector.read_thread(pid, 4021)

        assert thread.tid == 4021
        assert thread.state == "S"
        assert thread.priority == 25
        assert thread.wait_reason == "hrtimer_nanosleep"
        assert thread.start_time == pytest.approx(12345 / os.sysconf("SC_CLK_TCK"))

    def test_zero_wait_channel_means_running(self, tmp_path):
        pid = os.getpid()
        fields = ["R"] + ["0"] * 14 + ["20", "0", "1", "0", "100"]
        write_task(tmp_path, pid, 7, f"7 (a) b) {' '.join(fields)}\n", "0")

        thread = PsutilInspector(proc_root=tmp_path).read_thread(pid, 7)

        assert thread.state == "R"
        assert thread.wait_reason == ""

    def test_exited_thread_reads_as_none(self, tmp_path):
        (tmp_path / str(os.getpid())).mkdir()

        assert PsutilInspector(proc_root=tmp_path).read_thread(os.getpid(), 7) is None

    def test_truncated_stat_reads_as_none(self, tmp_path):
        pid = os.getpid()
        write_task(tmp_path, pid, 7, "7 (x) S 1 2\n", "")

        assert PsutilInspector(proc_root=tmp_path).read_thread(pid, 7) is None


class TestPosixSignaler:
    """Tests for PosixSignaler error mapping."""

    def test_wake_missing_thread_fails(self):
        with pytest.raises(RecoveryActionFailure):
            PosixSignaler().wake(MISSING_PID, MISSING_PID)

    def test_unknown_signal_fails(self, child):
        with pytest.raises(RecoveryActionFailure, match="unknown signal"):
            PosixSignaler(wake_signal="SIGNOPE").wake(child.pid, child.pid)

    def test_wake_live_process(self, child):
        PosixSignaler().wake(child.pid, child.pid)

        assert child.poll() is None

    def test_trim_without_relief_signal_fails(self, child):
        with pytest.raises(RecoveryActionFailure, match="not configured"):
            PosixSignaler().trim_memory(child.pid)

    def test_trim_sends_relief_signal(self, child):
        PosixSignaler(memory_relief_signal="SIGCONT").trim_memory(child.pid)

        assert child.poll() is None

    def test_restore_priority(self, child):
        PosixSignaler().restore_priority(child.pid, child.pid, 5)

        assert os.getpriority(os.PRIO_PROCESS, child.pid) == 5

    def test_restore_priority_of_exited_thread_is_ignored(self):
        PosixSignaler().restore_priority(MISSING_PID, MISSING_PID, 0)

    def test_can_trim_memory_follows_relief_signal(self):
        assert not PosixSignaler().can_trim_memory()
        assert PosixSignaler(memory_relief_signal="SIGUSR2").can_trim_memory()
