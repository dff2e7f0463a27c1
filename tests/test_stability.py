"""Tests for the StabilityClassifier."""

import pytest
from conftest import FakeClock, make_snapshot

from stallguard.models import SupervisorState
from stallguard.stability import StabilityClassifier

MB = 1024 * 1024


@pytest.fixture
def state() -> SupervisorState:
    return SupervisorState()


@pytest.fixture
def classifier(state: SupervisorState, clock: FakeClock) -> StabilityClassifier:
    return StabilityClassifier(state, max_memory_mb=8192, max_cpu_percent=90, max_delayed_threads=5, clock=clock)


class TestStabilityClassifier:
    """Tests for StabilityClassifier.is_stable."""

    def test_healthy_snapshot_is_stable(self, classifier, state, clock):
        clock.now = 77.0

        stable, reasons = classifier.is_stable(make_snapshot(working_set=1024 * MB, cpu_percent=10.0))

        assert stable
        assert reasons == []
        assert state.last_stable_at == 77.0

    def test_memory_over_ceiling(self, classifier, state):
        """Test scenario: 8300MB against an 8192MB ceiling is unstable, citing memory."""
        stable, reasons = classifier.is_stable(make_snapshot(working_set=8300 * MB))

        assert not stable
        assert len(reasons) == 1
        assert "memory" in reasons[0]
        assert "8300MB" in reasons[0]
        assert state.last_stable_at is None

    def test_memory_at_ceiling_is_stable(self, classifier):
        stable, _ = classifier.is_stable(make_snapshot(working_set=8192 * MB))

        assert stable

    def test_cpu_over_ceiling(self, classifier):
        stable, reasons = classifier.is_stable(make_snapshot(cpu_percent=95.5))

        assert not stable
        assert "cpu" in reasons[0]

    def test_delayed_threads_over_fixed_ceiling(self, classifier):
        assert classifier.is_stable(make_snapshot(delayed_thread_count=5))[0]

        stable, reasons = classifier.is_stable(make_snapshot(delayed_thread_count=6))

        assert not stable
        assert "delayed threads" in reasons[0]

    def test_every_breach_is_reported(self, classifier):
        stable, reasons = classifier.is_stable(
            make_snapshot(working_set=9000 * MB, cpu_percent=99.0, delayed_thread_count=10)
        )

        assert not stable
        assert len(reasons) == 3

    def test_missing_snapshot_is_unstable(self, classifier):
        stable, reasons = classifier.is_stable(None)

        assert not stable
        assert reasons == ["no metrics sample available"]

    def test_last_stable_only_moves_when_stable(self, classifier, state, clock):
        clock.now = 10.0
        classifier.is_stable(make_snapshot())
        clock.now = 20.0
        classifier.is_stable(make_snapshot(cpu_percent=100.0))

        assert state.last_stable_at == 10.0
