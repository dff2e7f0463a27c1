"""Error taxonomy for stallguard."""


class StallguardError(Exception):
    """Base class for all stallguard errors."""


class TransientSampleFailure(StallguardError):
    """The process vanished between the presence check and a metrics read."""


class MetricsUnavailable(TransientSampleFailure):
    """Process or thread metrics could not be read."""

    def __init__(self, pid: int, detail: str = "") -> None:
        self.pid = pid
        self.detail = detail
        message = f"metrics unavailable for pid {pid}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RecoveryActionFailure(StallguardError):
    """An OS-level recovery call failed or its verification failed."""


class ReportWriteFailure(StallguardError):
    """An incident report could not be persisted."""


class FatalInitFailure(StallguardError):
    """Startup cannot continue (report directory, event log, config)."""
