"""Command-line entry point for stallguard."""

import argparse
import signal
from pathlib import Path
from queue import Queue

import structlog

from stallguard.config import LoggingConfig, SupervisorConfig, load_config
from stallguard.errors import FatalInitFailure
from stallguard.inspector import PosixSignaler, PsutilInspector
from stallguard.logs import setup_logging
from stallguard.supervisor import SupervisorLoop, SupervisorStatus

log = structlog.get_logger(__name__)

EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stallguard",
        description="Supervise one server process, recover stalled threads, report incidents.",
    )
    parser.add_argument("target", help="process name or numeric pid to supervise")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument("--report-dir", type=Path, help="directory for incident reports and the event log")
    parser.add_argument("--artifact", type=Path, help="file to watch for integrity changes")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--tui", action="store_true", help="show the live dashboard")
    return parser


def build_supervisor(
    target: str,
    config: SupervisorConfig,
    artifact: Path | None = None,
    status_queue: Queue[SupervisorStatus] | None = None,
) -> SupervisorLoop:
    """Wire the OS-backed capabilities into a supervisor loop."""
    return SupervisorLoop(
        target,
        config,
        inspector=PsutilInspector(),
        signaler=PosixSignaler(
            wake_signal=config.wake_signal,
            memory_relief_signal=config.memory_relief_signal,
        ),
        artifact=artifact,
        status_queue=status_queue,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for the stallguard command."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, report_dir=args.report_dir)
    except FatalInitFailure as exc:
        setup_logging(LoggingConfig())
        log.error("startup_failed", error=str(exc))
        return EXIT_FATAL

    logging_config = config.logging
    if args.log_level:
        logging_config = logging_config.model_copy(update={"level": args.log_level})
    setup_logging(logging_config)

    if args.tui:
        from stallguard.app import StallguardApp

        status_queue: Queue[SupervisorStatus] = Queue(maxsize=16)
        supervisor = build_supervisor(args.target, config, args.artifact, status_queue)
        try:
            supervisor.open()
        except FatalInitFailure as exc:
            log.error("startup_failed", error=str(exc))
            return EXIT_FATAL
        StallguardApp(supervisor, status_queue).run()
        supervisor.stop()
        return 0

    supervisor = build_supervisor(args.target, config, args.artifact)
    try:
        supervisor.open()
    except FatalInitFailure as exc:
        log.error("startup_failed", error=str(exc))
        return EXIT_FATAL

    def _request_stop(signum: int, frame: object) -> None:
        log.info("stop_requested", signal=signal.Signals(signum).name)
        supervisor.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    supervisor.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
