"""Main entry point for the match engine service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from matchengine.config.environment import EnvironmentConfig
from matchengine.config.exceptions import ConfigurationError
from matchengine.config.loader import load_config
from matchengine.config.models import EngineConfig
from matchengine.logging import get_logger
from matchengine.logging.config import configure_logging
from matchengine.scheduler import SweepScheduler
from matchengine.service import MatchingService, build_service
from matchengine.store import close_database

logger = get_logger(__name__, component="cli")

DEFAULT_DRAIN_TIMEOUT = 30.0


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[EngineConfig, EnvironmentConfig]:
    """
    Load configuration and settle the effective log level.

    Log level priority: CLI flag, then LOG_LEVEL, then the config file.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    engine_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif env_config.log_level:
        pass
    else:
        env_config.log_level = engine_config.logging.level

    return engine_config, env_config


def log_status(service: MatchingService, event: str) -> None:
    status = service.queue_status()
    stats = service.matching_stats(top=5)
    logger.info(
        f"Queue: {status.pending} pending, {status.processing} processing, "
        f"{status.failed_last_24h} failed in 24h; {stats.total_scores} scores stored",
        extra={
            "event": event,
            "pending_by_priority": status.pending_by_priority,
            "processing": status.processing,
            "failed_last_24h": status.failed_last_24h,
            "evicted_last_24h": status.evicted_last_24h,
            "completed_last_24h": status.completed_last_24h,
            "total_scores": stats.total_scores,
            "average_overall_score": (
                round(stats.average_overall_score, 4) if stats.average_overall_score is not None else None
            ),
        },
    )


def run_manual(service: MatchingService, drain_timeout: float) -> int:
    """Sweep once, wait for the queue to empty, report, and stop."""
    logger.info("Executing manual sweep", extra={"event": "service.manual_sweep.starting"})
    service.start()
    try:
        service.run_sweep(triggered_by="manual")
        remaining = service.drain(drain_timeout)
        log_status(service, "service.manual_sweep.completed")
    finally:
        service.shutdown(timeout=drain_timeout)
    return 0 if remaining == 0 else 1


def run_daemon(service: MatchingService, engine_config: EngineConfig, drain_timeout: float) -> int:
    """Run dispatcher and sweep scheduler until SIGINT/SIGTERM, then drain."""
    shutdown_event = threading.Event()

    scheduler_service = None
    if engine_config.sweep.enabled:
        scheduler_service = SweepScheduler(
            sweep_callable=service.run_sweep,
            cleanup_callable=service.cleanup_old_records,
            interval_seconds=engine_config.sweep.interval_seconds,
            shutdown_event=shutdown_event,
        )

    def signal_handler(signum, frame):
        logger.info(
            f"Received signal {signum}, shutting down",
            extra={"event": "service.signal_received", "signal": signum},
        )
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    if scheduler_service is not None:
        scheduler_service.start()

    logger.info("Match engine running. Press Ctrl+C to stop", extra={"event": "service.daemon_mode.started"})

    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down", extra={"event": "service.keyboard_interrupt"})

    if scheduler_service is not None:
        scheduler_service.shutdown(wait=False)
    remaining = service.drain(drain_timeout)
    service.shutdown(timeout=drain_timeout)
    log_status(service, "service.final_status")
    return 0 if remaining == 0 else 1


def main(argv=None) -> int:
    """
    Main entry point for the match engine.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Placement match engine - keeps student/opportunity match scores fresh"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml, then config/config.yaml)",
    )
    parser.add_argument(
        "--manual-run",
        action="store_true",
        help="Run one batch sweep, drain the queue, print status and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=DEFAULT_DRAIN_TIMEOUT,
        help=f"Seconds to wait for queued work on shutdown (default: {DEFAULT_DRAIN_TIMEOUT:.0f})",
    )

    args = parser.parse_args(argv)

    try:
        engine_config, env_config = load_runtime_config(args.config, args.log_level)

        configure_logging(
            level=env_config.log_level,
            format_type=engine_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "Match engine starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "manual_run": args.manual_run,
                "workers": engine_config.workers.count,
                "storage_backend": engine_config.storage.backend,
            },
        )

        service = build_service(engine_config, env_config)

        try:
            if args.manual_run:
                exit_code = run_manual(service, args.drain_timeout)
            else:
                exit_code = run_daemon(service, engine_config, args.drain_timeout)
        finally:
            close_database()

        logger.info(
            "Match engine stopped",
            extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
        )
        return exit_code

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
