"""Pegkeeper – Stabilization daemon.

This module runs a :class:`~pegkeeper.stablecoin.service.StabilizationService`
as a long-running process. The service owns its own schedules (oracle
refresh and rebalance); the daemon only:

- builds the service from environment-driven settings plus CLI overrides,
- starts it and periodically logs a compact metrics line, and
- stops it cleanly on SIGINT/SIGTERM.

The daemon must not contain stabilization logic; it is a thin lifecycle
wrapper so that the same engine can equally be embedded in a web host
via :func:`pegkeeper.monitoring.app.create_app`.
"""

from __future__ import annotations

import argparse
import signal
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from pegkeeper.core.config import PegkeeperConfig, get_config
from pegkeeper.core.logging import get_logger
from pegkeeper.stablecoin.service import StabilizationService


logger = get_logger(__name__)


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class StabilizationDaemonConfig:
    """Configuration for the stabilization daemon.

    Attributes:
        report_interval_seconds: Interval between metrics log lines.
        initial_supply: Optional override of the configured initial supply.
        initial_reserve: Optional override of the configured initial reserve.
        max_reports: Stop after this many reports (None runs until
            interrupted); mainly for smoke runs.
    """

    report_interval_seconds: float = 60.0
    initial_supply: Optional[float] = None
    initial_reserve: Optional[float] = None
    max_reports: Optional[int] = None


# ============================================================================
# Core loop
# ============================================================================


def build_service(config: StabilizationDaemonConfig, settings: PegkeeperConfig) -> StabilizationService:
    """Create the service from settings with daemon overrides applied."""

    return StabilizationService(
        config=settings.stablecoin,
        oracle_config=settings.oracle,
        initial_supply=(
            config.initial_supply if config.initial_supply is not None else settings.initial_supply
        ),
        initial_reserve=(
            config.initial_reserve
            if config.initial_reserve is not None
            else settings.initial_reserve
        ),
        seed=settings.shock_seed,
        name="daemon",
    )


def _log_metrics(service: StabilizationService) -> None:
    """Log a compact summary of the engine state."""

    metrics = service.get_metrics()
    logger.info(
        "stabilization_daemon: price=%.6f score=%.1f supply=%.2f reserve=%.2f ratio=%.4f",
        metrics.stability.current_price,
        metrics.stability.stability_score,
        metrics.supply.total_supply,
        metrics.supply.reserve_pool,
        metrics.supply.reserve_ratio,
    )


def run_daemon(
    config: StabilizationDaemonConfig,
    service: StabilizationService,
    shutdown: Optional[threading.Event] = None,
) -> int:
    """Run the service until ``shutdown`` is set or ``max_reports`` is reached.

    Returns:
        The number of metrics reports logged.
    """

    shutdown = shutdown or threading.Event()
    interval = max(0.01, float(config.report_interval_seconds))
    reports = 0

    service.start()
    logger.info("stabilization_daemon: starting report_interval=%.2fs", interval)
    try:
        while not shutdown.wait(interval):
            try:
                _log_metrics(service)
            except Exception as exc:  # pragma: no cover
                logger.exception("stabilization_daemon: metrics report failed: %s", exc)
            reports += 1
            if config.max_reports is not None and reports >= config.max_reports:
                break
    finally:
        service.stop()
        logger.info("stabilization_daemon: shutdown complete after %d reports", reports)

    return reports


def _install_signal_handlers(shutdown: threading.Event) -> None:
    """Setup graceful shutdown handlers."""

    def _signal_handler(signum, frame):  # noqa: ARG001
        logger.info("stabilization_daemon: received signal %d, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


# ============================================================================
# CLI entrypoint
# ============================================================================


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Pegkeeper stabilization daemon – run the oracle refresh and "
            "rebalance schedules and log engine metrics."
        ),
    )

    parser.add_argument(
        "--report-interval-seconds",
        type=float,
        default=60.0,
        help="Interval between metrics log lines (default: 60)",
    )
    parser.add_argument(
        "--initial-supply",
        type=float,
        default=None,
        help="Override INITIAL_SUPPLY from the environment",
    )
    parser.add_argument(
        "--initial-reserve",
        type=float,
        default=None,
        help="Override INITIAL_RESERVE from the environment",
    )
    parser.add_argument(
        "--max-reports",
        type=int,
        default=None,
        help="Exit after this many metrics reports (default: run until interrupted)",
    )

    args = parser.parse_args(argv)

    if args.report_interval_seconds <= 0:
        parser.error("--report-interval-seconds must be positive")
    if args.initial_supply is not None and args.initial_supply < 0:
        parser.error("--initial-supply must be >= 0")
    if args.initial_reserve is not None and args.initial_reserve < 0:
        parser.error("--initial-reserve must be >= 0")
    if args.max_reports is not None and args.max_reports <= 0:
        parser.error("--max-reports must be positive")

    return args


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entrypoint for the stabilization daemon.

    Example::

        python -m pegkeeper.orchestration.stabilization_daemon \
            --report-interval-seconds 30 \
            --initial-supply 1000000 --initial-reserve 250000
    """

    args = _parse_args(argv)
    config = StabilizationDaemonConfig(
        report_interval_seconds=args.report_interval_seconds,
        initial_supply=args.initial_supply,
        initial_reserve=args.initial_reserve,
        max_reports=args.max_reports,
    )

    shutdown = threading.Event()
    _install_signal_handlers(shutdown)
    service = build_service(config, get_config())
    run_daemon(config, service, shutdown)


if __name__ == "__main__":  # pragma: no cover - manual CLI entry
    main()
