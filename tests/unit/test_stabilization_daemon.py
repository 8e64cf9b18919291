"""Pegkeeper: Tests for the stabilization daemon CLI."""

from __future__ import annotations

import threading

import pytest

from pegkeeper.core.config import PegkeeperConfig
from pegkeeper.orchestration.stabilization_daemon import (
    StabilizationDaemonConfig,
    _parse_args,
    build_service,
    run_daemon,
)


class TestBuildService:
    def test_overrides_take_precedence(self) -> None:
        config = StabilizationDaemonConfig(initial_supply=1_234.0)

        service = build_service(config, PegkeeperConfig())

        info = service.get_supply_info()
        assert info.total_supply == 1_234.0
        assert info.reserve_pool == PegkeeperConfig().initial_reserve
        assert service.name == "daemon"


class TestRunDaemon:
    def test_stops_after_max_reports(self) -> None:
        config = StabilizationDaemonConfig(report_interval_seconds=0.01, max_reports=2)
        service = build_service(config, PegkeeperConfig())

        reports = run_daemon(config, service)

        assert reports == 2
        assert service.is_running is False

    def test_preset_shutdown_exits_immediately(self) -> None:
        config = StabilizationDaemonConfig(report_interval_seconds=0.01)
        service = build_service(config, PegkeeperConfig())
        shutdown = threading.Event()
        shutdown.set()

        assert run_daemon(config, service, shutdown) == 0
        assert service.is_running is False


class TestParseArgs:
    def test_defaults(self) -> None:
        args = _parse_args([])

        assert args.report_interval_seconds == 60.0
        assert args.initial_supply is None
        assert args.max_reports is None

    @pytest.mark.parametrize(
        "argv",
        [
            ["--report-interval-seconds", "0"],
            ["--initial-supply", "-1"],
            ["--initial-reserve", "-1"],
            ["--max-reports", "0"],
        ],
    )
    def test_invalid_arguments_exit(self, argv: list) -> None:
        with pytest.raises(SystemExit):
            _parse_args(argv)
