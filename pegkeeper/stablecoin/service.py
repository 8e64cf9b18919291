"""Pegkeeper – Stabilization service.

The service owns one :class:`~pegkeeper.stablecoin.contract.StablecoinContract`
and one :class:`~pegkeeper.stablecoin.oracle.PriceOracle` and provides:

- lifecycle (:meth:`StabilizationService.start` / :meth:`StabilizationService.stop`)
  for two independent schedules: oracle refresh on the oracle's
  ``update_interval`` and rebalance on the contract's ``rebalance_interval``,
- consistent metrics snapshots for the host process,
- operational and simulation hooks (manual prices, market shocks,
  forced rebalances, live configuration updates).

Concurrency model: a single ``threading.Lock`` guards all contract and
oracle state. It is held for exactly one state transition and never
across a timer boundary, so scheduled ticks and on-demand calls are
serialised without long waits. Timer start/stop/reschedule is guarded by
a separate lifecycle lock that is never taken while holding the state
lock.
"""

from __future__ import annotations

import random
import threading
from typing import TYPE_CHECKING, List, Optional

from pegkeeper.core.logging import get_logger
from pegkeeper.core.time import SystemClock
from pegkeeper.core.types import ClockFn, ConfigPatch, Millis
from pegkeeper.monitoring.metrics import increment_counter, record_metrics
from pegkeeper.orchestration.scheduler import PeriodicTask
from pegkeeper.stablecoin.contract import StablecoinContract
from pegkeeper.stablecoin.oracle import PriceOracle
from pegkeeper.stablecoin.types import (
    AdjustmentAction,
    EngineMetrics,
    InvalidInputError,
    OracleConfig,
    PriceObservation,
    PriceSnapshot,
    ServiceStatus,
    StablecoinConfig,
    SupplyAdjustment,
    SupplyInfo,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pegkeeper.core.config import PegkeeperConfig


logger = get_logger(__name__)

# Shocked prices never fall below this fraction of the peg.
MIN_SHOCK_PRICE_FRACTION: float = 1e-6

# Range of the random magnitude multiplier applied to a shock's severity.
SHOCK_MAGNITUDE_RANGE: tuple[float, float] = (0.5, 1.0)

METRIC_PREFIX: str = "stablecoin"


class StabilizationService:
    """Scheduling, metrics and control façade over the contract and oracle.

    Instances are constructed and owned explicitly by the host; nothing
    starts at import time.

    Example:
        >>> service = StabilizationService(StablecoinConfig(), OracleConfig())
        >>> service.start()
        >>> service.set_price(1.03)
        >>> service.get_metrics().stability.current_price
        1.03
        >>> service.stop()
    """

    def __init__(
        self,
        config: StablecoinConfig | None = None,
        oracle_config: OracleConfig | None = None,
        initial_supply: float = 1_000_000.0,
        initial_reserve: float = 200_000.0,
        clock: ClockFn | None = None,
        seed: int | None = None,
        name: str = "main",
    ) -> None:
        self.name = name
        self._clock: ClockFn = clock or SystemClock()
        self._contract = StablecoinContract(config, initial_supply, initial_reserve, self._clock)
        self._oracle = PriceOracle(
            oracle_config, target_price=self._contract.get_config().target_price, clock=self._clock
        )
        self._rng = random.Random(seed)

        self._state_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._started_at: Optional[Millis] = None
        self._rebalance_task: Optional[PeriodicTask] = None
        self._oracle_task: Optional[PeriodicTask] = None

    @classmethod
    def from_config(cls, settings: "PegkeeperConfig", name: str = "main") -> "StabilizationService":
        """Build a service from environment-driven settings."""

        return cls(
            config=settings.stablecoin,
            oracle_config=settings.oracle,
            initial_supply=settings.initial_supply,
            initial_reserve=settings.initial_reserve,
            seed=settings.shock_seed,
            name=name,
        )

    # ======================================================================
    # Lifecycle
    # ======================================================================

    def start(self) -> None:
        """Start both schedules. Idempotent while running."""

        with self._lifecycle_lock:
            if self._running:
                logger.debug("StabilizationService %s: start() while running ignored", self.name)
                return

            with self._state_lock:
                rebalance_interval = self._contract.get_config().rebalance_interval
                update_interval = self._oracle.get_config().update_interval

            self._rebalance_task = PeriodicTask(
                "rebalance", rebalance_interval, self._scheduled_rebalance
            )
            self._oracle_task = PeriodicTask("oracle", update_interval, self.refresh_price)
            self._rebalance_task.start()
            self._oracle_task.start()
            self._running = True
            self._started_at = self._clock()

        logger.info(
            "StabilizationService %s: started rebalance_interval=%dms update_interval=%dms",
            self.name,
            rebalance_interval,
            update_interval,
        )

    def stop(self) -> None:
        """Cancel both schedules and wait for in-flight ticks.

        Safe to call when never started. Once this returns no scheduled
        tick will fire.
        """

        with self._lifecycle_lock:
            tasks = [t for t in (self._rebalance_task, self._oracle_task) if t is not None]
            self._rebalance_task = None
            self._oracle_task = None
            was_running = self._running
            self._running = False
            for task in tasks:
                task.stop()

        if was_running:
            logger.info("StabilizationService %s: stopped", self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    def now(self) -> Millis:
        """Return the current time on the service's clock."""

        return self._clock()

    def get_status(self) -> ServiceStatus:
        with self._lifecycle_lock:
            tasks = [t for t in (self._rebalance_task, self._oracle_task) if t is not None]
            rebalance_ticks = self._rebalance_task.tick_count if self._rebalance_task else 0
            oracle_ticks = self._oracle_task.tick_count if self._oracle_task else 0
            running = self._running
            started_at = self._started_at
        with self._state_lock:
            rebalance_interval = self._contract.get_config().rebalance_interval
            update_interval = self._oracle.get_config().update_interval

        return ServiceStatus(
            is_running=running,
            started_at=started_at,
            rebalance_interval=rebalance_interval,
            update_interval=update_interval,
            rebalance_ticks=rebalance_ticks,
            oracle_ticks=oracle_ticks,
            tick_errors=sum(t.error_count for t in tasks),
        )

    def _reschedule(self, which: str) -> None:
        """Restart one schedule with its current interval if running."""

        with self._lifecycle_lock:
            if not self._running:
                return
            with self._state_lock:
                if which == "rebalance":
                    interval = self._contract.get_config().rebalance_interval
                else:
                    interval = self._oracle.get_config().update_interval

            if which == "rebalance":
                old, callback = self._rebalance_task, self._scheduled_rebalance
            else:
                old, callback = self._oracle_task, self.refresh_price

            task = PeriodicTask(which, interval, callback)
            if old is not None:
                old.stop()
                # Status counters span the service run, not one task instance.
                task.tick_count = old.tick_count
                task.error_count = old.error_count
            task.start()
            if which == "rebalance":
                self._rebalance_task = task
            else:
                self._oracle_task = task

        logger.info("StabilizationService %s: rescheduled %s every %dms", self.name, which, interval)

    # ======================================================================
    # Scheduled work
    # ======================================================================

    def refresh_price(self) -> Optional[PriceObservation]:
        """Run one oracle aggregation and feed the result into the contract."""

        with self._state_lock:
            aggregated = self._oracle.tick(self._clock())
            if aggregated is not None:
                self._contract.add_price_data(aggregated)
        return aggregated

    def _scheduled_rebalance(self) -> None:
        self.perform_rebalance()

    # ======================================================================
    # Price ingestion & simulation hooks
    # ======================================================================

    def add_observation(self, obs: PriceObservation) -> bool:
        """Feed an external observation to the oracle."""

        with self._state_lock:
            accepted = self._oracle.add_observation(obs)
        if not accepted:
            increment_counter(f"{METRIC_PREFIX}.oracle.rejected", tags={"engine": self.name})
        return accepted

    def set_price(
        self, price: float, confidence: float = 1.0, volume: float = 0.0
    ) -> PriceObservation:
        """Inject a price straight into the contract, bypassing the oracle.

        Raises:
            InvalidInputError: If the price, confidence or volume is invalid.
        """

        with self._state_lock:
            obs = PriceObservation(
                price=price,
                timestamp=self._clock(),
                volume=volume,
                confidence=confidence,
                source="manual",
            )
            self._contract.add_price_data(obs)
        logger.info("StabilizationService %s: price set to %.6f", self.name, obs.price)
        return obs

    def simulate_market_shock(self, severity: float) -> PriceObservation:
        """Inject a synthetic price perturbation proportional to ``severity``.

        The shock moves the current price by ``severity * m`` (relative),
        where ``m`` is drawn uniformly from ``SHOCK_MAGNITUDE_RANGE`` and
        the direction is a fair coin flip. Both draws come from the
        service's ``random.Random(seed)``, so a fixed seed reproduces the
        same sequence of shocks.

        Raises:
            InvalidInputError: If ``severity`` is outside [0, 1].
        """

        if not isinstance(severity, (int, float)) or not 0.0 <= severity <= 1.0:
            raise InvalidInputError(f"severity must be in [0, 1], got {severity!r}")

        with self._state_lock:
            current = self._contract.get_current_price()
            target = self._contract.get_config().target_price
            direction = self._rng.choice((-1.0, 1.0))
            magnitude = severity * self._rng.uniform(*SHOCK_MAGNITUDE_RANGE)
            shocked = max(current * (1.0 + direction * magnitude), target * MIN_SHOCK_PRICE_FRACTION)
            obs = PriceObservation(
                price=shocked,
                timestamp=self._clock(),
                volume=0.0,
                confidence=1.0,
                source="shock",
            )
            self._contract.add_price_data(obs)

        logger.warning(
            "StabilizationService %s: market shock severity=%.3f price %.6f -> %.6f",
            self.name,
            severity,
            current,
            shocked,
        )
        return obs

    # ======================================================================
    # Rebalancing
    # ======================================================================

    def perform_rebalance(self) -> Optional[SupplyAdjustment]:
        """Attempt a rebalance now; still subject to the contract's rate limit."""

        with self._state_lock:
            adjustment = self._contract.rebalance(self._clock())

        if adjustment is not None and adjustment.action is not AdjustmentAction.NONE:
            increment_counter(
                f"{METRIC_PREFIX}.rebalances",
                tags={"engine": self.name, "action": adjustment.action.value},
            )
        return adjustment

    def preview_adjustment(self) -> SupplyAdjustment:
        """Return what a rebalance would do now, without applying it."""

        with self._state_lock:
            return self._contract.calculate_supply_adjustment(self._clock())

    def get_supply_history(self, limit: int = 10) -> List[SupplyAdjustment]:
        with self._state_lock:
            return self._contract.get_supply_history(limit)

    # ======================================================================
    # Reserves & direct supply operations
    # ======================================================================

    def add_reserves(self, amount: float) -> bool:
        with self._state_lock:
            return self._contract.add_reserves(amount)

    def remove_reserves(self, amount: float) -> bool:
        with self._state_lock:
            return self._contract.remove_reserves(amount)

    def mint(self, amount: float) -> bool:
        with self._state_lock:
            return self._contract.mint(amount)

    def burn(self, amount: float) -> bool:
        with self._state_lock:
            return self._contract.burn(amount)

    # ======================================================================
    # Reads
    # ======================================================================

    def get_supply_info(self) -> SupplyInfo:
        with self._state_lock:
            return self._contract.get_supply_info()

    def get_metrics(self) -> EngineMetrics:
        """Return a snapshot of stability, supply, price and oracle state.

        Engine state is read under one acquisition of the state lock;
        gauges are published to :mod:`pegkeeper.monitoring.metrics`
        afterwards.
        """

        status = self.get_status()
        with self._state_lock:
            now = self._clock()
            config = self._contract.get_config()
            stability = self._contract.get_stability_metrics()
            supply = self._contract.get_supply_info()
            history = self._contract.get_price_history()
            price = PriceSnapshot(
                current_price=stability.current_price,
                average_price=self._contract.get_average_price(config.price_window, now=now),
                aggregated_price=self._oracle.aggregated_price,
                last_observation=history[-1].timestamp if history else None,
            )
            oracle = self._oracle.get_status()

        snapshot = EngineMetrics(
            timestamp=now,
            stability=stability,
            supply=supply,
            price=price,
            oracle=oracle,
            status=status,
        )
        self._publish(snapshot)
        return snapshot

    def _publish(self, snapshot: EngineMetrics) -> None:
        record_metrics(
            {
                f"{METRIC_PREFIX}.current_price": snapshot.stability.current_price,
                f"{METRIC_PREFIX}.deviation": snapshot.stability.deviation,
                f"{METRIC_PREFIX}.volatility": snapshot.stability.volatility,
                f"{METRIC_PREFIX}.stability_score": snapshot.stability.stability_score,
                f"{METRIC_PREFIX}.total_supply": snapshot.supply.total_supply,
                f"{METRIC_PREFIX}.reserve_pool": snapshot.supply.reserve_pool,
                f"{METRIC_PREFIX}.reserve_ratio": snapshot.supply.reserve_ratio,
            },
            tags={"engine": self.name},
        )

    # ======================================================================
    # Configuration
    # ======================================================================

    def get_config(self) -> StablecoinConfig:
        with self._state_lock:
            return self._contract.get_config()

    def get_oracle_config(self) -> OracleConfig:
        with self._state_lock:
            return self._oracle.get_config()

    def update_config(self, changes: ConfigPatch) -> StablecoinConfig:
        """Merge ``changes`` into the contract config.

        A peg change is propagated to the oracle; a rebalance interval
        change restarts the rebalance schedule when running.
        """

        with self._state_lock:
            previous = self._contract.get_config()
            updated = self._contract.update_config(changes)
            if updated.target_price != previous.target_price:
                self._oracle.set_target_price(updated.target_price)

        if updated.rebalance_interval != previous.rebalance_interval:
            self._reschedule("rebalance")
        return updated

    def update_oracle_config(self, changes: ConfigPatch) -> OracleConfig:
        """Merge ``changes`` into the oracle config, rescheduling if needed."""

        with self._state_lock:
            previous = self._oracle.get_config()
            updated = self._oracle.update_config(changes)

        if updated.update_interval != previous.update_interval:
            self._reschedule("oracle")
        return updated
