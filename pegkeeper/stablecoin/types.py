"""Pegkeeper – Stablecoin engine types.

This module defines the enums, dataclasses and exceptions shared by the
price oracle, the stability contract and the stabilization service.
Configuration objects are frozen and validated on construction; partial
updates produce a new instance via :meth:`StablecoinConfig.merged`, so a
half-applied configuration is never observable.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional

from pegkeeper.core.types import Millis


# ============================================================================
# Errors
# ============================================================================


class StablecoinError(Exception):
    """Base class for all stablecoin engine errors."""


class InvalidInputError(StablecoinError, ValueError):
    """Raised when an input is malformed (non-positive price, negative amount, ...).

    Rejected at the boundary; no state is changed.
    """


class InvariantViolationError(StablecoinError):
    """Raised when a well-formed operation would break a business invariant.

    The bool-returning mutators on the contract report this condition by
    returning ``False``; callers that need an exception (such as the
    control API) raise this type themselves.
    """


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise InvalidInputError(message)


def _is_finite(value: float) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# ============================================================================
# Enums
# ============================================================================


class AdjustmentAction(str, Enum):
    """Supply action chosen by the decision function.

    - EXPAND: price above peg, increase supply.
    - CONTRACT: price below peg, decrease supply.
    - NONE: price inside the tolerance band or no capacity to act.
    """

    EXPAND = "expand"
    CONTRACT = "contract"
    NONE = "none"


# ============================================================================
# Configuration
# ============================================================================


def _merge(config: Any, changes: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(config)}
    unknown = sorted(set(changes) - known)
    if unknown:
        raise InvalidInputError(f"Unknown configuration fields: {', '.join(unknown)}")
    return replace(config, **dict(changes))


@dataclass(frozen=True)
class StablecoinConfig:
    """Parameters of the stability contract.

    Intervals and windows are in milliseconds.

    Attributes:
        target_price: Peg the asset tracks; must be > 0.
        tolerance_band: Dead-zone half width as a fraction of the peg.
        max_supply_change: Cap on a single adjustment as a fraction of
            current supply.
        reserve_ratio: Minimum reserve_pool / total_supply.
        rebalance_interval: Minimum time between executed adjustments.
        price_window: Lookback for the average price used when deciding.
        response_factor: Slope of the deviation-to-amount curve; an
            adjustment moves ``response_factor * |deviation|`` of supply
            before the cap applies.
        metrics_window: Lookback for deviation/volatility metrics.
        max_price_history: Count bound on retained price observations.
        max_history_age: Observations older than newest minus this age
            are pruned.
        max_adjustment_history: Count bound on retained executed
            adjustments.
    """

    target_price: float = 1.0
    tolerance_band: float = 0.02
    max_supply_change: float = 0.1
    reserve_ratio: float = 0.1
    rebalance_interval: Millis = 3_600_000
    price_window: Millis = 300_000
    response_factor: float = 0.5
    metrics_window: Millis = 3_600_000
    max_price_history: int = 1000
    max_history_age: Millis = 86_400_000
    max_adjustment_history: int = 500

    def __post_init__(self) -> None:
        _require(_is_finite(self.target_price) and self.target_price > 0, "target_price must be > 0")
        _require(
            _is_finite(self.tolerance_band) and 0.0 <= self.tolerance_band < 1.0,
            "tolerance_band must be in [0, 1)",
        )
        _require(
            _is_finite(self.max_supply_change) and 0.0 < self.max_supply_change <= 1.0,
            "max_supply_change must be in (0, 1]",
        )
        _require(
            _is_finite(self.reserve_ratio) and 0.0 <= self.reserve_ratio <= 1.0,
            "reserve_ratio must be in [0, 1]",
        )
        _require(
            _is_finite(self.response_factor) and 0.0 < self.response_factor <= 1.0,
            "response_factor must be in (0, 1]",
        )
        _require(self.rebalance_interval >= 0, "rebalance_interval must be >= 0")
        _require(self.price_window > 0, "price_window must be > 0")
        _require(self.metrics_window > 0, "metrics_window must be > 0")
        _require(self.max_price_history >= 1, "max_price_history must be >= 1")
        _require(self.max_history_age > 0, "max_history_age must be > 0")
        _require(self.max_adjustment_history >= 1, "max_adjustment_history must be >= 1")

    def merged(self, changes: Mapping[str, Any]) -> "StablecoinConfig":
        """Return a new config with ``changes`` applied on top of this one.

        Raises:
            InvalidInputError: For unknown field names or invalid values.
        """

        return _merge(self, changes)


@dataclass(frozen=True)
class OracleConfig:
    """Parameters of the price oracle.

    Attributes:
        update_interval: Cadence (ms) of the oracle's aggregation tick.
        min_confidence: Observations below this confidence are rejected.
        aggregation_window: Lookback (ms) for the confidence-weighted
            average produced on each tick.
        max_observations: Count bound on retained observations.
    """

    update_interval: Millis = 60_000
    min_confidence: float = 0.5
    aggregation_window: Millis = 300_000
    max_observations: int = 1000

    def __post_init__(self) -> None:
        _require(self.update_interval > 0, "update_interval must be > 0")
        _require(
            _is_finite(self.min_confidence) and 0.0 <= self.min_confidence <= 1.0,
            "min_confidence must be in [0, 1]",
        )
        _require(self.aggregation_window > 0, "aggregation_window must be > 0")
        _require(self.max_observations >= 1, "max_observations must be >= 1")

    def merged(self, changes: Mapping[str, Any]) -> "OracleConfig":
        """Return a new config with ``changes`` applied on top of this one."""

        return _merge(self, changes)


# ============================================================================
# Value objects
# ============================================================================


@dataclass(frozen=True)
class PriceObservation:
    """A single price sample.

    Attributes:
        price: Observed price; must be > 0.
        timestamp: Observation time in ms.
        volume: Traded volume behind the sample; must be >= 0.
        confidence: Feed confidence in [0, 1].
        source: Free-form feed label.
    """

    price: float
    timestamp: Millis
    volume: float = 0.0
    confidence: float = 1.0
    source: str = "manual"

    def __post_init__(self) -> None:
        _require(_is_finite(self.price) and self.price > 0, f"price must be > 0, got {self.price!r}")
        _require(
            _is_finite(self.volume) and self.volume >= 0,
            f"volume must be >= 0, got {self.volume!r}",
        )
        _require(
            _is_finite(self.confidence) and 0.0 <= self.confidence <= 1.0,
            f"confidence must be in [0, 1], got {self.confidence!r}",
        )
        _require(self.timestamp >= 0, f"timestamp must be >= 0, got {self.timestamp!r}")


@dataclass(frozen=True)
class SupplyAdjustment:
    """Outcome of one evaluation of the decision function.

    Attributes:
        action: Chosen supply action.
        amount: Absolute supply delta (>= 0).
        new_supply: Supply after applying ``amount`` in ``action``'s direction.
        timestamp: Evaluation time in ms.
        price: Average price the decision was based on.
        deviation: Signed relative deviation of ``price`` from the peg.
    """

    action: AdjustmentAction
    amount: float
    new_supply: float
    timestamp: Millis
    price: float = 0.0
    deviation: float = 0.0


@dataclass(frozen=True)
class SupplyInfo:
    """Consistent snapshot of supply and reserve state."""

    total_supply: float
    reserve_pool: float
    reserve_ratio: float
    min_reserve_ratio: float
    last_rebalance: Optional[Millis] = None


@dataclass(frozen=True)
class StabilityMetrics:
    """Derived stability metrics; recomputed on demand.

    Attributes:
        target_price: Current peg.
        current_price: Latest observed price (peg if none).
        average_price: Mean price over the metrics window.
        deviation: |average_price - target| / target.
        volatility: Population standard deviation of windowed prices
            relative to the peg.
        stability_score: Composite in [0, 100]; higher is more stable.
        sample_count: Number of observations in the window.
    """

    target_price: float
    current_price: float
    average_price: float
    deviation: float
    volatility: float
    stability_score: float
    sample_count: int


@dataclass(frozen=True)
class PriceSnapshot:
    """Price section of an engine metrics snapshot."""

    current_price: float
    average_price: float
    aggregated_price: Optional[float]
    last_observation: Optional[Millis]


@dataclass(frozen=True)
class ServiceStatus:
    """Lifecycle status of a stabilization service."""

    is_running: bool
    started_at: Optional[Millis]
    rebalance_interval: Millis
    update_interval: Millis
    rebalance_ticks: int = 0
    oracle_ticks: int = 0
    tick_errors: int = 0


@dataclass(frozen=True)
class EngineMetrics:
    """Internally consistent snapshot of the whole engine.

    All sections are read under a single acquisition of the service's
    state lock.
    """

    timestamp: Millis
    stability: StabilityMetrics
    supply: SupplyInfo
    price: PriceSnapshot
    oracle: Mapping[str, Any]
    status: ServiceStatus
