"""Pegkeeper – Stability contract.

This module holds the supply/reserve state of the synthetic asset and
the decision function that turns a price signal into a bounded supply
adjustment.

The decision function (:meth:`StablecoinContract.calculate_supply_adjustment`)
is pure: it reads configuration, supply state and price history and
returns what *would* happen. :meth:`StablecoinContract.rebalance` is the
rate-limited mutator that applies it.

Every mutator validates before mutating; a rejected operation leaves all
state untouched. The contract is not thread-safe on its own; the
stabilization service serialises access to it.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from pegkeeper.core.logging import get_logger
from pegkeeper.core.time import SystemClock
from pegkeeper.core.types import ClockFn, ConfigPatch, Millis
from pegkeeper.stablecoin.types import (
    AdjustmentAction,
    InvalidInputError,
    PriceObservation,
    StabilityMetrics,
    StablecoinConfig,
    SupplyAdjustment,
    SupplyInfo,
)


logger = get_logger(__name__)

# Relative slack applied to the expansion headroom so that floating-point
# rounding never lands the post-expansion ratio a hair under the floor.
_HEADROOM_SLACK: float = 1e-9

# Reference scales for the stability score. The score halves for every
# unit of weighted (deviation / ref + volatility / ref), so a 10% deviation
# with no volatility scores 50 and the score keeps falling past it.
DEVIATION_REF: float = 0.05
VOLATILITY_REF: float = 0.05
DEVIATION_WEIGHT: float = 0.5
VOLATILITY_WEIGHT: float = 0.5


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def _check_amount(amount: float, what: str) -> float:
    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or not math.isfinite(amount):
        raise InvalidInputError(f"{what} amount must be a finite number, got {amount!r}")
    if amount <= 0:
        raise InvalidInputError(f"{what} amount must be > 0, got {amount!r}")
    return float(amount)


class StablecoinContract:
    """Supply/reserve state and the supply-adjustment decision core.

    Example:
        >>> contract = StablecoinContract(StablecoinConfig(tolerance_band=0.01), 10_000, 2_000)
        >>> contract.add_price_data(PriceObservation(price=1.05, timestamp=now_ms()))
        >>> contract.calculate_supply_adjustment().action
        <AdjustmentAction.EXPAND: 'expand'>
    """

    def __init__(
        self,
        config: StablecoinConfig | None = None,
        initial_supply: float = 1_000_000.0,
        initial_reserve: float = 200_000.0,
        clock: ClockFn | None = None,
    ) -> None:
        if initial_supply < 0 or initial_reserve < 0:
            raise InvalidInputError("initial supply and reserve must be >= 0")

        self._config = config or StablecoinConfig()
        self._clock: ClockFn = clock or SystemClock()
        self._total_supply = float(initial_supply)
        self._reserve_pool = float(initial_reserve)
        self._price_history: Deque[PriceObservation] = deque(
            maxlen=self._config.max_price_history
        )
        self._adjustments: Deque[SupplyAdjustment] = deque(
            maxlen=self._config.max_adjustment_history
        )
        self._last_rebalance: Optional[Millis] = None

        logger.info(
            "StablecoinContract initialised: supply=%.2f reserve=%.2f target=%.4f",
            self._total_supply,
            self._reserve_pool,
            self._config.target_price,
        )

    # ======================================================================
    # Price history
    # ======================================================================

    def add_price_data(self, obs: PriceObservation) -> None:
        """Append ``obs`` to the price history and prune stale entries.

        Raises:
            InvalidInputError: If ``obs`` is older than the newest entry.
        """

        if self._price_history and obs.timestamp < self._price_history[-1].timestamp:
            raise InvalidInputError(
                f"Price timestamp {obs.timestamp} precedes latest "
                f"{self._price_history[-1].timestamp}"
            )

        self._price_history.append(obs)

        cutoff = obs.timestamp - self._config.max_history_age
        while self._price_history and self._price_history[0].timestamp < cutoff:
            self._price_history.popleft()

    def get_current_price(self) -> float:
        """Return the last added price, or the peg if there is none."""

        if not self._price_history:
            return self._config.target_price
        return self._price_history[-1].price

    def get_average_price(self, window: Millis, now: Millis | None = None) -> float:
        """Return the mean price over ``[now - window, now]``.

        Falls back to :meth:`get_current_price` when the window holds no
        observations.
        """

        now = self._clock() if now is None else now
        prices = self._window_prices(now - window, now)
        if not prices:
            return self.get_current_price()
        return float(np.mean(prices))

    def get_price_history(self) -> List[PriceObservation]:
        """Return retained observations, oldest first."""

        return list(self._price_history)

    def _window_prices(self, start: Millis, end: Millis) -> List[float]:
        return [o.price for o in self._price_history if start <= o.timestamp <= end]

    # ======================================================================
    # Decision function
    # ======================================================================

    def calculate_supply_adjustment(self, now: Millis | None = None) -> SupplyAdjustment:
        """Decide the supply adjustment the current price signal calls for.

        The amount follows a linear curve in the deviation,
        ``supply * min(|d|, 1) * response_factor``, then the binding
        constraint among the per-adjustment cap and the reserve-safe bound
        wins. Deviations inside the tolerance band yield ``NONE``.

        This method has no side effects.
        """

        cfg = self._config
        now = self._clock() if now is None else now
        supply = self._total_supply

        avg_price = self.get_average_price(cfg.price_window, now=now)
        deviation = (avg_price - cfg.target_price) / cfg.target_price

        if abs(deviation) <= cfg.tolerance_band:
            return self._no_action(now, avg_price, deviation)

        action = AdjustmentAction.EXPAND if deviation > 0 else AdjustmentAction.CONTRACT
        raw_amount = supply * min(abs(deviation), 1.0) * cfg.response_factor
        cap = supply * cfg.max_supply_change
        amount = min(raw_amount, cap, self._reserve_safe_amount(action))

        if amount <= 0.0:
            return self._no_action(now, avg_price, deviation)

        new_supply = supply + amount if action is AdjustmentAction.EXPAND else supply - amount
        return SupplyAdjustment(
            action=action,
            amount=amount,
            new_supply=max(0.0, new_supply),
            timestamp=now,
            price=avg_price,
            deviation=deviation,
        )

    def _no_action(self, now: Millis, price: float, deviation: float) -> SupplyAdjustment:
        return SupplyAdjustment(
            action=AdjustmentAction.NONE,
            amount=0.0,
            new_supply=self._total_supply,
            timestamp=now,
            price=price,
            deviation=deviation,
        )

    def _reserve_safe_amount(self, action: AdjustmentAction) -> float:
        """Largest amount ``action`` may move without breaking the reserve floor.

        Expansion lowers reserve/supply, so it is bounded by the headroom
        ``reserve / reserve_ratio - supply``. Contraction leaves the
        reserve unchanged and can only raise the ratio; its bound is the
        supply itself.
        """

        supply = self._total_supply
        if action is AdjustmentAction.CONTRACT:
            return supply

        ratio = self._config.reserve_ratio
        if ratio <= 0.0:
            return math.inf
        headroom = self._reserve_pool / ratio - supply
        return max(0.0, headroom * (1.0 - _HEADROOM_SLACK))

    def _keeps_reserve_floor(self, new_supply: float, new_reserve: float) -> bool:
        """Return True if moving to (new_supply, new_reserve) is acceptable.

        A state is acceptable when its ratio meets the floor, or when the
        move does not lower the ratio of an already under-reserved state
        (so recovering mutations such as burns are never blocked). From
        zero supply there is no prior ratio, so only the floor applies.
        """

        if new_supply <= 0.0:
            return True
        new_ratio = new_reserve / new_supply
        if new_ratio >= self._config.reserve_ratio:
            return True
        if self._total_supply <= 0.0:
            return False
        return new_ratio >= self._ratio()

    # ======================================================================
    # Rebalancing
    # ======================================================================

    def rebalance(self, now: Millis | None = None) -> Optional[SupplyAdjustment]:
        """Compute and apply a supply adjustment, subject to rate limiting.

        Returns:
            None if less than ``rebalance_interval`` has elapsed since the
            last executed adjustment; the ``NONE`` adjustment (not
            recorded) if no action is needed or the reserve floor rejects
            the move; otherwise the applied adjustment.
        """

        now = self._clock() if now is None else now
        if (
            self._last_rebalance is not None
            and now - self._last_rebalance < self._config.rebalance_interval
        ):
            logger.debug(
                "StablecoinContract.rebalance: rate limited (%d ms since last)",
                now - self._last_rebalance,
            )
            return None

        adjustment = self.calculate_supply_adjustment(now=now)
        if adjustment.action is AdjustmentAction.NONE:
            return adjustment

        if not self._keeps_reserve_floor(adjustment.new_supply, self._reserve_pool):
            logger.warning(
                "StablecoinContract.rebalance: %s of %.4f rejected by reserve floor",
                adjustment.action.value,
                adjustment.amount,
            )
            return self._no_action(now, adjustment.price, adjustment.deviation)

        self._total_supply = adjustment.new_supply
        self._last_rebalance = now
        self._adjustments.append(adjustment)

        logger.info(
            "StablecoinContract.rebalance: action=%s amount=%.4f new_supply=%.4f price=%.6f deviation=%.4f",
            adjustment.action.value,
            adjustment.amount,
            adjustment.new_supply,
            adjustment.price,
            adjustment.deviation,
        )
        return adjustment

    def get_supply_history(self, limit: int | None = None) -> List[SupplyAdjustment]:
        """Return executed adjustments, most recent first."""

        history = list(reversed(self._adjustments))
        if limit is None:
            return history
        if limit < 0:
            raise InvalidInputError("limit must be >= 0")
        return history[:limit]

    # ======================================================================
    # Metrics
    # ======================================================================

    def get_stability_metrics(self) -> StabilityMetrics:
        """Derive deviation, volatility and the stability score.

        The lookback window is anchored at the newest observation rather
        than the clock, so a burst of samples keeps describing the market
        until newer data arrives.
        """

        cfg = self._config
        target = cfg.target_price
        current = self.get_current_price()

        if self._price_history:
            end = self._price_history[-1].timestamp
            prices = np.array(self._window_prices(end - cfg.metrics_window, end), dtype=float)
        else:
            prices = np.array([], dtype=float)

        average = float(prices.mean()) if prices.size else current
        deviation = abs(average - target) / target
        volatility = float(np.std(prices)) / target if prices.size >= 2 else 0.0

        penalty = (
            DEVIATION_WEIGHT * deviation / DEVIATION_REF
            + VOLATILITY_WEIGHT * volatility / VOLATILITY_REF
        )
        stability_score = _clamp(100.0 * 0.5 ** penalty)

        return StabilityMetrics(
            target_price=target,
            current_price=current,
            average_price=average,
            deviation=deviation,
            volatility=volatility,
            stability_score=stability_score,
            sample_count=int(prices.size),
        )

    # ======================================================================
    # Reserves & direct supply operations
    # ======================================================================

    def add_reserves(self, amount: float) -> bool:
        """Add ``amount`` to the reserve pool. Always succeeds for amount > 0."""

        amount = _check_amount(amount, "reserve")
        self._reserve_pool += amount
        logger.info("StablecoinContract: added reserves %.4f (pool=%.4f)", amount, self._reserve_pool)
        return True

    def remove_reserves(self, amount: float) -> bool:
        """Withdraw ``amount`` from the reserve pool.

        Returns False, without mutating, if the pool is too small or the
        withdrawal would push the ratio under the floor.
        """

        amount = _check_amount(amount, "reserve")
        new_reserve = self._reserve_pool - amount
        if new_reserve < 0.0:
            logger.warning(
                "StablecoinContract: reserve withdrawal %.4f exceeds pool %.4f",
                amount,
                self._reserve_pool,
            )
            return False
        if self._total_supply > 0.0 and new_reserve / self._total_supply < self._config.reserve_ratio:
            logger.warning(
                "StablecoinContract: reserve withdrawal %.4f would breach reserve ratio %.4f",
                amount,
                self._config.reserve_ratio,
            )
            return False

        self._reserve_pool = new_reserve
        logger.info("StablecoinContract: removed reserves %.4f (pool=%.4f)", amount, self._reserve_pool)
        return True

    def mint(self, amount: float) -> bool:
        """Increase supply outside the rebalance algorithm.

        Returns False, without mutating, if the new supply would breach
        the reserve floor.
        """

        amount = _check_amount(amount, "mint")
        new_supply = self._total_supply + amount
        if not self._keeps_reserve_floor(new_supply, self._reserve_pool):
            logger.warning(
                "StablecoinContract: mint %.4f would breach reserve ratio %.4f",
                amount,
                self._config.reserve_ratio,
            )
            return False

        self._total_supply = new_supply
        logger.info("StablecoinContract: minted %.4f (supply=%.4f)", amount, self._total_supply)
        return True

    def burn(self, amount: float) -> bool:
        """Decrease supply outside the rebalance algorithm.

        Returns False, without mutating, if ``amount`` exceeds supply.
        """

        amount = _check_amount(amount, "burn")
        if amount > self._total_supply:
            logger.warning(
                "StablecoinContract: burn %.4f exceeds supply %.4f", amount, self._total_supply
            )
            return False

        self._total_supply -= amount
        logger.info("StablecoinContract: burned %.4f (supply=%.4f)", amount, self._total_supply)
        return True

    # ======================================================================
    # State & configuration
    # ======================================================================

    def _ratio(self) -> float:
        if self._total_supply <= 0.0:
            return 0.0
        return self._reserve_pool / self._total_supply

    def get_supply_info(self) -> SupplyInfo:
        return SupplyInfo(
            total_supply=self._total_supply,
            reserve_pool=self._reserve_pool,
            reserve_ratio=self._ratio(),
            min_reserve_ratio=self._config.reserve_ratio,
            last_rebalance=self._last_rebalance,
        )

    def get_config(self) -> StablecoinConfig:
        return self._config

    def update_config(self, changes: ConfigPatch) -> StablecoinConfig:
        """Replace the configuration with ``changes`` merged on top.

        Unspecified fields keep their previous values. History bounds are
        re-applied immediately, keeping the newest entries.

        Raises:
            InvalidInputError: For unknown fields or invalid values; the
                previous configuration stays in effect.
        """

        new_config = self._config.merged(changes)
        if new_config.max_price_history != self._config.max_price_history:
            self._price_history = deque(self._price_history, maxlen=new_config.max_price_history)
        if new_config.max_adjustment_history != self._config.max_adjustment_history:
            self._adjustments = deque(self._adjustments, maxlen=new_config.max_adjustment_history)
        self._config = new_config
        logger.info("StablecoinContract: configuration updated %s", dict(changes))
        return new_config
