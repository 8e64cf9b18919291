"""Pegkeeper – Price oracle.

The oracle maintains the "current price" signal the rest of the engine
reacts to. It accepts observations from any number of feeds, rejects
low-confidence samples, and on each tick aggregates the recent window
into a single confidence-weighted price.

The oracle is not thread-safe on its own; the stabilization service
serialises access to it together with the contract.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional

import numpy as np

from pegkeeper.core.logging import get_logger
from pegkeeper.core.time import SystemClock
from pegkeeper.core.types import ClockFn, ConfigPatch, MetadataDict, Millis
from pegkeeper.stablecoin.types import InvalidInputError, OracleConfig, PriceObservation


logger = get_logger(__name__)

AGGREGATED_SOURCE: str = "oracle"


class PriceOracle:
    """Aggregates price observations into a current price and confidence.

    Example:
        >>> oracle = PriceOracle(OracleConfig(), target_price=1.0)
        >>> oracle.current_price()
        1.0
    """

    def __init__(
        self,
        config: OracleConfig | None = None,
        target_price: float = 1.0,
        clock: ClockFn | None = None,
    ) -> None:
        if target_price <= 0:
            raise InvalidInputError("target_price must be > 0")
        self._config = config or OracleConfig()
        self._target_price = float(target_price)
        self._clock: ClockFn = clock or SystemClock()
        self._observations: Deque[PriceObservation] = deque(maxlen=self._config.max_observations)
        self._aggregated: Optional[PriceObservation] = None
        self._last_update: Optional[Millis] = None
        self._rejected = 0

    # ======================================================================
    # Ingestion
    # ======================================================================

    def add_observation(self, obs: PriceObservation) -> bool:
        """Accept ``obs`` unless its confidence is below the configured floor.

        Returns:
            True if the observation was recorded, False if it was
            rejected as low-confidence.

        Raises:
            InvalidInputError: If ``obs`` is older than the newest
                accepted observation.
        """

        if obs.confidence < self._config.min_confidence:
            self._rejected += 1
            logger.warning(
                "PriceOracle: rejected low-confidence observation price=%.6f confidence=%.3f source=%s",
                obs.price,
                obs.confidence,
                obs.source,
            )
            return False

        if self._observations and obs.timestamp < self._observations[-1].timestamp:
            raise InvalidInputError(
                f"Observation timestamp {obs.timestamp} precedes latest "
                f"{self._observations[-1].timestamp}"
            )

        self._observations.append(obs)
        logger.debug(
            "PriceOracle: accepted price=%.6f ts=%d source=%s", obs.price, obs.timestamp, obs.source
        )
        return True

    # ======================================================================
    # Reads
    # ======================================================================

    def current_price(self) -> float:
        """Return the most recent accepted price, or the peg if none."""

        if not self._observations:
            return self._target_price
        return self._observations[-1].price

    @property
    def aggregated_price(self) -> Optional[float]:
        """Confidence-weighted price from the last successful tick, if any."""

        return self._aggregated.price if self._aggregated is not None else None

    @property
    def target_price(self) -> float:
        return self._target_price

    def set_target_price(self, target_price: float) -> None:
        """Follow a peg change made on the contract."""

        if target_price <= 0:
            raise InvalidInputError("target_price must be > 0")
        self._target_price = float(target_price)

    # ======================================================================
    # Aggregation
    # ======================================================================

    def tick(self, now: Millis | None = None) -> Optional[PriceObservation]:
        """Recompute the aggregated price over the aggregation window.

        The aggregate is the confidence-weighted mean of prices observed
        in ``[now - aggregation_window, now]``. Its confidence is the mean
        confidence of those samples and its volume their total volume.

        Returns:
            The aggregated observation, or None if the window is empty
            (the previous aggregate is kept in that case).
        """

        now = self._clock() if now is None else now
        start = now - self._config.aggregation_window
        window = [o for o in self._observations if start <= o.timestamp <= now]
        self._last_update = now

        if not window:
            logger.debug("PriceOracle.tick: no observations in window ending %d", now)
            return None

        prices = np.array([o.price for o in window], dtype=float)
        weights = np.array([o.confidence for o in window], dtype=float)
        if float(weights.sum()) > 0.0:
            price = float(np.average(prices, weights=weights))
        else:
            price = float(prices.mean())

        aggregated = PriceObservation(
            price=price,
            timestamp=now,
            volume=float(sum(o.volume for o in window)),
            confidence=float(weights.mean()),
            source=AGGREGATED_SOURCE,
        )
        self._aggregated = aggregated

        logger.debug(
            "PriceOracle.tick: aggregated price=%.6f from %d samples confidence=%.3f",
            aggregated.price,
            len(window),
            aggregated.confidence,
        )
        return aggregated

    # ======================================================================
    # Configuration & status
    # ======================================================================

    def get_config(self) -> OracleConfig:
        return self._config

    def update_config(self, changes: ConfigPatch) -> OracleConfig:
        """Replace the configuration with ``changes`` merged on top.

        Shrinking ``max_observations`` keeps the newest samples.
        """

        new_config = self._config.merged(changes)
        if new_config.max_observations != self._config.max_observations:
            self._observations = deque(self._observations, maxlen=new_config.max_observations)
        self._config = new_config
        logger.info("PriceOracle: configuration updated %s", dict(changes))
        return new_config

    def get_status(self) -> MetadataDict:
        """Return a plain-data summary of the oracle's state."""

        latest = self._observations[-1] if self._observations else None
        return {
            "observation_count": len(self._observations),
            "rejected_count": self._rejected,
            "current_price": self.current_price(),
            "aggregated_price": self.aggregated_price,
            "confidence": (
                self._aggregated.confidence
                if self._aggregated is not None
                else (latest.confidence if latest is not None else 0.0)
            ),
            "last_observation": latest.timestamp if latest is not None else None,
            "last_update": self._last_update,
            "update_interval": self._config.update_interval,
            "sources": sorted({o.source for o in self._observations}),
        }
