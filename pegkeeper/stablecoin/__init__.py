"""Pegkeeper – Algorithmic stablecoin engine package.

This package contains the price oracle, the stability contract with its
pure supply-adjustment decision function, the stabilization service that
schedules both, and the shared value types.
"""

from pegkeeper.stablecoin.types import (
    AdjustmentAction,
    EngineMetrics,
    InvalidInputError,
    InvariantViolationError,
    OracleConfig,
    PriceObservation,
    PriceSnapshot,
    ServiceStatus,
    StabilityMetrics,
    StablecoinConfig,
    StablecoinError,
    SupplyAdjustment,
    SupplyInfo,
)
from pegkeeper.stablecoin.oracle import PriceOracle
from pegkeeper.stablecoin.contract import StablecoinContract
from pegkeeper.stablecoin.service import StabilizationService
