"""Pegkeeper – top-level package exports.

This module re-exports the stablecoin engine components for convenience.
"""

from pegkeeper.stablecoin import (
    AdjustmentAction,
    OracleConfig,
    PriceObservation,
    PriceOracle,
    StabilizationService,
    StablecoinConfig,
    StablecoinContract,
    SupplyAdjustment,
)
