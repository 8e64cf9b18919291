"""
Pegkeeper: Configuration Management

This module provides centralised configuration management for Pegkeeper.
It loads configuration from environment variables (optionally via a .env
file), with strongly typed access via Pydantic BaseSettings.

Key responsibilities:
- Load and validate configuration from environment variables
- Provide typed configuration objects for the stablecoin engine and oracle
- Expose a cached global configuration accessor for convenience

External dependencies:
- pydantic: Data validation and settings management
- pydantic-settings: Environment variable integration for settings
- python-dotenv: Optional .env loading for local development

Thread safety: Thread-safe (configuration is immutable after initial load)

Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover - typing only
    from pegkeeper.stablecoin.types import OracleConfig, StablecoinConfig

# ============================================================================
# Data Models
# ============================================================================


class PegkeeperConfig(BaseSettings):
    """Main Pegkeeper configuration loaded from environment variables.

    Environment variables use the following mapping by default:

    - STABLECOIN_* for the stability contract parameters
    - ORACLE_* for the price oracle
    - INITIAL_SUPPLY / INITIAL_RESERVE for the starting supply state
    - LOG_LEVEL / LOG_FILE for logging
    - ENVIRONMENT for environment name (development/staging/production)

    Intervals and windows are expressed in milliseconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Stability contract
    stablecoin_target_price: float = Field(default=1.0, alias="STABLECOIN_TARGET_PRICE")
    stablecoin_tolerance_band: float = Field(
        default=0.02, alias="STABLECOIN_TOLERANCE_BAND"
    )
    stablecoin_max_supply_change: float = Field(
        default=0.1, alias="STABLECOIN_MAX_SUPPLY_CHANGE"
    )
    stablecoin_reserve_ratio: float = Field(default=0.1, alias="STABLECOIN_RESERVE_RATIO")
    stablecoin_rebalance_interval: int = Field(
        default=3_600_000, alias="STABLECOIN_REBALANCE_INTERVAL"
    )
    stablecoin_price_window: int = Field(default=300_000, alias="STABLECOIN_PRICE_WINDOW")
    stablecoin_response_factor: float = Field(
        default=0.5, alias="STABLECOIN_RESPONSE_FACTOR"
    )

    # Price oracle
    oracle_update_interval: int = Field(default=60_000, alias="ORACLE_UPDATE_INTERVAL")
    oracle_min_confidence: float = Field(default=0.5, alias="ORACLE_MIN_CONFIDENCE")
    oracle_aggregation_window: int = Field(
        default=300_000, alias="ORACLE_AGGREGATION_WINDOW"
    )

    # Initial supply state
    initial_supply: float = Field(default=1_000_000.0, alias="INITIAL_SUPPLY")
    initial_reserve: float = Field(default=200_000.0, alias="INITIAL_RESERVE")

    # Simulation
    shock_seed: Optional[int] = Field(default=None, alias="SHOCK_SEED")

    # Control API
    admin_token: str = Field(default="", alias="ADMIN_TOKEN")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="pegkeeper.log", alias="LOG_FILE")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    @property
    def stablecoin(self) -> StablecoinConfig:
        """Return the stability contract configuration.

        Environment variables:
        - STABLECOIN_TARGET_PRICE
        - STABLECOIN_TOLERANCE_BAND
        - STABLECOIN_MAX_SUPPLY_CHANGE
        - STABLECOIN_RESERVE_RATIO
        - STABLECOIN_REBALANCE_INTERVAL
        - STABLECOIN_PRICE_WINDOW
        - STABLECOIN_RESPONSE_FACTOR

        Raises:
            InvalidInputError: If any value is outside its allowed range.
        """

        # Lazy import: the stablecoin package logs through core.logging,
        # which itself depends on this module.
        from pegkeeper.stablecoin.types import StablecoinConfig

        return StablecoinConfig(
            target_price=self.stablecoin_target_price,
            tolerance_band=self.stablecoin_tolerance_band,
            max_supply_change=self.stablecoin_max_supply_change,
            reserve_ratio=self.stablecoin_reserve_ratio,
            rebalance_interval=self.stablecoin_rebalance_interval,
            price_window=self.stablecoin_price_window,
            response_factor=self.stablecoin_response_factor,
        )

    @property
    def oracle(self) -> OracleConfig:
        """Return the price oracle configuration."""

        from pegkeeper.stablecoin.types import OracleConfig

        return OracleConfig(
            update_interval=self.oracle_update_interval,
            min_confidence=self.oracle_min_confidence,
            aggregation_window=self.oracle_aggregation_window,
        )


# ============================================================================
# Public API
# ============================================================================


def load_config(env_file: Optional[Path] = None) -> PegkeeperConfig:
    """Load Pegkeeper configuration.

    For local development this function will attempt to load a `.env` file
    from the project root if one is present. Environment variables always
    take precedence over values from `.env`.

    Args:
        env_file: Optional explicit path to a `.env` file. If omitted,
            the function will look for `.env` in the current working
            directory.

    Returns:
        A fully populated :class:`PegkeeperConfig` instance.

    Raises:
        FileNotFoundError: If an explicit ``env_file`` is provided but
            does not exist.
    """

    if env_file is not None:
        if not env_file.exists():
            msg = f"Environment file not found: {env_file}"
            raise FileNotFoundError(msg)
        # An explicit env_file overrides existing values so tests and local
        # runs can reliably control configuration.
        load_dotenv(env_file, override=True)
    else:
        default_env = Path(".env")
        if default_env.exists():
            load_dotenv(default_env)

    return PegkeeperConfig()  # type: ignore[call-arg]


_global_config: Optional[PegkeeperConfig] = None


def get_config() -> PegkeeperConfig:
    """Return the global Pegkeeper configuration singleton.

    The configuration is loaded on first access (lazy loading) and cached
    for subsequent calls.

    Returns:
        A cached :class:`PegkeeperConfig` instance.
    """

    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config
