"""Engine settings and configuration management."""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from ..core.types import USDC_MINT, WSOL_MINT

logger = structlog.get_logger(__name__)

PROFILES = ("dev", "devnet", "mainnet")
DEFAULT_POOL_PROGRAM_ID = "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB"


class EngineSettings(BaseSettings):
    """Engine settings with environment variable support."""

    profile: Literal["dev", "devnet", "mainnet"] = Field(
        default="dev", description="Profile: dev, devnet, mainnet"
    )

    # Ledger endpoints
    rpc_url: str = Field(description="Solana RPC URL")
    ws_url: str | None = Field(
        default=None, description="Websocket URL (derived from rpc_url if unset)"
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed", description="Commitment level"
    )
    ledger_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout applied to every ledger call"
    )
    retry_attempts: int = Field(
        default=3, ge=1, description="Attempts per ledger call on transport failure"
    )

    # Pools
    pool_program_id: str = Field(
        default=DEFAULT_POOL_PROGRAM_ID, description="AMM program owning pool accounts"
    )
    max_scan_accounts: int = Field(
        default=5000, ge=1, description="Cap on accounts examined per pool scan"
    )
    pool_cache_ttl_seconds: float = Field(
        default=300.0, ge=0, description="Lifetime of cached pool scans"
    )
    snapshot_ttl_seconds: float = Field(
        default=10.0, ge=0, description="Lifetime of cached pool snapshots"
    )

    # Pricing
    quote_mint: str = Field(default=WSOL_MINT, description="Mint prices are quoted in")
    usd_mint: str = Field(default=USDC_MINT, description="Stablecoin used for USD prices")
    fallback_sol_usd_price: float = Field(
        default=100.0, gt=0, description="SOL/USD price when no USD pool exists"
    )
    min_liquidity: float = Field(
        default=5.0, ge=0, description="Minimum pool liquidity in SOL for secure prices"
    )
    outlier_tolerance: float = Field(
        default=0.10, gt=0, description="Maximum relative deviation from the median price"
    )
    history_max_samples: int = Field(
        default=1000, ge=1, description="Price samples kept per mint"
    )

    # Quotes and execution
    pool_max_age_seconds: float = Field(
        default=30.0, gt=0, description="Oldest pool snapshot accepted for quoting"
    )
    quote_ttl_seconds: float = Field(default=5.0, gt=0, description="Quote validity")
    max_price_impact_pct: float = Field(
        default=100.0, gt=0, description="Maximum accepted price impact in percent"
    )
    max_slippage_bps: int = Field(
        default=100, ge=0, le=10_000, description="Default slippage in basis points"
    )
    max_submit_attempts: int = Field(
        default=3, ge=1, description="Submission attempts on transient failures"
    )
    confirm_timeout_seconds: float = Field(
        default=60.0, gt=0, description="How long to poll for finality"
    )
    confirm_poll_interval: float = Field(
        default=1.0, gt=0, description="Delay between confirmation polls"
    )
    simulate_swaps: bool = Field(
        default=True, description="Simulate each signed swap before submitting it"
    )

    # Event bus
    bus_buffer_size: int = Field(
        default=100, ge=1, description="Unread price updates kept per receiver"
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=0, description="Consecutive reconnect attempts before closing"
    )
    reconnect_base_delay: float = Field(
        default=0.5, gt=0, description="First reconnect delay in seconds"
    )
    reconnect_max_delay: float = Field(
        default=30.0, gt=0, description="Cap on the reconnect delay"
    )

    # Token metadata
    birdeye_base: str = Field(
        default="https://public-api.birdeye.so", description="Birdeye API base URL"
    )
    birdeye_api_key: str | None = Field(default=None, description="Birdeye API key")

    log_level: str = Field(default="INFO", description="Log level")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


def load_settings(profile: str, yaml_path: str) -> EngineSettings:
    """Load settings from YAML file and environment variables.

    Args:
        profile: Configuration profile name (dev, devnet, mainnet)
        yaml_path: Path to YAML configuration file

    Returns:
        EngineSettings instance with loaded configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValidationError: If configuration is invalid
        ValueError: If profile is invalid
    """
    if profile not in PROFILES:
        raise ValueError(
            f"Invalid profile: {profile}. Must be one of: {', '.join(PROFILES)}"
        )

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    try:
        with open(yaml_file, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        # A file may hold one section per profile
        if isinstance(yaml_config.get(profile), dict):
            yaml_config = yaml_config[profile]
        yaml_config["profile"] = profile

        logger.info("Loading configuration", profile=profile, yaml_path=yaml_path)

        settings = EngineSettings(**yaml_config)

        logger.info(
            "Configuration loaded successfully",
            profile=profile,
            commitment=settings.commitment,
            rpc_url=settings.rpc_url[:50] + "..."
            if len(settings.rpc_url) > 50
            else settings.rpc_url,
        )

        return settings

    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML configuration", error=str(e))
        raise ValueError(f"Invalid YAML configuration: {e}") from e
    except ValidationError as e:
        logger.error("Configuration validation failed", error=str(e))
        raise
