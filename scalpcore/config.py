"""Configuration management for ScalpCore."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from scalpcore.chase.strategies import ChaseStrategy


@dataclass(frozen=True)
class ChaseProfile:
    """Named trading-version preset.

    Each profile pins the chase strategy and the attempt ceiling used for
    every trade opened under it.
    """

    profile_id: str
    version_tag: str
    strategy: ChaseStrategy
    max_chase_attempts: int
    max_slippage: float = 0.50


CHASE_PROFILES: dict[str, ChaseProfile] = {
    "v1-default": ChaseProfile(
        profile_id="v1-default",
        version_tag="v1.0.0-default",
        strategy=ChaseStrategy.AGGRESSIVE_LINEAR,
        max_chase_attempts=10,
    ),
    "v1-aggressive": ChaseProfile(
        profile_id="v1-aggressive",
        version_tag="v1.0.0-aggressive",
        strategy=ChaseStrategy.TIME_WEIGHTED,
        max_chase_attempts=15,
    ),
}


@dataclass(frozen=True)
class LifecycleConfig:
    """Per-trade safety parameters for the lifecycle state machine.

    None of the timing or retry values have defaults; they must be
    supplied by the operator.

    Attributes:
        grace_seconds: Wall-clock wait after WORKING before chasing starts
        max_chase_attempts: Ceiling on computed chase prices before cancel
        max_chase_seconds: Wall-clock ceiling on a chase before cancel
        max_submit_retries: Consecutive submission failures before cancel
        max_slippage: Hard ceiling above the initial limit price
        tick_tolerance: Minimum price change that warrants a re-quote
        drift_tolerance: Mid drift from the resting price that starts a chase early
        amend_in_place: Broker supports replacing a working order's price
        submit_timeout_seconds: Broker silence after which a submission counts as failed
    """

    grace_seconds: float
    max_chase_attempts: int
    max_chase_seconds: float
    max_submit_retries: int
    max_slippage: float = 0.50
    tick_tolerance: float = 0.005
    drift_tolerance: float = 0.10
    amend_in_place: bool = True
    submit_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.grace_seconds < 0:
            raise ValueError(f"grace_seconds must be >= 0: {self.grace_seconds}")
        if self.max_chase_attempts < 1:
            raise ValueError(f"max_chase_attempts must be >= 1: {self.max_chase_attempts}")
        if self.max_chase_seconds <= 0:
            raise ValueError(f"max_chase_seconds must be > 0: {self.max_chase_seconds}")
        if self.max_submit_retries < 1:
            raise ValueError(f"max_submit_retries must be >= 1: {self.max_submit_retries}")
        if self.max_slippage < 0:
            raise ValueError(f"max_slippage must be >= 0: {self.max_slippage}")
        if self.submit_timeout_seconds <= 0:
            raise ValueError(
                f"submit_timeout_seconds must be > 0: {self.submit_timeout_seconds}"
            )


@dataclass(frozen=True)
class LedgerConfig:
    """Order ledger persistence and retention."""

    db_path: Path | None = None
    retention_hours: float = 24.0
    cleanup_interval_seconds: float = 3600.0


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    lifecycle: LifecycleConfig
    profile: ChaseProfile
    strategy: ChaseStrategy
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    history_db_path: Path | None = None
    log_level: str = "INFO"
    trading_mode: str = "simulation"

    # Staleness threshold for market ticks (seconds)
    quote_stale_threshold: float = 5.0

    # How often the manager fires wall-clock timeouts
    timeout_check_interval: float = 0.5

    # Symbols the synthetic quote bus streams in simulation mode
    watchlist: tuple[str, ...] = ("SPX", "QQQ")


def _get_env_or_raise(key: str) -> str:
    """Get environment variable or raise if not set."""
    value = os.getenv(key)
    if not value:
        raise ValueError(f"Missing required environment variable: {key}")
    return value


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes")


def _get_env_path(key: str) -> Path | None:
    value = os.getenv(key)
    return Path(value) if value else None


def get_profile(profile_id: str) -> ChaseProfile:
    """Look up a trading-version profile.

    Raises:
        ValueError: If the profile id is unknown.
    """
    try:
        return CHASE_PROFILES[profile_id]
    except KeyError:
        raise ValueError(
            f"Unknown chase profile: {profile_id} "
            f"(available: {', '.join(sorted(CHASE_PROFILES))})"
        ) from None


@lru_cache
def load_config() -> AppConfig:
    """Load configuration from environment.

    Returns:
        AppConfig instance with all settings loaded.

    Raises:
        ValueError: If required environment variables are missing or a
            strategy/profile name is unknown.
    """
    # Load .env file if present
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    profile = get_profile(os.getenv("CHASE_PROFILE", "v1-default"))

    strategy_name = os.getenv("CHASE_STRATEGY")
    strategy = ChaseStrategy.from_name(strategy_name) if strategy_name else profile.strategy

    max_attempts = os.getenv("CHASE_MAX_ATTEMPTS")

    lifecycle = LifecycleConfig(
        grace_seconds=float(_get_env_or_raise("CHASE_GRACE_SECONDS")),
        max_chase_attempts=int(max_attempts) if max_attempts else profile.max_chase_attempts,
        max_chase_seconds=float(_get_env_or_raise("CHASE_MAX_SECONDS")),
        max_submit_retries=int(_get_env_or_raise("ORDER_MAX_RETRIES")),
        max_slippage=float(os.getenv("CHASE_MAX_SLIPPAGE", str(profile.max_slippage))),
        tick_tolerance=float(os.getenv("CHASE_TICK_TOLERANCE", "0.005")),
        drift_tolerance=float(os.getenv("CHASE_DRIFT_TOLERANCE", "0.10")),
        amend_in_place=_get_env_bool("CHASE_AMEND_IN_PLACE", default=True),
        submit_timeout_seconds=float(os.getenv("ORDER_SUBMIT_TIMEOUT_SECONDS", "5.0")),
    )

    return AppConfig(
        lifecycle=lifecycle,
        profile=profile,
        strategy=strategy,
        ledger=LedgerConfig(
            db_path=_get_env_path("LEDGER_DB_PATH"),
            retention_hours=float(os.getenv("LEDGER_RETENTION_HOURS", "24")),
            cleanup_interval_seconds=float(
                os.getenv("LEDGER_CLEANUP_INTERVAL_SECONDS", "3600")
            ),
        ),
        history_db_path=_get_env_path("HISTORY_DB_PATH"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        trading_mode=os.getenv("TRADING_MODE", "simulation"),
        quote_stale_threshold=float(os.getenv("QUOTE_STALE_SECONDS", "5.0")),
        watchlist=tuple(
            s.strip().upper()
            for s in os.getenv("WATCHLIST", "SPX,QQQ").split(",")
            if s.strip()
        ),
    )
