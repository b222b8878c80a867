"""Unit tests for configuration loading."""

import pytest

from scalpcore.chase.strategies import ChaseStrategy
from scalpcore.config import CHASE_PROFILES, LifecycleConfig, get_profile, load_config

REQUIRED = {
    "CHASE_GRACE_SECONDS": "2",
    "CHASE_MAX_SECONDS": "30",
    "ORDER_MAX_RETRIES": "3",
}

OPTIONAL = (
    "CHASE_PROFILE",
    "CHASE_STRATEGY",
    "CHASE_MAX_ATTEMPTS",
    "CHASE_MAX_SLIPPAGE",
    "CHASE_AMEND_IN_PLACE",
    "ORDER_SUBMIT_TIMEOUT_SECONDS",
    "LEDGER_DB_PATH",
    "WATCHLIST",
)


@pytest.fixture
def env(monkeypatch):
    for key in OPTIONAL:
        monkeypatch.delenv(key, raising=False)
    for key, value in REQUIRED.items():
        monkeypatch.setenv(key, value)
    load_config.cache_clear()
    yield monkeypatch
    load_config.cache_clear()


class TestProfiles:
    """Tests for trading-version presets."""

    def test_seed_profiles(self):
        """Both seed profiles carry their strategy and attempt ceiling."""
        assert get_profile("v1-default").strategy == ChaseStrategy.AGGRESSIVE_LINEAR
        assert get_profile("v1-default").max_chase_attempts == 10
        assert get_profile("v1-aggressive").strategy == ChaseStrategy.TIME_WEIGHTED
        assert get_profile("v1-aggressive").max_chase_attempts == 15
        assert all(p.max_slippage == 0.50 for p in CHASE_PROFILES.values())

    def test_unknown_profile(self):
        """Unknown profile ids raise ValueError."""
        with pytest.raises(ValueError):
            get_profile("v9-nope")


class TestLoadConfig:
    """Tests for environment loading."""

    def test_defaults_from_profile(self, env):
        """Only required variables set: everything else comes from the profile."""
        config = load_config()

        assert config.profile.profile_id == "v1-default"
        assert config.strategy == ChaseStrategy.AGGRESSIVE_LINEAR
        assert config.lifecycle.grace_seconds == 2.0
        assert config.lifecycle.max_chase_seconds == 30.0
        assert config.lifecycle.max_submit_retries == 3
        assert config.lifecycle.max_chase_attempts == 10
        assert config.lifecycle.max_slippage == 0.50
        assert config.lifecycle.amend_in_place is True
        assert config.lifecycle.submit_timeout_seconds == 5.0
        assert config.ledger.db_path is None
        assert config.watchlist == ("SPX", "QQQ")

    def test_overrides(self, env):
        """Environment overrides replace profile values."""
        env.setenv("CHASE_PROFILE", "v1-aggressive")
        env.setenv("CHASE_STRATEGY", "hybrid-time-delta")
        env.setenv("CHASE_MAX_ATTEMPTS", "4")
        env.setenv("CHASE_AMEND_IN_PLACE", "false")
        env.setenv("ORDER_SUBMIT_TIMEOUT_SECONDS", "1.5")
        env.setenv("LEDGER_DB_PATH", "cache/orders.db")
        env.setenv("WATCHLIST", "spx, ndx")

        config = load_config()

        assert config.profile.profile_id == "v1-aggressive"
        assert config.strategy == ChaseStrategy.HYBRID_TIME_DELTA
        assert config.lifecycle.max_chase_attempts == 4
        assert config.lifecycle.amend_in_place is False
        assert config.lifecycle.submit_timeout_seconds == 1.5
        assert str(config.ledger.db_path) == "cache/orders.db"
        assert config.watchlist == ("SPX", "NDX")

    @pytest.mark.parametrize("key", sorted(REQUIRED))
    def test_required_settings(self, env, key):
        """Grace, chase ceiling and retry cap have no defaults."""
        env.delenv(key)

        with pytest.raises(ValueError, match=key):
            load_config()

    def test_unknown_strategy_fails_at_load(self, env):
        """An unknown CHASE_STRATEGY fails at load time."""
        env.setenv("CHASE_STRATEGY", "yolo")

        with pytest.raises(ValueError, match="yolo"):
            load_config()


class TestLifecycleConfig:
    """Tests for parameter validation."""

    def test_rejects_zero_retry_cap(self):
        """A retry cap below one is rejected."""
        with pytest.raises(ValueError):
            LifecycleConfig(
                grace_seconds=1, max_chase_attempts=1, max_chase_seconds=1, max_submit_retries=0
            )

    def test_rejects_negative_grace(self):
        """A negative grace period is rejected."""
        with pytest.raises(ValueError):
            LifecycleConfig(
                grace_seconds=-1, max_chase_attempts=1, max_chase_seconds=1, max_submit_retries=1
            )

    def test_rejects_zero_submit_timeout(self):
        """A broker call must be allowed some time to answer."""
        with pytest.raises(ValueError, match="submit_timeout_seconds"):
            LifecycleConfig(
                grace_seconds=1,
                max_chase_attempts=1,
                max_chase_seconds=1,
                max_submit_retries=1,
                submit_timeout_seconds=0,
            )
