"""
Unit Tests for Detention Configuration Parsing

Reliability Level: SOVEREIGN TIER

Tests:
- Default values
- DETENTION_* overrides
- Malformed values fall back to defaults
- Validation collects every problem (CFG-001)
"""

import os
import sys
from dataclasses import fields

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.detention_config import (
    DetentionConfig,
    DetentionConfigErrorCode,
    DetentionConfigurationError,
    get_detention_config,
    reset_detention_config,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_environment():
    """Remove every DETENTION_* variable for the duration of a test."""
    names = [f"DETENTION_{f.name.upper()}" for f in fields(DetentionConfig)]
    original = {name: os.environ.pop(name, None) for name in names}
    reset_detention_config()

    yield

    for name in names:
        os.environ.pop(name, None)
        if original[name] is not None:
            os.environ[name] = original[name]
    reset_detention_config()


class TestDefaultValues:

    def test_dataclass_defaults(self) -> None:
        config = DetentionConfig()

        assert config.chunk_size == 50
        assert config.parallel_group_size == 5
        assert config.chunk_cooldown_seconds == 2.0
        assert config.session_max_orders == 5000
        assert config.approval_timeout_seconds == 300.0
        assert config.checkpoint_max_age_hours == 24.0

    def test_from_environment_without_overrides(self) -> None:
        assert DetentionConfig.from_environment() == DetentionConfig()

    def test_retry_policy_reflects_config(self) -> None:
        policy = DetentionConfig(max_attempts=4, backoff_base_seconds=0.5).retry_policy()

        assert policy.max_attempts == 4
        assert policy.base_delay == 0.5


class TestCustomValues:

    def test_overrides_are_typed(self) -> None:
        os.environ["DETENTION_CHUNK_SIZE"] = "20"
        os.environ["DETENTION_CHUNK_COOLDOWN_SECONDS"] = "0.5"
        os.environ["DETENTION_ORDER_API_URL"] = "https://orders.internal"

        config = DetentionConfig.from_environment()

        assert config.chunk_size == 20
        assert config.chunk_cooldown_seconds == 0.5
        assert config.order_api_url == "https://orders.internal"

    def test_malformed_value_keeps_default(self) -> None:
        os.environ["DETENTION_PARALLEL_GROUP_SIZE"] = "many"

        assert DetentionConfig.from_environment().parallel_group_size == 5

    def test_global_instance_is_cached(self) -> None:
        first = get_detention_config()
        os.environ["DETENTION_CHUNK_SIZE"] = "7"

        assert get_detention_config() is first
        reset_detention_config()
        assert get_detention_config().chunk_size == 7


class TestValidation:

    def test_invalid_values_fail_closed(self) -> None:
        os.environ["DETENTION_CHUNK_SIZE"] = "0"
        os.environ["DETENTION_CB_COOLDOWN_SECONDS"] = "-1"

        with pytest.raises(DetentionConfigurationError) as exc_info:
            DetentionConfig.from_environment()

        message = str(exc_info.value)
        assert exc_info.value.error_code == DetentionConfigErrorCode.CONFIG_INVALID
        assert "chunk_size" in message
        assert "cb_cooldown_seconds" in message

    def test_margin_must_be_below_lifetime(self) -> None:
        config = DetentionConfig(token_lifetime_seconds=60, token_refresh_margin_seconds=60)

        with pytest.raises(DetentionConfigurationError):
            config.validate()

    def test_validation_can_be_skipped(self) -> None:
        os.environ["DETENTION_CHUNK_SIZE"] = "0"

        assert DetentionConfig.from_environment(validate=False).chunk_size == 0
