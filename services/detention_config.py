"""
============================================================================
Detention Adjudicator - Configuration
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Configuration is logged once on load

This module provides configuration management for the batch engine:
- Environment variable parsing with type safety
- Default values for every tunable
- Validation with fail-closed behavior (CFG-001)

ENVIRONMENT VARIABLES:
    Batch:
    - DETENTION_CHUNK_SIZE: Orders per chunk (default: 50)
    - DETENTION_PARALLEL_GROUP_SIZE: Simultaneous orders (default: 5)
    - DETENTION_CHUNK_COOLDOWN_SECONDS: Pause between chunks (default: 2.0)
    - DETENTION_SESSION_MAX_ORDERS: Orders accepted per run (default: 5000)
    - DETENTION_LATE_THRESHOLD_MINUTES: Lateness voiding detention (default: 15)
    Retry:
    - DETENTION_MAX_ATTEMPTS (3), DETENTION_BACKOFF_BASE_SECONDS (1.0),
      DETENTION_BACKOFF_MAX_SECONDS (30.0), DETENTION_RATE_LIMIT_MULTIPLIER (2.0),
      DETENTION_RATE_LIMIT_COOLDOWN_SECONDS (5.0)
    Circuit breaker:
    - DETENTION_CB_FAILURE_THRESHOLD (5), DETENTION_CB_SUCCESS_THRESHOLD (2),
      DETENTION_CB_COOLDOWN_SECONDS (60)
    Credential:
    - DETENTION_TOKEN_LIFETIME_SECONDS (900),
      DETENTION_TOKEN_REFRESH_MARGIN_SECONDS (60)
    Approval / checkpoint:
    - DETENTION_APPROVAL_TIMEOUT_SECONDS (300)
    - DETENTION_CHECKPOINT_MAX_AGE_HOURS (24)
    - DETENTION_DATABASE_URL (sqlite:///detention_checkpoints.db)
    Downstream:
    - DETENTION_ORDER_API_URL, DETENTION_TIMESTAMP_API_URL, DETENTION_AUTH_URL
    - DETENTION_HTTP_TIMEOUT_SECONDS (30)

ERROR CODES:
    - CFG-001: Configuration invalid

============================================================================
"""

from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Optional
import logging
import os

from app.transport.retry_policy import RetryPolicy

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class DetentionConfigErrorCode:
    """Configuration-specific error codes for audit logging."""
    CONFIG_INVALID = "CFG-001"


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class DetentionConfigurationError(Exception):
    """
    Raised when configuration is invalid.

    Reliability Level: SOVEREIGN TIER
    """

    def __init__(self, message: str, error_code: str = DetentionConfigErrorCode.CONFIG_INVALID):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# DetentionConfig Class
# =============================================================================

@dataclass
class DetentionConfig:
    """
    Batch engine configuration.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: Sizes and thresholds must be positive
    Side Effects: Logs configuration on load
    """

    # Batch shape
    chunk_size: int = 50
    parallel_group_size: int = 5
    chunk_cooldown_seconds: float = 2.0
    session_max_orders: int = 5000
    late_threshold_minutes: int = 15

    # Retry
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    rate_limit_multiplier: float = 2.0
    rate_limit_cooldown_seconds: float = 5.0

    # Circuit breaker
    cb_failure_threshold: int = 5
    cb_success_threshold: int = 2
    cb_cooldown_seconds: float = 60.0

    # Credential
    token_lifetime_seconds: float = 900.0
    token_refresh_margin_seconds: float = 60.0

    # Approval / checkpoint
    approval_timeout_seconds: float = 300.0
    checkpoint_max_age_hours: float = 24.0
    database_url: str = "sqlite:///detention_checkpoints.db"

    # Downstream
    order_api_url: str = "http://localhost:8081"
    timestamp_api_url: str = "http://localhost:8082"
    auth_url: str = "http://localhost:8083"
    http_timeout_seconds: float = 30.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
            rate_limit_multiplier=self.rate_limit_multiplier,
            rate_limit_cooldown=self.rate_limit_cooldown_seconds,
        )

    def validate(self) -> None:
        """
        Validate configuration.

        Raises:
            DetentionConfigurationError: CFG-001 listing every problem found
        """
        errors: List[str] = []

        for name in (
            "chunk_size",
            "parallel_group_size",
            "session_max_orders",
            "max_attempts",
            "cb_failure_threshold",
            "cb_success_threshold",
            "token_lifetime_seconds",
            "approval_timeout_seconds",
            "checkpoint_max_age_hours",
        ):
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name} must be positive, got: {value}")

        for name in (
            "chunk_cooldown_seconds",
            "late_threshold_minutes",
            "backoff_base_seconds",
            "backoff_max_seconds",
            "rate_limit_cooldown_seconds",
            "cb_cooldown_seconds",
            "token_refresh_margin_seconds",
        ):
            value = getattr(self, name)
            if value < 0:
                errors.append(f"{name} must be non-negative, got: {value}")

        if self.token_refresh_margin_seconds >= self.token_lifetime_seconds:
            errors.append("token_refresh_margin_seconds must be below token_lifetime_seconds")

        if not self.database_url.strip():
            errors.append("DETENTION_DATABASE_URL must not be empty")

        if errors:
            error_msg = "Detention configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{DetentionConfigErrorCode.CONFIG_INVALID}] {error_msg}")
            raise DetentionConfigurationError(error_msg)

        logger.info(
            f"[DET-CONFIG] Configuration validated | "
            f"chunk_size={self.chunk_size} | "
            f"parallel_group_size={self.parallel_group_size} | "
            f"session_max_orders={self.session_max_orders} | "
            f"approval_timeout={self.approval_timeout_seconds}s"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "DetentionConfig":
        """
        Load configuration from DETENTION_* environment variables.

        Malformed values log a warning and fall back to the default.

        Raises:
            DetentionConfigurationError: If validation is requested and fails
        """
        values: Dict[str, Any] = {}
        for f in fields(cls):
            env_name = f"DETENTION_{f.name.upper()}"
            raw = os.environ.get(env_name)
            if raw is None or not raw.strip():
                continue
            parser = _PARSERS.get(f.type, str)
            try:
                values[f.name] = parser(raw.strip())
            except ValueError:
                logger.warning(
                    f"[DET-CONFIG] Invalid {env_name} value: {raw}, "
                    f"using default: {f.default}"
                )

        config = cls(**values)
        logger.info(
            f"[DET-CONFIG] Loading configuration from environment | "
            f"overrides={sorted(values.keys())}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_PARSERS: Dict[Any, Callable[[str], Any]] = {
    int: int,
    float: float,
    str: str,
    "int": int,
    "float": float,
    "str": str,
}


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

# Global configuration instance (lazy-loaded)
_config_instance: Optional[DetentionConfig] = None


def get_detention_config(validate: bool = True) -> DetentionConfig:
    """
    Get the global configuration instance, loading it on first access.

    Raises:
        DetentionConfigurationError: If configuration is invalid (CFG-001)
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = DetentionConfig.from_environment(validate=validate)

    return _config_instance


def reset_detention_config() -> None:
    """Reset the global configuration instance (for tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[DET-CONFIG] Configuration instance reset")


__all__ = [
    "DetentionConfig",
    "DetentionConfigurationError",
    "DetentionConfigErrorCode",
    "get_detention_config",
    "reset_detention_config",
]
