"""
============================================================================
Detention Adjudicator - Services Layer
============================================================================

Billing rules parsing, configuration and the human approval gate.

Reliability Level: L6 Critical
============================================================================
"""

from services.billing_rules import (
    BillingRules,
    BillingRulesRepository,
    BillingRulesValidationError,
    RateUnit,
    RoundingMode,
    parse_billing_rules,
)

from services.detention_config import (
    DetentionConfig,
    DetentionConfigurationError,
    get_detention_config,
    reset_detention_config,
)

__all__ = [
    # Billing rules
    "BillingRules",
    "BillingRulesRepository",
    "BillingRulesValidationError",
    "RateUnit",
    "RoundingMode",
    "parse_billing_rules",
    # Configuration
    "DetentionConfig",
    "DetentionConfigurationError",
    "get_detention_config",
    "reset_detention_config",
]
