"""
============================================================================
Detention Adjudicator - Billing Rules
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Rates and caps are decimal.Decimal; caps are quantized to cents
Traceability: Invalid rows are logged with their shipper name

Billing rules arrive from an external tabular source as loosely typed rows
(free-form "Yes"/"TRUE"/"x" booleans, blank cells, "per hour" units). They
are parsed ONCE, here, into a frozen BillingRules value. Nothing downstream
ever looks at a raw row again.

RAW ROW FIELDS:
    Shipper, Rate, RateUnit, MaxCharge,
    FreeTimePickupLive, FreeTimePickupDrop,
    FreeTimeDeliveryLive, FreeTimeDeliveryDrop,
    BillingIncrement, RoundingMode, MinimumChargeableMinutes,
    RequiresApproval, AutoChargeAllowed, AuthNumberRequired, IsActive

A blank / "N/A" free-time cell means the stop/load combination is not
eligible for detention at all.

BOOLEAN DEFAULTS:
    IsActive defaults to True when absent; every other flag defaults to
    False. See DESIGN.md (open question) before changing this.

ERROR CODES:
    - CFG-RULES-001: Billing rule row failed validation

============================================================================
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
import json
import logging

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

PRECISION_MONEY = Decimal("0.01")

STOP_TYPES = ("PICKUP", "DELIVERY")
LOAD_TYPES = ("LIVE", "DROP")

_FREE_TIME_COLUMNS: Dict[Tuple[str, str], str] = {
    ("PICKUP", "LIVE"): "FreeTimePickupLive",
    ("PICKUP", "DROP"): "FreeTimePickupDrop",
    ("DELIVERY", "LIVE"): "FreeTimeDeliveryLive",
    ("DELIVERY", "DROP"): "FreeTimeDeliveryDrop",
}

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "x", "on", "t"})
_FALSE_STRINGS = frozenset({"false", "no", "n", "0", "off", "f", ""})
_BLANK_STRINGS = frozenset({"", "n/a", "na", "none", "null", "-"})


class BillingRulesErrorCode:
    INVALID_ROW = "CFG-RULES-001"


# =============================================================================
# Enums
# =============================================================================

class RateUnit(Enum):
    PER_HOUR = "PER_HOUR"
    PER_MINUTE = "PER_MINUTE"


class RoundingMode(Enum):
    UP = "UP"
    DOWN = "DOWN"
    NEAREST = "NEAREST"


# =============================================================================
# Exceptions
# =============================================================================

class BillingRulesValidationError(Exception):
    """Raised when a raw row cannot be turned into BillingRules."""

    def __init__(self, message: str, shipper: Optional[str] = None):
        self.shipper = shipper
        self.error_code = BillingRulesErrorCode.INVALID_ROW
        super().__init__(f"[{self.error_code}] {message}")


# =============================================================================
# BillingRules
# =============================================================================

@dataclass(frozen=True)
class BillingRules:
    """
    Strictly typed per-shipper billing rules.

    free_time_minutes maps (stop_type, load_type) to free minutes; a
    missing combination is not eligible for detention.

    Reliability Level: SOVEREIGN TIER
    Side Effects: None (immutable value)
    """
    shipper: str
    rate: Decimal
    rate_unit: RateUnit
    max_charge: Decimal
    free_time_minutes: Dict[Tuple[str, str], int] = field(default_factory=dict)
    billing_increment_minutes: Optional[int] = None
    rounding_mode: Optional[str] = None
    minimum_chargeable_minutes: Optional[int] = None
    requires_approval: bool = False
    auto_charge_allowed: bool = False
    auth_number_required: bool = False
    is_active: bool = True

    def free_time_for(self, stop_type: str, load_type: str) -> Optional[int]:
        return self.free_time_minutes.get((stop_type.upper(), load_type.upper()))

    def is_eligible(self, stop_type: str, load_type: str) -> bool:
        return self.free_time_for(stop_type, load_type) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipper": self.shipper,
            "rate": str(self.rate),
            "rate_unit": self.rate_unit.value,
            "max_charge": str(self.max_charge),
            "free_time_minutes": {
                f"{stop}_{load}": minutes
                for (stop, load), minutes in self.free_time_minutes.items()
            },
            "billing_increment_minutes": self.billing_increment_minutes,
            "rounding_mode": self.rounding_mode,
            "minimum_chargeable_minutes": self.minimum_chargeable_minutes,
            "requires_approval": self.requires_approval,
            "auto_charge_allowed": self.auto_charge_allowed,
            "auth_number_required": self.auth_number_required,
            "is_active": self.is_active,
        }


# =============================================================================
# Field parsers
# =============================================================================

def parse_bool(value: Any, default: bool = False) -> bool:
    """Parse a free-form boolean cell. Unknown strings fall back to default."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False if text else default
    return default


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip().lower() in _BLANK_STRINGS


def _parse_money(value: Any, name: str, shipper: str, cents: bool = True) -> Decimal:
    """Non-negative decimal amount; quantized to cents unless cents=False."""
    if _is_blank(value):
        raise BillingRulesValidationError(f"{name} is required", shipper)
    text = str(value).strip().replace("$", "").replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise BillingRulesValidationError(f"{name} is not a number: {value!r}", shipper)
    if not amount.is_finite():
        raise BillingRulesValidationError(f"{name} is not a number: {value!r}", shipper)
    if amount < Decimal("0"):
        raise BillingRulesValidationError(f"{name} must be non-negative", shipper)
    if not cents:
        return amount
    return amount.quantize(PRECISION_MONEY, rounding=ROUND_HALF_EVEN)


def _parse_minutes(value: Any, name: str, shipper: str) -> Optional[int]:
    if _is_blank(value):
        return None
    try:
        minutes = int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError):
        raise BillingRulesValidationError(f"{name} is not a number: {value!r}", shipper)
    if minutes < 0:
        raise BillingRulesValidationError(f"{name} must be non-negative", shipper)
    return minutes


def _parse_rate_unit(value: Any, shipper: str) -> RateUnit:
    text = "" if value is None else str(value).strip().lower().replace("_", " ")
    if text in ("", "per hour", "hour", "hr", "hourly", "/hr"):
        return RateUnit.PER_HOUR
    if text in ("per minute", "minute", "min", "/min"):
        return RateUnit.PER_MINUTE
    raise BillingRulesValidationError(f"Unknown RateUnit: {value!r}", shipper)


def _parse_rounding_mode(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    return str(value).strip().upper()


# =============================================================================
# Row parsing
# =============================================================================

def parse_billing_rules(row: Dict[str, Any]) -> BillingRules:
    """
    Turn one raw configuration row into BillingRules.

    Raises:
        BillingRulesValidationError: Missing shipper/rate/max or malformed cells
    """
    shipper = str(row.get("Shipper") or "").strip()
    if not shipper:
        raise BillingRulesValidationError("Shipper is required")

    free_time: Dict[Tuple[str, str], int] = {}
    for combination, column in _FREE_TIME_COLUMNS.items():
        minutes = _parse_minutes(row.get(column), column, shipper)
        if minutes is not None:
            free_time[combination] = minutes

    increment = _parse_minutes(row.get("BillingIncrement"), "BillingIncrement", shipper)
    if increment == 0:
        increment = None

    return BillingRules(
        shipper=shipper,
        rate=_parse_money(row.get("Rate"), "Rate", shipper, cents=False),
        rate_unit=_parse_rate_unit(row.get("RateUnit"), shipper),
        max_charge=_parse_money(row.get("MaxCharge"), "MaxCharge", shipper),
        free_time_minutes=free_time,
        billing_increment_minutes=increment,
        rounding_mode=_parse_rounding_mode(row.get("RoundingMode")),
        minimum_chargeable_minutes=_parse_minutes(
            row.get("MinimumChargeableMinutes"), "MinimumChargeableMinutes", shipper
        ),
        requires_approval=parse_bool(row.get("RequiresApproval")),
        auto_charge_allowed=parse_bool(row.get("AutoChargeAllowed")),
        auth_number_required=parse_bool(row.get("AuthNumberRequired")),
        is_active=parse_bool(row.get("IsActive"), default=True),
    )


def normalize_shipper(name: str) -> str:
    return " ".join(name.split()).casefold()


# =============================================================================
# Repository
# =============================================================================

class BillingRulesRepository(Mapping):
    """
    Read-only mapping from shipper name to active BillingRules.

    Lookups ignore case and repeated whitespace. Inactive shippers are kept
    out of the mapping, so the orchestrator treats them as "no rules".
    """

    def __init__(self, rules: Iterable[BillingRules] = ()) -> None:
        self._rules: Dict[str, BillingRules] = {}
        self.rejected: List[str] = []
        for rule in rules:
            self._add(rule)

    def _add(self, rule: BillingRules) -> None:
        if not rule.is_active:
            logger.info(f"[CFG-RULES] Skipping inactive shipper | shipper={rule.shipper}")
            return
        key = normalize_shipper(rule.shipper)
        if key in self._rules:
            logger.warning(
                f"[CFG-RULES] Duplicate shipper row, keeping the later one | shipper={rule.shipper}"
            )
        self._rules[key] = rule

    def __getitem__(self, shipper: str) -> BillingRules:
        return self._rules[normalize_shipper(shipper)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def from_rows(cls, rows: Iterable[Dict[str, Any]]) -> "BillingRulesRepository":
        """
        Parse raw rows, skipping (and logging) the ones that fail validation.
        """
        repo = cls()
        for row in rows:
            try:
                repo._add(parse_billing_rules(row))
            except BillingRulesValidationError as e:
                repo.rejected.append(e.shipper or "<unknown>")
                logger.error(f"{e} | shipper={e.shipper}")
        logger.info(
            f"[CFG-RULES] Billing rules loaded | active={len(repo)} | rejected={len(repo.rejected)}"
        )
        return repo

    @classmethod
    def from_json_file(cls, path: str) -> "BillingRulesRepository":
        """Load rows from a JSON file holding a list of row objects."""
        with open(path, "r", encoding="utf-8") as handle:
            rows = json.load(handle)
        if not isinstance(rows, list):
            raise BillingRulesValidationError(f"{path} must contain a JSON list of rows")
        return cls.from_rows(rows)


__all__ = [
    "BillingRules",
    "BillingRulesRepository",
    "BillingRulesValidationError",
    "RateUnit",
    "RoundingMode",
    "parse_billing_rules",
    "parse_bool",
    "normalize_shipper",
    "PRECISION_MONEY",
]
