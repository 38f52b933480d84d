"""
Fixed function table exposed to sandboxed expressions.

The table is frozen at import time. Expressions can call these names and
nothing else; there is deliberately no registration API.
"""

import math
import re
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence


RISK_WEIGHTS = MappingProxyType({
    "newDevice": 20,
    "unusualLocation": 15,
    "offHours": 10,
    "suspiciousActivity": 30,
    "highPrivilegeAccess": 25,
})

MAX_RISK_SCORE = 100


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise TypeError(f"Not a date: {value!r}")


def _flag(mapping: Optional[Mapping[str, Any]], *keys: str) -> bool:
    if not mapping:
        return False
    return any(bool(mapping.get(key)) for key in keys)


# Numeric

def js_round(value: float) -> int:
    """Round half up, the way policy authors expect."""
    return math.floor(value + 0.5)


# String

def substring(value: str, start: int, end: Optional[int] = None) -> str:
    return str(value)[start:end]


def to_lower_case(value: str) -> str:
    return str(value).lower()


def to_upper_case(value: str) -> str:
    return str(value).upper()


def trim(value: str) -> str:
    return str(value).strip()


def replace(value: str, search: str, replacement: str) -> str:
    """Replace the first occurrence only."""
    return str(value).replace(search, replacement, 1)


# Date

def now() -> datetime:
    return datetime.now(timezone.utc)


def date_add(date: Any, days: float) -> datetime:
    return _to_datetime(date) + timedelta(days=days)


def date_diff(date1: Any, date2: Any) -> float:
    """Absolute difference in days."""
    delta = _to_datetime(date1) - _to_datetime(date2)
    return abs(delta.total_seconds()) / 86400


def format_date(date: Any, fmt: Optional[str] = None) -> str:
    parsed = _to_datetime(date)
    return parsed.strftime(fmt) if fmt else parsed.isoformat()


# Collection

def length(value: Sequence[Any]) -> int:
    return len(value)


def contains(collection: Sequence[Any], item: Any) -> bool:
    return item in collection


def join(values: Sequence[Any], separator: str = ",") -> str:
    return separator.join(str(v) for v in values)


# Logical

def logical_and(*args: Any) -> bool:
    return all(bool(arg) for arg in args)


def logical_or(*args: Any) -> bool:
    return any(bool(arg) for arg in args)


def logical_not(value: Any) -> bool:
    return not value


# Comparison

def equals(a: Any, b: Any) -> bool:
    return type(a) is type(b) and a == b


def greater_than(a: Any, b: Any) -> bool:
    return a > b


def less_than(a: Any, b: Any) -> bool:
    return a < b


# Domain helpers

def hash_value(value: Any) -> str:
    """31-multiplier string hash folded to a signed 32-bit integer, in hex.

    Demonstration grade only; not a cryptographic digest.
    """
    result = 0
    for char in str(value):
        result = (result * 31 + ord(char)) & 0xFFFFFFFF
    if result & 0x80000000:
        result -= 0x100000000
    return format(result, "x")


def mask_value(value: Any, pattern: str = "full") -> str:
    text = str(value)
    if pattern == "email":
        return re.sub(r"(.{2}).*(@.*)", r"\1***\2", text, count=1)
    if pattern == "phone":
        return re.sub(r"(\d{3}).*(\d{3})", r"\1***\2", text, count=1)
    if pattern == "partial":
        if len(text) <= 4:
            return "*" * len(text)
        return text[:2] + "*" * (len(text) - 4) + text[-2:]
    return "*" * len(text)


def calculate_risk(factors: Mapping[str, Any]) -> int:
    """Weighted sum of boolean risk factors, capped at 100."""
    score = sum(weight for name, weight in RISK_WEIGHTS.items() if factors.get(name))
    return min(score, MAX_RISK_SCORE)


def assess_trust(user: Mapping[str, Any], context: Mapping[str, Any]) -> str:
    if _flag(user, "isTrustedUser", "is_trusted_user") and _flag(context, "isTrustedDevice", "is_trusted_device"):
        return "high"
    if _flag(user, "isVerified", "is_verified") and _flag(context, "isKnownNetwork", "is_known_network"):
        return "medium"
    return "low"


SAFE_FUNCTIONS: Mapping[str, Any] = MappingProxyType({
    # Numeric
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "max": max,
    "min": min,
    "round": js_round,

    # String
    "substring": substring,
    "toLowerCase": to_lower_case,
    "toUpperCase": to_upper_case,
    "trim": trim,
    "replace": replace,

    # Date
    "now": now,
    "dateAdd": date_add,
    "dateDiff": date_diff,
    "formatDate": format_date,

    # Collection
    "length": length,
    "contains": contains,
    "join": join,

    # Logical
    "and": logical_and,
    "or": logical_or,
    "not": logical_not,

    # Comparison
    "equals": equals,
    "greaterThan": greater_than,
    "lessThan": less_than,

    # Domain
    "hash": hash_value,
    "mask": mask_value,
    "calculateRisk": calculate_risk,
    "assessTrust": assess_trust,
})
