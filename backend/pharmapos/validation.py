from __future__ import annotations

from datetime import date
from typing import Any

from .errors import ValidationError
from .time_utils import parse_iso_date


# Maximum price: KES 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999
MAX_QUANTITY = 1_000_000


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for request input.

    Rejects floats, booleans, decimals and scientific notation so that
    "12.5" or 1e3 never silently become an integer amount.
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", details={"field": field})
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)", details={"field": field})
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", details={"field": field})
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", details={"field": field})
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", details={"field": field})
    raise ValidationError(f"{field} must be an integer", details={"field": field})


def require_int(data: dict, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    if data.get(field) is None:
        raise ValidationError(f"{field} is required", details={"field": field})
    return optional_int(data, field, minimum=minimum, maximum=maximum)


def optional_int(data: dict, field: str, *, minimum: int | None = None, maximum: int | None = None, default=None):
    value = data.get(field)
    if value is None:
        return default
    number = coerce_int(value, field)
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", details={"field": field, "value": number})
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}", details={"field": field, "value": number})
    return number


def optional_bool(data: dict, field: str, default: bool = False) -> bool:
    value = data.get(field)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "0", "no", "off"}:
        return False
    if isinstance(value, int):
        return bool(value)
    raise ValidationError(f"{field} must be a boolean", details={"field": field})


def optional_str(data: dict, field: str, *, max_length: int = 255) -> str | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={"field": field})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", details={"field": field})
    return value or None


def require_str(data: dict, field: str, *, max_length: int = 255) -> str:
    value = optional_str(data, field, max_length=max_length)
    if not value:
        raise ValidationError(f"{field} is required", details={"field": field})
    return value


def optional_date(data: dict, field: str) -> date | None:
    value = data.get(field)
    if value is None or isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={"field": field})
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={"field": field})


def parse_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls.parse(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            details={"field": field, "allowed": enum_cls.values()},
        )


def optional_list(data: dict, field: str) -> list:
    value = data.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list", details={"field": field})
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError(f"each entry in {field} must be an object", details={"field": field})
    return value
