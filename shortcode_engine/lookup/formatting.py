"""Locale number formatting for lookup results (fi-FI by default)."""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from shortcode_engine.models.config import NumberFormat

_LEADING_NUMBER = re.compile(r"^([+\-−]?[0-9]*\.?[0-9]+)")


def format_locale_number(value: float, fmt: Optional[NumberFormat] = None) -> str:
    """
    Format like Intl.NumberFormat: grouped integer part, at most
    `max_fraction_digits` fraction digits, trailing zeros dropped.

    >>> format_locale_number(12345.678)
    '12\\xa0345,678'
    """
    fmt = fmt or NumberFormat()
    quantum = Decimal(1).scaleb(-fmt.max_fraction_digits)
    rounded = Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    negative = rounded < 0
    text = f"{abs(rounded):f}"

    integer, _, fraction = text.partition(".")
    fraction = fraction.rstrip("0")

    groups = []
    while len(integer) > 3:
        groups.insert(0, integer[-3:])
        integer = integer[:-3]
    groups.insert(0, integer)

    result = fmt.group_separator.join(groups)
    if fraction:
        result += fmt.decimal_separator + fraction
    if negative:
        result = fmt.minus_sign + result
    return result


def format_with_unit(value: float, unit: Optional[str], fmt: Optional[NumberFormat] = None) -> str:
    formatted = format_locale_number(value, fmt)
    return f"{formatted} {unit}" if unit else formatted


def parse_number(value: Any) -> Optional[float]:
    """Leading number of a value, accepting locale group spaces and decimal commas."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = re.sub(r"\s", "", value).replace(",", ".").replace("−", "-")
    match = _LEADING_NUMBER.match(cleaned)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None
