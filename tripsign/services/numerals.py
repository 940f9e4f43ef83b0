"""Traditional Chinese financial numerals (大寫數字) for amounts written out in words."""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

DIGITS = "零壹貳參肆伍陸柒捌玖"
SMALL_UNITS = ("", "拾", "佰", "仟")
BIG_UNITS = ("", "萬", "億", "兆")
NEGATIVE = "負"
DECIMAL_POINT = "點"

_NUMERIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")


def parse_numeric(value: Any) -> Optional[Decimal]:
    """Return ``value`` as a Decimal when it looks like a number, else None.

    Accepts ints, floats, Decimals and strings such as ``"12,500"`` or
    ``" 3.50 "``. Booleans are not numbers here.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.replace(",", "").replace(" ", "").strip()
        if not _NUMERIC_RE.match(cleaned):
            return None
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None
    return None


def _group_words(group: int) -> str:
    # group in 1..9999
    words = ""
    pending_zero = False
    for pos in (3, 2, 1, 0):
        digit = group // (10 ** pos) % 10
        if digit == 0:
            if words:
                pending_zero = True
            continue
        if pending_zero:
            words += DIGITS[0]
            pending_zero = False
        words += DIGITS[digit] + SMALL_UNITS[pos]
    return words


def integer_to_words(n: int) -> str:
    if n < 0:
        raise ValueError("integer_to_words expects a non-negative integer")
    if n == 0:
        return DIGITS[0]
    groups = []
    while n:
        groups.append(n % 10000)
        n //= 10000
    if len(groups) > len(BIG_UNITS):
        raise ValueError("number too large for financial numerals")

    parts: list[str] = []
    pending_zero = False
    for idx in range(len(groups) - 1, -1, -1):
        group = groups[idx]
        if group == 0:
            pending_zero = bool(parts)
            continue
        if parts and (pending_zero or group < 1000):
            parts.append(DIGITS[0])
        parts.append(_group_words(group) + BIG_UNITS[idx])
        pending_zero = False
    return "".join(parts)


def amount_in_words(value: Any) -> str:
    """Render a numeric-like value in financial numerals; "" when not numeric."""
    number = parse_numeric(value)
    if number is None:
        return ""
    sign = NEGATIVE if number < 0 else ""
    number = abs(number)
    integer_part = int(number)
    fraction = format(number - integer_part, "f")
    fraction_digits = fraction.split(".")[1].rstrip("0") if "." in fraction else ""
    try:
        words = integer_to_words(integer_part)
    except ValueError:
        return ""
    if fraction_digits:
        words += DECIMAL_POINT + "".join(DIGITS[int(d)] for d in fraction_digits)
    if not words.strip(DIGITS[0]) and not fraction_digits:
        sign = ""
    return sign + words
