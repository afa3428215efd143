import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

_CENT = Decimal("0.01")

# whole-string match; an optional currency symbol or ISO code may wrap the number
_AFFIX = r"(?:[A-Z]{3}|[$€£₪¥])?"
_NUMBER_RE = re.compile(_AFFIX + r"(-?\d+(?:\.\d+)?)" + _AFFIX)


def round2(value: Any) -> float:
    """Round a monetary figure to 2 decimals, half away from zero.

    Goes through str() so binary float noise (e.g. 2.675) rounds the way a
    person reading the number expects.
    """
    if value is None:
        return 0.0
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        return 0.0
    return float(d.quantize(_CENT, rounding=ROUND_HALF_UP))


def normalize_amount(val: Any) -> Optional[str]:
    """Normalize numeric strings to dot-decimal text.

    Handles inputs like '14,70', '14.70', '1.470,00', '1,470.00', numbers, etc.
    Returns None unless the whole string is a number, optionally wrapped in
    a currency symbol or code; "1e3" and "abc12" are rejected.
    """
    if val is None:
        return None
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return str(val)
    s = str(val).strip().replace(" ", "").replace("\u00a0", "")
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    s2 = s
    if has_dot and has_comma:
        # the right-most separator is the decimal one
        if s.rfind(",") > s.rfind("."):
            s2 = s.replace(".", "").replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif has_comma:
        # "14,70" is a decimal comma, "1,470" a thousands separator
        if re.search(r",\d{1,2}$", s) and s.count(",") == 1:
            s2 = s.replace(",", ".")
        else:
            s2 = s.replace(",", "")
    m = _NUMBER_RE.fullmatch(s2)
    if not m:
        return None
    return m.group(1)


def to_number(val: Any) -> Optional[float]:
    """Parse an OCR/POS value into a float; None when absent or unparseable."""
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        number = float(val)
        if not math.isfinite(number):
            _LOG.debug(f"Rejecting non-finite number {val!r}")
            return None
        return number
    text = normalize_amount(val)
    if text is None:
        return None
    try:
        return float(Decimal(text))
    except InvalidOperation:
        _LOG.debug(f"Could not parse number from {val!r}")
        return None


def effective_unit_price(unit_price: float, quantity: float, line_total: Optional[float]) -> float:
    """Unit price with the line-total fallback applied.

    When the explicit unit price is zero but quantity and line total are
    both non-zero, the price is taken as line_total / quantity. This is a
    heuristic for OCR rows that only carry a line total.
    """
    if unit_price == 0 and quantity and line_total:
        return round2(line_total / quantity)
    return unit_price


def derive_short_name(description: Optional[str], words: int = 3) -> Optional[str]:
    """First few words of a description, or None for blank input."""
    parts = (description or "").split()
    if not parts:
        return None
    return " ".join(parts[:words])


def norm_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None
