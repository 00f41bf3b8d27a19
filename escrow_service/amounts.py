import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .config import DEFAULT_AMOUNT

# digits grouped by thousands: 5,000 / 1,250,000.50
_THOUSANDS = re.compile(r"(?<=\d),(?=\d{3}(?!\d))")
_NUMBER = re.compile(r"\d+(?:\.\d+)?|\.\d+")


def normalize_amount(text: str | None, default: int = DEFAULT_AMOUNT) -> int:
    """
    Turn a free-text budget ("₦5,000 - ₦10,000", "10000", "") into an amount.

    Anything that is not a digit or a decimal point separates numbers; the first
    number wins, so a range resolves to its lower bound. Empty, unparsable or
    non-positive input falls back to `default`. Never raises.
    """
    if not text:
        return default

    cleaned = _THOUSANDS.sub("", str(text))
    match = _NUMBER.search(cleaned)
    if not match:
        return default

    try:
        value = Decimal(match.group(0))
    except InvalidOperation:
        return default

    if not value.is_finite():
        return default

    amount = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if amount <= 0:
        return default
    return amount
