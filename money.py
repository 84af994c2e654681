from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

AmountInput = Union[str, int, float]

# keeps single amounts and their SUM() well inside a 64-bit INTEGER
MAX_MINOR = 10**15


def parse_amount(value: AmountInput, *, allow_negative: bool = False) -> int:
    """Parse a decimal amount into integer minor units.

    Comma and dot are both accepted as the decimal separator; when several
    separators appear the last one is taken as the decimal point and the
    others are treated as thousands separators.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("Invalid amount")
    clean = str(value).strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if abs(minor) > MAX_MINOR:
        raise ValueError("Invalid amount")
    if minor < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return minor


def format_minor(amount_minor: int) -> str:
    return f"{amount_minor / 100:.2f}"
