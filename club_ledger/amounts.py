"""
Integer money helpers.

Amounts are micro-USDC integers everywhere inside the ledger. They only
become decimal strings at the presentation boundary.
"""

import re
from decimal import Decimal
from typing import Optional

from .errors import LedgerValidationError

USDC_DECIMALS = 6
MICROS_PER_UNIT = 10 ** USDC_DECIMALS

_SIGNED_INT = re.compile(r"^-?[0-9]+$")
_BYTES32_HEX = re.compile(r"^0x[0-9a-fA-F]{64}$")


def parse_amount(value: str, field: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise LedgerValidationError(f"{field} must be an integer string")
    text = str(value).strip()
    if not _SIGNED_INT.match(text):
        raise LedgerValidationError(f"{field} must be an integer string, got {value!r}")
    return int(text)


def parse_positive_amount(value: str, field: str = "amount") -> int:
    amount = parse_amount(value, field)
    if amount <= 0:
        raise LedgerValidationError(f"{field} must be greater than zero")
    return amount


def parse_non_negative_amount(value: str, field: str = "amount") -> int:
    amount = parse_amount(value, field)
    if amount < 0:
        raise LedgerValidationError(f"{field} must not be negative")
    return amount


def is_valid_bytes32(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_BYTES32_HEX.match(value))


def to_display(micros: int) -> Decimal:
    return Decimal(micros).scaleb(-USDC_DECIMALS)


def format_usdc(micros: int, grouping: bool = False) -> str:
    """Render micro-units as a decimal string with six implied places.

    ``format_usdc(1200000) == "1.200000"``; trailing zeros are kept so the
    string round-trips through ``Decimal`` exactly.
    """
    sign = "-" if micros < 0 else ""
    whole, frac = divmod(abs(micros), MICROS_PER_UNIT)
    whole_text = f"{whole:,}" if grouping else str(whole)
    return f"{sign}{whole_text}.{frac:0{USDC_DECIMALS}d}"
