# utils.py
"""
Utility functions for the crash engine

Includes:
- Decimal quantization for money and multipliers
- Short unique ids for rounds
- Number formatting for user-facing text (bot replies, logs)
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union

logger = logging.getLogger("aviator.utils")

NumberType = Union[float, Decimal, int, str]

CENT = Decimal("0.01")

# =========================
# DECIMALS
# =========================

def to_decimal(value: NumberType) -> Decimal:
    """
    Convert input to Decimal via its string form.
    Floats go through str() so 0.1 stays 0.1 and not 0.1000000000000000055.
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e


def to_money(value: NumberType) -> Decimal:
    """Quantize to cents, rounding down (house never overpays)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def to_multiplier(value: NumberType) -> Decimal:
    """Quantize a multiplier to 2 places, rounding down."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


# =========================
# IDS & TIME
# =========================

def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round ids.
    """
    return secrets.token_hex(length)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# FORMATTING
# =========================

def format_balance(amount: Optional[NumberType]) -> str:
    """
    Format balance with 2 decimals.
    Handles float, Decimal, int, or string inputs safely.
    """
    try:
        return f"{float(amount):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid balance format input: {amount}")
        return "0.00"


def format_multiplier(mult: Optional[NumberType]) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        return f"x{float(mult):.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def as_float(value: Optional[Decimal]) -> Optional[float]:
    """JSON-friendly conversion that keeps None."""
    return float(value) if value is not None else None
