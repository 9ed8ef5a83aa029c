"""Utility functions for the accident monitor."""

import re
from typing import Optional

from .config.defaults import SYSTEM_CONSTANTS

_E164 = re.compile(SYSTEM_CONSTANTS["E164_PATTERN"])


def is_valid_number(number: Optional[str]) -> bool:
    """Check a phone number against the E.164-like pattern."""
    return bool(number) and bool(_E164.match(number))


def normalize_number(number: str) -> str:
    """Strip whitespace and common separators an operator may type."""
    return re.sub(r"[\s\-().]", "", number or "")


def format_confidence(confidence: Optional[float]) -> str:
    """Render a [0, 1] confidence as a whole percentage."""
    if confidence is None:
        return "n/a"
    return f"{confidence * 100:.0f}%"
