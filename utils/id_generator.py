"""
Human-typable identifiers for trades and redirection codes
Format: <PREFIX>-<base36 millisecond timestamp>-<random suffix>
"""

import secrets
import string
import time
from typing import Optional

# Uppercase and digits only, read aloud over the phone to a carrier
CODE_ALPHABET = string.ascii_uppercase + string.digits
BASE36_DIGITS = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def random_suffix(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_code(prefix: str, suffix_length: int = 6, timestamp_ms: Optional[int] = None) -> str:
    """Collision-resistant code; uniqueness is still enforced by the caller's unique index"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{prefix}-{to_base36(timestamp_ms)}-{random_suffix(suffix_length)}"


def generate_trade_id() -> str:
    return generate_code("TRD", suffix_length=4)
