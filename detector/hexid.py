"""
detector.hexid
AUTHOR: carter-vin

Container ID gate
- every probe runs its candidate through is_valid_hex before returning it
"""

from __future__ import annotations

HEX_CHARS = frozenset("0123456789abcdef")


def is_valid_hex(value: object) -> bool:
    """
    True iff value is a non-empty lowercase hex string
    """
    if not isinstance(value, str) or not value:
        return False
    return all(ch in HEX_CHARS for ch in value)
