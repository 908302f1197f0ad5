"""
Public identifier generation for escrow entities
Hybrid identifiers: entity prefix + timestamp component + random suffix
"""

import secrets
import string
import time
from enum import Enum

_ALPHABET = string.digits + string.ascii_uppercase


class EntityType(Enum):
    """Entity prefixes for public identifiers"""
    DEAL = "DL"
    MILESTONE = "MS"
    DELIVERABLE = "DV"
    PAYOUT = "PO"
    REFUND = "RF"
    DISPUTE = "DP"
    SAGA = "SG"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_id(entity_type: EntityType, random_length: int = 6) -> str:
    """Generate a sortable, collision-resistant public id like ``DL-LZ3K9Q2A-7F3KQ0``"""
    timestamp_part = _base36(time.time_ns() // 1_000_000)
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(random_length))
    return f"{entity_type.value}-{timestamp_part}-{random_part}"
