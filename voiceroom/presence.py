"""
Display name and room id normalisation shared by the server and the client.

The server applies these rules authoritatively; clients use the same helpers
to echo what the server will accept.
"""

from __future__ import annotations

import random
import string
from typing import Optional

DISPLAY_NAME_MAX_LENGTH = 15
ROOM_ID_MAX_LENGTH = 32
GUEST_PREFIX = "Guest-"
GUEST_SUFFIX_LENGTH = 6

_GUEST_ALPHABET = string.ascii_lowercase + string.digits
_EXTRA_NAME_CHARS = frozenset(" -")


def _allowed(char: str) -> bool:
    return char.isalpha() or char.isdigit() or char in _EXTRA_NAME_CHARS


def generate_guest_name(rng: Optional[random.Random] = None) -> str:
    chooser = rng or random
    suffix = "".join(chooser.choice(_GUEST_ALPHABET) for _ in range(GUEST_SUFFIX_LENGTH))
    return f"{GUEST_PREFIX}{suffix}"


def clean_display_name(value: object) -> str:
    """
    Strip disallowed characters, trim and cap the length.

    Returns an empty string when nothing usable remains; callers decide whether
    to substitute a guest name.
    """

    if value is None:
        return ""
    text = "".join(char for char in str(value) if _allowed(char)).strip()
    return text[:DISPLAY_NAME_MAX_LENGTH].strip()


def normalize_display_name(value: object, rng: Optional[random.Random] = None) -> str:
    return clean_display_name(value) or generate_guest_name(rng)


def normalize_room_id(value: object) -> Optional[str]:
    """Return the trimmed room id, or ``None`` when it is empty or oversized."""

    if value is None:
        return None
    room_id = str(value).strip()
    if not room_id or len(room_id) > ROOM_ID_MAX_LENGTH:
        return None
    return room_id


def name_key(name: str) -> str:
    return name.casefold()


def names_match(first: str, second: str) -> bool:
    return name_key(first) == name_key(second)


__all__ = [
    "DISPLAY_NAME_MAX_LENGTH",
    "ROOM_ID_MAX_LENGTH",
    "clean_display_name",
    "generate_guest_name",
    "name_key",
    "names_match",
    "normalize_display_name",
    "normalize_room_id",
]
