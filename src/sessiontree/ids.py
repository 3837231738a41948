"""Identifier generation."""

from __future__ import annotations

import secrets

from ulid import ULID

ENTRY_ID_BYTES = 4


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"sess"``, ``"lbl"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def make_entry_id(existing: set[str] | frozenset[str] = frozenset()) -> str:
    """
    Generate a short entry id (8 lowercase hex chars, 32 bits of entropy).

    Entry ids only need to be unique within one session. Candidates found in
    *existing* are re-drawn; after repeated collisions the id is widened.
    """
    for _ in range(100):
        candidate = secrets.token_hex(ENTRY_ID_BYTES)
        if candidate not in existing:
            return candidate
    return secrets.token_hex(ENTRY_ID_BYTES * 4)
