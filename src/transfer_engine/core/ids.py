"""Identifiers and timestamps for engine entities.

Players, clubs, agents, contracts, transfers and bonuses receive a random
UUID4 at construction.  Change records additionally carry a deterministic
key derived from what changed, so the same store change delivered twice
hashes to the same value.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Aware UTC time, used for ``created_at`` defaults and row stamps."""
    return datetime.now(timezone.utc)


def stable_key(*parts: object, length: int = 16) -> str:
    """Truncated SHA-256 over ``str(part)`` joined with ``':'``.

    ``None`` parts contribute an empty segment, so ``("a", None)`` and
    ``("a", "")`` collide on purpose.
    """
    raw = ":".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:length]
