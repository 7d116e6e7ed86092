"""
muster.engine.capacity — Roster Capacity Rules
===============================================

Pure checks shared by join, approve, promote and role updates.  They look
only at the already-confirmed roster passed in, so callers must load that
roster inside the same transaction that performs the write.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol


class RosterEntry(Protocol):
    user_id: int
    role: str | None


def role_limit(role_limits: dict | None, role: str | None) -> int | None:
    """Capacity configured for *role*, or ``None`` when unlimited."""
    if not role_limits or not role:
        return None
    limit = role_limits.get(role)
    return int(limit) if limit else None


def capacity_block(
    *,
    max_participants: int | None,
    role_limits: dict | None,
    confirmed: Sequence[RosterEntry],
    role: str | None,
    exclude_user_id: int | None = None,
) -> str | None:
    """Return why *role* cannot take another confirmed slot, or ``None``.

    ``exclude_user_id`` leaves one participant out of the counts, for a
    confirmed member switching roles.
    """
    others = [p for p in confirmed if p.user_id != exclude_user_id]

    if max_participants and len(others) >= max_participants:
        return "Event is full."

    limit = role_limit(role_limits, role)
    if limit is not None:
        taken = sum(1 for p in others if p.role == role)
        if taken >= limit:
            return f"The {role} role is full."
    return None


def over_capacity(
    *,
    max_participants: int | None,
    role_limits: dict | None,
    confirmed: Sequence[RosterEntry],
) -> bool:
    """True if the confirmed roster already exceeds any configured cap."""
    if max_participants and len(confirmed) > max_participants:
        return True
    if role_limits:
        counts: dict[str, int] = {}
        for p in confirmed:
            if p.role:
                counts[p.role] = counts.get(p.role, 0) + 1
        for role, count in counts.items():
            limit = role_limit(role_limits, role)
            if limit is not None and count > limit:
                return True
    return False


def has_allowed_role(allowed_roles: Iterable | None, caller_role_ids: Iterable) -> bool:
    """An empty allow-list admits everyone."""
    allowed = {str(r) for r in (allowed_roles or [])}
    if not allowed:
        return True
    return any(str(r) in allowed for r in caller_role_ids)
