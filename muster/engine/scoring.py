"""
muster.engine.scoring — Attendance Score & Leaderboard Ranks
=============================================================

``score = joined*0 + completed*3 + no_shows*(-2)``

Ranks are handed out in score order, but only to members who completed at
least the guild's minimum number of events; everyone else gets ``None``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from muster.constants import SCORE_WEIGHTS


class RankedRow(Protocol):
    user_id: int
    score: int
    total_completed: int


def calculate_score(joined: int, completed: int, no_shows: int) -> int:
    return (
        joined * SCORE_WEIGHTS["joined"]
        + completed * SCORE_WEIGHTS["completed"]
        + no_shows * SCORE_WEIGHTS["no_show"]
    )


def assign_ranks(rows: Sequence[RankedRow], min_events: int) -> dict[int, int | None]:
    """Map ``user_id → rank`` for a guild's statistics rows.

    Ordering: score desc, then completed desc, then user id for a stable
    result.  Unqualified rows do not consume a rank number.
    """
    ordered = sorted(
        rows, key=lambda r: (-r.score, -r.total_completed, r.user_id)
    )
    ranks: dict[int, int | None] = {}
    next_rank = 1
    for row in ordered:
        if row.total_completed >= min_events:
            ranks[row.user_id] = next_rank
            next_rank += 1
        else:
            ranks[row.user_id] = None
    return ranks
