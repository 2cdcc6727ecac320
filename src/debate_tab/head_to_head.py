"""debate_tab.head_to_head

Pairwise outcome lookup consulted only to break ties.

Built fresh from authoritative round outcomes on every standings run, in
one pass over completed pairings.  Byes and pairings where nobody won (a
double loss, or a winner later disqualified under the zero_out policy)
contribute nothing.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Iterable

from debate_tab.tab_models import RoundOutcome

H2H_WIN = "win"
H2H_LOSS = "loss"
H2H_NONE = "none"
H2H_UNDETERMINED = "undetermined"


def pair_key(a: str, b: str) -> tuple[str, str]:
    """Unordered pair key as a sorted tuple."""
    return (a, b) if a <= b else (b, a)


class HeadToHeadIndex:
    def __init__(self, meetings: dict[tuple[str, str], list[str]] | None = None) -> None:
        # pair key -> winner id per decided meeting
        self._meetings: dict[tuple[str, str], list[str]] = meetings or {}

    @classmethod
    def build(cls, outcomes: Iterable[RoundOutcome]) -> HeadToHeadIndex:
        by_pairing: dict[str, list[RoundOutcome]] = defaultdict(list)
        for o in outcomes:
            if o.opponent_id is None:
                continue
            by_pairing[o.pairing_id].append(o)

        meetings: dict[tuple[str, str], list[str]] = defaultdict(list)
        for pairing_id in sorted(by_pairing):
            sides = by_pairing[pairing_id]
            if len(sides) != 2:
                continue
            first, second = sides
            if first.is_win and second.is_loss:
                winner = first.registration_id
            elif second.is_win and first.is_loss:
                winner = second.registration_id
            else:
                continue
            meetings[pair_key(first.registration_id, second.registration_id)].append(winner)
        return cls(dict(meetings))

    def query(self, a: str, b: str) -> str:
        """Return win (a beat b), loss, none (never met) or undetermined (split)."""
        winners = self._meetings.get(pair_key(a, b))
        if not winners:
            return H2H_NONE
        distinct = set(winners)
        if len(distinct) > 1:
            return H2H_UNDETERMINED
        return H2H_WIN if a in distinct else H2H_LOSS

    def beat(self, a: str, b: str) -> bool:
        return self.query(a, b) == H2H_WIN

    def __len__(self) -> int:
        return len(self._meetings)

    def to_rows(self) -> list[dict[str, Any]]:
        rows = []
        for (a, b), winners in sorted(self._meetings.items()):
            rows.append({
                "registration_a": a,
                "registration_b": b,
                "meetings": len(winners),
                "a_wins": sum(1 for w in winners if w == a),
                "b_wins": sum(1 for w in winners if w == b),
                "outcome": self.query(a, b),
            })
        return rows
