"""debate_tab.tab_models

Frozen value types shared by ingestion, the standings calculator, the
override ledger and the legacy pairing import.

Speaker points are carried as integer tenths everywhere; Decimal values
are produced only at the display edge.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from debate_tab.normalize import tenths_to_decimal

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SIDES = ("aff", "neg")

# Per-registration, per-round outcomes derived from authoritative results.
WIN_OUTCOMES = frozenset({"win", "forfeit_win", "bye"})
LOSS_OUTCOMES = frozenset({"loss", "forfeit_loss", "dq_loss"})
# Rounds that were actually debated and scored; the average divides by these.
SPEAKING_OUTCOMES = frozenset({"win", "loss"})
# Neither side of a forfeit keeps speaker points, nor does a DQ'd side.
UNSCORED_OUTCOMES = frozenset({"forfeit_win", "forfeit_loss", "dq_loss"})


def other_side(side: str) -> str:
    if side not in SIDES:
        raise ValueError(f"unknown side {side!r}")
    return "neg" if side == "aff" else "aff"


# ---------------------------------------------------------------------------
# Roster / pairing store
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Registration:
    id: str
    tournament_id: str
    display_name: str
    participant_name: str | None = None
    partner_name: str | None = None
    school: str | None = None
    withdrawn: bool = False
    aff_count: int = 0
    neg_count: int = 0


@dataclass(frozen=True)
class Round:
    id: str
    tournament_id: str
    sequence_number: int
    status: str = "upcoming"
    name: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class Pairing:
    """One aff/neg pairing.  ``neg_registration_id`` is None for a bye."""

    id: str
    round_id: str
    aff_registration_id: str
    neg_registration_id: str | None
    status: str = "scheduled"
    winner_id: str | None = None
    room: str | None = None

    @property
    def is_bye(self) -> bool:
        return self.neg_registration_id is None

    def registration_for(self, side: str) -> str | None:
        return self.aff_registration_id if side == "aff" else self.neg_registration_id


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RoundResult:
    """Outcome of one pairing.

    ``forfeit`` / ``dq`` describe the losing side for that round.  A
    ``winner_side`` of None records a double loss (e.g. both teams absent).
    """

    pairing_id: str
    winner_side: str | None
    forfeit: bool = False
    dq: bool = False
    bye: bool = False


@dataclass(frozen=True)
class SpeakerResult:
    id: str
    pairing_id: str
    registration_id: str
    side: str
    points_tenths: int


@dataclass(frozen=True)
class RoundOutcome:
    """What one round meant for one registration after overrides and DQ policy."""

    registration_id: str
    round_id: str
    pairing_id: str
    opponent_id: str | None
    outcome: str
    speaks_tenths: int
    sources: tuple[str, ...] = ()

    @property
    def is_win(self) -> bool:
        return self.outcome in WIN_OUTCOMES

    @property
    def is_loss(self) -> bool:
        return self.outcome in LOSS_OUTCOMES


# ---------------------------------------------------------------------------
# Standings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ComputedStanding:
    registration_id: str
    wins: int
    losses: int
    byes: int
    forfeits: int
    rounds_completed: int
    speaking_rounds: int
    total_speaks_tenths: int
    rank: int
    decided_by: str | None
    tiebreak_trace: tuple[str, ...]
    disqualified: bool = False
    sources: tuple[str, ...] = ()

    @property
    def total_speaks(self) -> Decimal:
        return tenths_to_decimal(self.total_speaks_tenths)

    @property
    def avg_speaks(self) -> Decimal:
        if self.speaking_rounds == 0:
            return Decimal("0.00")
        avg = Decimal(self.total_speaks_tenths) / Decimal(10 * self.speaking_rounds)
        return avg.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "rank": self.rank,
            "wins": self.wins,
            "losses": self.losses,
            "byes": self.byes,
            "forfeits": self.forfeits,
            "rounds_completed": self.rounds_completed,
            "speaking_rounds": self.speaking_rounds,
            "total_speaks": str(self.total_speaks),
            "avg_speaks": str(self.avg_speaks),
            "decided_by": self.decided_by,
            "tiebreak_trace": list(self.tiebreak_trace),
            "disqualified": self.disqualified,
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class StandingsSnapshot:
    """Published, immutable standings; every recompute produces a new one."""

    tournament_id: str
    computed_at: datetime
    rows: tuple[ComputedStanding, ...]
    conflicts: tuple[int, ...] = field(default=())

    def rows_json(self) -> str:
        """Canonical JSON of the ranked rows (no timestamp)."""
        return json.dumps(
            [r.to_dict() for r in self.rows],
            sort_keys=True,
            separators=(",", ":"),
        )

    @property
    def version(self) -> str:
        return hashlib.sha256(self.rows_json().encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "computed_at": self.computed_at.isoformat(),
            "version": self.version,
            "conflicts": list(self.conflicts),
            "rows": [r.to_dict() for r in self.rows],
        }
