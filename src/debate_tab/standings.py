"""debate_tab.standings

Standings calculator (--mode standings).

Consumes every round result and speaker result of a tournament, the
override overlay from the ledger and the tab rules, and produces an
immutable StandingsSnapshot.  Standings are rebuilt wholesale on every run;
identical inputs produce byte-identical rows (see StandingsSnapshot.rows_json).

Tiebreak cascade, applied as successive partitions of each tied group:
  0. rounds_completed     registrations with no completed round sink last
  1. wins                 descending (bye, forfeit win count as wins)
  2. total_speaks         descending, integer tenths
  3. head_to_head         winner of a decided meeting ranks higher; in larger
                          groups a member that beat (lost to) every other
                          member is moved to the top (bottom), repeatedly
  4. avg_speaks           descending, exact rational comparison
  5. tiebreaker_override  explicit ledger ordering between two registrations
     manual_rank          ledger target rank, ascending
  Anything still tied shares a rank (1, 2, 2, 4).

Each row's decided_by names the criterion that separated it from the next
row ("shared" when tied with it); tiebreak_trace lists the criteria
consulted for that comparison in cascade order.

Processing order: load inputs -> integrity check -> derive outcomes ->
head-to-head index -> tallies -> rank -> persist.  Caller manages the
transaction.
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction
from typing import Any, Callable

import psycopg
from psycopg.types.json import Jsonb

from debate_tab.head_to_head import HeadToHeadIndex
from debate_tab.shared import DataIntegrityError, advisory_xact_lock, utcnow
from debate_tab.tab_ledger import Overlay, build_overlay, load_audit_entries
from debate_tab.tab_models import (
    LOSS_OUTCOMES,
    SIDES,
    SPEAKING_OUTCOMES,
    UNSCORED_OUTCOMES,
    ComputedStanding,
    Pairing,
    Registration,
    Round,
    RoundOutcome,
    RoundResult,
    SpeakerResult,
    StandingsSnapshot,
    other_side,
)
from debate_tab.tab_rules import TabRules, default_rules

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CASCADE = (
    "rounds_completed",
    "wins",
    "total_speaks",
    "head_to_head",
    "avg_speaks",
    "tiebreaker_override",
    "manual_rank",
)
SHARED = "shared"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TabInputs:
    tournament_id: str
    registrations: tuple[Registration, ...]
    rounds: tuple[Round, ...]
    pairings: tuple[Pairing, ...]
    results: dict[str, RoundResult] = field(default_factory=dict)
    speaker_results: tuple[SpeakerResult, ...] = ()


def load_tab_inputs(conn: psycopg.Connection, tournament_id: str) -> TabInputs:
    """Read roster, rounds, pairings and results for one tournament."""
    registrations = tuple(
        Registration(
            id=str(r[0]),
            tournament_id=str(r[1]),
            display_name=r[2],
            participant_name=r[3],
            partner_name=r[4],
            school=r[5],
            withdrawn=bool(r[6]),
            aff_count=int(r[7]),
            neg_count=int(r[8]),
        )
        for r in conn.execute(
            """
            SELECT id, tournament_id, display_name, participant_name, partner_name,
                   school, withdrawn, aff_count, neg_count
            FROM registration
            WHERE tournament_id = %s
            ORDER BY id
            """,
            (tournament_id,),
        ).fetchall()
    )
    rounds = tuple(
        Round(id=str(r[0]), tournament_id=str(r[1]), sequence_number=r[2], status=r[3], name=r[4])
        for r in conn.execute(
            """
            SELECT id, tournament_id, sequence_number, status, name
            FROM tab_round
            WHERE tournament_id = %s
            ORDER BY sequence_number
            """,
            (tournament_id,),
        ).fetchall()
    )
    pairings = tuple(
        Pairing(
            id=str(r[0]),
            round_id=str(r[1]),
            aff_registration_id=str(r[2]),
            neg_registration_id=str(r[3]) if r[3] is not None else None,
            status=r[4],
            winner_id=str(r[5]) if r[5] is not None else None,
            room=r[6],
        )
        for r in conn.execute(
            """
            SELECT p.id, p.round_id, p.aff_registration_id, p.neg_registration_id,
                   p.status, p.winner_id, p.room
            FROM pairing p
            JOIN tab_round r ON r.id = p.round_id
            WHERE r.tournament_id = %s
            ORDER BY r.sequence_number, p.id
            """,
            (tournament_id,),
        ).fetchall()
    )
    results = {
        str(r[0]): RoundResult(
            pairing_id=str(r[0]), winner_side=r[1], forfeit=r[2], dq=r[3], bye=r[4]
        )
        for r in conn.execute(
            """
            SELECT rr.pairing_id, rr.winner_side, rr.forfeit, rr.dq, rr.bye
            FROM round_result rr
            JOIN pairing p ON p.id = rr.pairing_id
            JOIN tab_round r ON r.id = p.round_id
            WHERE r.tournament_id = %s
            """,
            (tournament_id,),
        ).fetchall()
    }
    speaker_results = tuple(
        SpeakerResult(
            id=str(r[0]),
            pairing_id=str(r[1]),
            registration_id=str(r[2]),
            side=r[3],
            points_tenths=int(r[4]),
        )
        for r in conn.execute(
            """
            SELECT sr.id, sr.pairing_id, sr.registration_id, sr.side, sr.points_tenths
            FROM speaker_result sr
            JOIN pairing p ON p.id = sr.pairing_id
            JOIN tab_round r ON r.id = p.round_id
            WHERE r.tournament_id = %s
            ORDER BY sr.id
            """,
            (tournament_id,),
        ).fetchall()
    )
    return TabInputs(
        tournament_id=tournament_id,
        registrations=registrations,
        rounds=rounds,
        pairings=pairings,
        results=results,
        speaker_results=speaker_results,
    )


# ---------------------------------------------------------------------------
# Authoritative results + outcomes
# ---------------------------------------------------------------------------

def authoritative_results(inputs: TabInputs, overlay: Overlay) -> dict[str, RoundResult]:
    """Base results with the latest ledger correction per pairing laid on top."""
    known = {p.id for p in inputs.pairings}
    merged = dict(inputs.results)
    for pairing_id, snap in overlay.round_results.items():
        if pairing_id not in known:
            continue
        merged[pairing_id] = RoundResult(
            pairing_id=pairing_id,
            winner_side=snap.winner_side,
            forfeit=snap.forfeit,
            dq=snap.dq,
            bye=snap.bye,
        )
    return merged


def check_integrity(inputs: TabInputs, overlay: Overlay) -> None:
    """Raise DataIntegrityError naming every completed-round pairing without a result."""
    completed = {r.id for r in inputs.rounds if r.is_completed}
    results = authoritative_results(inputs, overlay)
    missing = [
        p.id
        for p in inputs.pairings
        if p.round_id in completed and not p.is_bye and p.id not in results
    ]
    if missing:
        raise DataIntegrityError(missing, f"tournament {inputs.tournament_id}")


def _speaks_by_side(
    inputs: TabInputs, overlay: Overlay
) -> dict[tuple[str, str], tuple[int, list[str]]]:
    totals: dict[tuple[str, str], int] = defaultdict(int)
    sources: dict[tuple[str, str], list[str]] = defaultdict(list)
    for sr in inputs.speaker_results:
        key = (sr.pairing_id, sr.registration_id)
        totals[key] += overlay.speaker_points.get(sr.id, sr.points_tenths)
        sources[key].append(overlay.source(f"speaker:{sr.id}") or f"speaker_result:{sr.id}")
    return {k: (totals[k], sources[k]) for k in totals}


def derive_outcomes(
    inputs: TabInputs, overlay: Overlay, rules: TabRules | None = None
) -> list[RoundOutcome]:
    """Per-registration, per-round outcomes for every completed round.

    DQ policy (rules.dq_policy) applies to every round the registration
    debated; byes are not debated and stay wins.
    """
    rules = rules or default_rules()
    completed = {r.id for r in inputs.rounds if r.is_completed}
    results = authoritative_results(inputs, overlay)
    speaks = _speaks_by_side(inputs, overlay)
    dq_ids = overlay.disqualified_ids()
    award = rules.dq_policy == "award_opponents"

    outcomes: list[RoundOutcome] = []
    for p in inputs.pairings:
        if p.round_id not in completed:
            continue
        if p.is_bye:
            outcomes.append(RoundOutcome(
                registration_id=p.aff_registration_id,
                round_id=p.round_id,
                pairing_id=p.id,
                opponent_id=None,
                outcome="bye",
                speaks_tenths=0,
                sources=(f"pairing:{p.id}",),
            ))
            continue

        result = results[p.id]
        result_src = overlay.source(f"round_result:{p.id}") or f"round_result:{p.id}"
        for side in SIDES:
            reg = p.registration_for(side)
            opp = p.registration_for(other_side(side))
            points, point_srcs = speaks.get((p.id, reg), (0, []))
            if result.winner_side == side:
                outcome = "forfeit_win" if result.forfeit else "win"
            elif result.forfeit:
                outcome = "forfeit_loss"
            elif result.dq:
                outcome = "dq_loss"
            else:
                outcome = "loss"
            srcs = [result_src, *point_srcs]

            if reg in dq_ids:
                outcome = "dq_loss"
                srcs.append(overlay.source(f"dq:{reg}"))
            elif award and opp in dq_ids and outcome in LOSS_OUTCOMES:
                outcome = "win"
                srcs.append(overlay.source(f"dq:{opp}"))
            if outcome in UNSCORED_OUTCOMES:
                points = 0

            outcomes.append(RoundOutcome(
                registration_id=reg,
                round_id=p.round_id,
                pairing_id=p.id,
                opponent_id=opp,
                outcome=outcome,
                speaks_tenths=points,
                sources=tuple(s for s in srcs if s),
            ))

    for reg, round_id in overlay.granted_byes():
        if round_id not in completed:
            continue
        outcomes.append(RoundOutcome(
            registration_id=reg,
            round_id=round_id,
            pairing_id=f"bye:{round_id}",
            opponent_id=None,
            outcome="bye",
            speaks_tenths=0,
            sources=(overlay.source(f"bye:{reg}:{round_id}"),),
        ))
    return outcomes


# ---------------------------------------------------------------------------
# Tallies
# ---------------------------------------------------------------------------

@dataclass
class _Tally:
    registration_id: str
    wins: int = 0
    losses: int = 0
    byes: int = 0
    forfeits: int = 0
    rounds_completed: int = 0
    speaking_rounds: int = 0
    speaks_tenths: int = 0
    disqualified: bool = False
    sources: set[str] = field(default_factory=set)

    @property
    def avg_speaks(self) -> Fraction:
        if self.speaking_rounds == 0:
            return Fraction(0)
        return Fraction(self.speaks_tenths, self.speaking_rounds)


def _tally(
    inputs: TabInputs, outcomes: list[RoundOutcome], overlay: Overlay
) -> list[_Tally]:
    tallies = {r.id: _Tally(registration_id=r.id) for r in inputs.registrations}
    for o in outcomes:
        t = tallies.get(o.registration_id)
        if t is None:
            continue
        t.rounds_completed += 1
        t.speaks_tenths += o.speaks_tenths
        if o.is_win:
            t.wins += 1
        else:
            t.losses += 1
        if o.outcome == "bye":
            t.byes += 1
        if o.outcome == "forfeit_loss":
            t.forfeits += 1
        if o.outcome in SPEAKING_OUTCOMES:
            t.speaking_rounds += 1
        t.sources.update(o.sources)

    dq_ids = overlay.disqualified_ids()
    withdrawn = {r.id for r in inputs.registrations if r.withdrawn}
    kept = []
    for reg_id in sorted(tallies):
        t = tallies[reg_id]
        if reg_id in withdrawn and t.rounds_completed == 0:
            continue
        if reg_id in dq_ids:
            t.disqualified = True
            t.sources.add(overlay.source(f"dq:{reg_id}"))
        kept.append(t)
    return kept


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

def _sweep(group: list[_Tally], beats: Callable[[_Tally, _Tally], bool]) -> list[list[_Tally]]:
    """Peel off members that beat (or lost to) every other remaining member."""
    top: list[list[_Tally]] = []
    bottom: list[list[_Tally]] = []
    remaining = list(group)
    while len(remaining) > 1:
        winner = next(
            (r for r in remaining if all(beats(r, o) for o in remaining if o is not r)),
            None,
        )
        if winner is not None:
            top.append([winner])
            remaining = [r for r in remaining if r is not winner]
            continue
        loser = next(
            (r for r in remaining if all(beats(o, r) for o in remaining if o is not r)),
            None,
        )
        if loser is not None:
            bottom.append([loser])
            remaining = [r for r in remaining if r is not loser]
            continue
        break
    return top + [remaining] + bottom[::-1]


def _keyed(group: list[_Tally], key: Callable[[_Tally], Any]) -> list[list[_Tally]]:
    ordered = sorted(group, key=key, reverse=True)
    return [list(g) for _, g in itertools.groupby(ordered, key=key)]


def _manual_rank_key(overlay: Overlay) -> Callable[[_Tally], tuple[int, int]]:
    def key(t: _Tally) -> tuple[int, int]:
        rank = overlay.manual_ranks.get(t.registration_id)
        return (1, -rank) if rank is not None else (0, 0)
    return key


def _partition(
    criterion: str, group: list[_Tally], h2h: HeadToHeadIndex, overlay: Overlay
) -> list[list[_Tally]]:
    if criterion == "rounds_completed":
        return _keyed(group, lambda t: 1 if t.rounds_completed > 0 else 0)
    if criterion == "wins":
        return _keyed(group, lambda t: t.wins)
    if criterion == "total_speaks":
        return _keyed(group, lambda t: t.speaks_tenths)
    if criterion == "head_to_head":
        return _sweep(group, lambda a, b: h2h.beat(a.registration_id, b.registration_id))
    if criterion == "avg_speaks":
        return _keyed(group, lambda t: t.avg_speaks)
    if criterion == "tiebreaker_override":
        return _sweep(
            group,
            lambda a, b: overlay.tiebreak_higher(a.registration_id, b.registration_id)
            == a.registration_id,
        )
    if criterion == "manual_rank":
        return _keyed(group, _manual_rank_key(overlay))
    raise ValueError(f"unknown cascade criterion {criterion!r}")


def _refine(
    group: list[_Tally], level: int, h2h: HeadToHeadIndex, overlay: Overlay
) -> list[tuple[list[_Tally], str | None]]:
    """Ordered tiers of ``group``; each paired with the criterion separating
    it from the following tier (None for the group's last tier)."""
    if len(group) == 1 or level == len(CASCADE):
        return [(group, None)]
    parts = _partition(CASCADE[level], group, h2h, overlay)
    if len(parts) == 1:
        return _refine(group, level + 1, h2h, overlay)
    tiers: list[tuple[list[_Tally], str | None]] = []
    for i, part in enumerate(parts):
        sub = _refine(part, level + 1, h2h, overlay)
        if i < len(parts) - 1:
            sub[-1] = (sub[-1][0], CASCADE[level])
        tiers.extend(sub)
    return tiers


def _trace_to(criterion: str) -> tuple[str, ...]:
    idx = CASCADE.index(criterion)
    if idx == 0:
        return (criterion,)
    return CASCADE[1:idx + 1]


def _ledger_sources(t: _Tally, overlay: Overlay) -> set[str]:
    out = set()
    rid = t.registration_id
    if rid in overlay.manual_ranks:
        out.add(overlay.source(f"manual_rank:{rid}"))
    for a, b in overlay.tiebreakers:
        if rid in (a, b):
            out.add(overlay.source(f"tiebreaker:{a}:{b}"))
    return {s for s in out if s}


def rank_standings(
    tallies: list[_Tally], h2h: HeadToHeadIndex, overlay: Overlay
) -> list[ComputedStanding]:
    ordered = sorted(tallies, key=lambda t: t.registration_id)
    if not ordered:
        return []
    tiers = _refine(ordered, 0, h2h, overlay)

    rows: list[ComputedStanding] = []
    position = 1
    for tier, boundary in tiers:
        rank = position
        for i, t in enumerate(tier):
            if i < len(tier) - 1:
                decided_by, trace = SHARED, CASCADE[1:]
            elif boundary is None:
                decided_by, trace = None, ()
            else:
                decided_by, trace = boundary, _trace_to(boundary)
            rows.append(ComputedStanding(
                registration_id=t.registration_id,
                wins=t.wins,
                losses=t.losses,
                byes=t.byes,
                forfeits=t.forfeits,
                rounds_completed=t.rounds_completed,
                speaking_rounds=t.speaking_rounds,
                total_speaks_tenths=t.speaks_tenths,
                rank=rank,
                decided_by=decided_by,
                tiebreak_trace=tuple(trace),
                disqualified=t.disqualified,
                sources=tuple(sorted((t.sources | _ledger_sources(t, overlay)) - {None})),
            ))
        position += len(tier)
    return rows


# ---------------------------------------------------------------------------
# Pure entrypoint
# ---------------------------------------------------------------------------

def compute_standings(
    inputs: TabInputs,
    overlay: Overlay | None = None,
    rules: TabRules | None = None,
    computed_at: datetime | None = None,
) -> StandingsSnapshot:
    """Compute a standings snapshot from in-memory inputs.

    Raises:
        DataIntegrityError: a completed round has a pairing without a result.
    """
    snapshot, _ = _compute(inputs, overlay or Overlay(), rules, computed_at)
    return snapshot


def _compute(
    inputs: TabInputs,
    overlay: Overlay,
    rules: TabRules | None,
    computed_at: datetime | None,
) -> tuple[StandingsSnapshot, HeadToHeadIndex]:
    check_integrity(inputs, overlay)
    outcomes = derive_outcomes(inputs, overlay, rules)
    h2h = HeadToHeadIndex.build(outcomes)
    rows = rank_standings(_tally(inputs, outcomes, overlay), h2h, overlay)
    snapshot = StandingsSnapshot(
        tournament_id=inputs.tournament_id,
        computed_at=computed_at or utcnow(),
        rows=tuple(rows),
        conflicts=overlay.conflicts,
    )
    return snapshot, h2h


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _persist(
    conn: psycopg.Connection, snapshot: StandingsSnapshot, h2h: HeadToHeadIndex
) -> None:
    tid = snapshot.tournament_id
    conn.execute(
        """
        INSERT INTO standings_snapshot (tournament_id, version, computed_at, rows, conflicts)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (
            tid,
            snapshot.version,
            snapshot.computed_at,
            Jsonb([r.to_dict() for r in snapshot.rows]),
            Jsonb(list(snapshot.conflicts)),
        ),
    )
    conn.execute("DELETE FROM computed_standing WHERE tournament_id = %s", (tid,))
    for r in snapshot.rows:
        conn.execute(
            """
            INSERT INTO computed_standing
                (tournament_id, registration_id, rank, wins, losses, byes, forfeits,
                 rounds_completed, total_speaks, avg_speaks, decided_by,
                 tiebreak_trace, disqualified, sources, computed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tid, r.registration_id, r.rank, r.wins, r.losses, r.byes, r.forfeits,
                r.rounds_completed, r.total_speaks, r.avg_speaks, r.decided_by,
                list(r.tiebreak_trace), r.disqualified, list(r.sources),
                snapshot.computed_at,
            ),
        )
    conn.execute("DELETE FROM head_to_head WHERE tournament_id = %s", (tid,))
    for row in h2h.to_rows():
        conn.execute(
            """
            INSERT INTO head_to_head
                (tournament_id, registration_a, registration_b, meetings,
                 a_wins, b_wins, outcome)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tid, row["registration_a"], row["registration_b"], row["meetings"],
                row["a_wins"], row["b_wins"], row["outcome"],
            ),
        )


def run_standings(
    conn: psycopg.Connection,
    tournament_id: str,
    rules: TabRules | None = None,
    computed_at: datetime | None = None,
) -> StandingsSnapshot:
    """Recompute and republish standings for one tournament.

    Safe to run redundantly; concurrent runs for the same tournament are
    serialized by an advisory lock.  Caller manages the transaction.
    """
    advisory_xact_lock(conn, f"standings:{tournament_id}")
    inputs = load_tab_inputs(conn, tournament_id)
    overlay = build_overlay(load_audit_entries(conn, tournament_id))
    snapshot, h2h = _compute(inputs, overlay, rules, computed_at)
    _persist(conn, snapshot, h2h)
    if snapshot.conflicts:
        log.warning(
            "Standings for %s use overrides flagged as conflicting: %s",
            tournament_id, list(snapshot.conflicts),
        )
    return snapshot


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_standings_report(
    snapshot: StandingsSnapshot, names: dict[str, str] | None = None
) -> str:
    names = names or {}
    lines = [
        "=" * 78,
        f"Standings: tournament {snapshot.tournament_id}",
        f"computed_at={snapshot.computed_at.isoformat()} version={snapshot.version[:12]}",
        "=" * 78,
        f"{'rank':>4}  {'team':<28} {'W-L':>6} {'speaks':>7} {'avg':>6}  decided_by",
    ]
    for r in snapshot.rows:
        label = names.get(r.registration_id, r.registration_id)
        if r.disqualified:
            label = f"{label} [DQ]"
        lines.append(
            f"{r.rank:>4}  {label[:28]:<28} {f'{r.wins}-{r.losses}':>6} "
            f"{str(r.total_speaks):>7} {str(r.avg_speaks):>6}  {r.decided_by or ''}"
        )
    if snapshot.conflicts:
        lines.append(f"Conflicting overrides to review: {list(snapshot.conflicts)}")
    lines.append("=" * 78)
    return "\n".join(lines)
