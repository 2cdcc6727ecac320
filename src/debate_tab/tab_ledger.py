"""debate_tab.tab_ledger

Append-only Override & Audit Ledger (--mode override / audit_history).

Every manual intervention is one row in tab_audit_entry carrying the
pre- and post-state of the entity it touches.  The ledger is the only store
of overrides: the standings calculator reads the latest entry per target
(the "overlay") and never sees a mutated base row.

Actions and their targets:
    score_override, speaker_points_edit  -> speaker_result  (entity_id = speaker result id)
    forfeit, result_correction           -> round_result    (entity_id = pairing id)
    dq, bye_assigned                     -> registration    (entity_id = registration id)
    manual_rank                          -> computed_standing (entity_id = registration id)
    tiebreaker_override                  -> head_to_head    (entity_id = "<a>:<b>", sorted)

Snapshots (old_value / new_value) are a tagged union keyed by entity_type,
each variant with a fixed key set; parse_snapshot rejects anything else.

Concurrency:
  Writers on the same overlay key are serialized with a transaction-scoped
  advisory lock.  A caller passing based_on_entry_id that is no longer the
  latest entry for that key still gets its entry written, with
  conflicts_with_entry_id pointing at the entry it raced.  The latest entry
  by (created_at, id) is authoritative.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Union

import psycopg
from psycopg.types.json import Jsonb

from debate_tab.head_to_head import pair_key
from debate_tab.normalize import tenths_to_decimal
from debate_tab.shared import OverrideValidationError, advisory_xact_lock
from debate_tab.tab_models import SIDES, other_side
from debate_tab.tab_rules import TabRules

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACTION_ENTITY_TYPES = {
    "score_override": "speaker_result",
    "speaker_points_edit": "speaker_result",
    "forfeit": "round_result",
    "result_correction": "round_result",
    "dq": "registration",
    "bye_assigned": "registration",
    "manual_rank": "computed_standing",
    "tiebreaker_override": "head_to_head",
}
VALID_ACTIONS = frozenset(ACTION_ENTITY_TYPES)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RoundResultSnapshot:
    entity_type: ClassVar[str] = "round_result"
    pairing_id: str
    winner_side: str | None
    forfeit: bool
    dq: bool
    bye: bool

    def __post_init__(self) -> None:
        if self.winner_side is not None and self.winner_side not in SIDES:
            raise OverrideValidationError(f"winner_side {self.winner_side!r} is not aff/neg")


@dataclass(frozen=True)
class SpeakerResultSnapshot:
    entity_type: ClassVar[str] = "speaker_result"
    speaker_result_id: str
    pairing_id: str
    registration_id: str
    side: str
    points_tenths: int

    def __post_init__(self) -> None:
        if not isinstance(self.points_tenths, int) or isinstance(self.points_tenths, bool):
            raise OverrideValidationError(
                f"points_tenths must be an integer (got {self.points_tenths!r})"
            )


@dataclass(frozen=True)
class RegistrationSnapshot:
    """DQ entries set ``disqualified``; bye entries set the two bye fields."""

    entity_type: ClassVar[str] = "registration"
    registration_id: str
    disqualified: bool | None
    bye_round_id: str | None
    bye_granted: bool | None


@dataclass(frozen=True)
class ComputedStandingSnapshot:
    entity_type: ClassVar[str] = "computed_standing"
    registration_id: str
    manual_rank: int | None


@dataclass(frozen=True)
class HeadToHeadSnapshot:
    entity_type: ClassVar[str] = "head_to_head"
    registration_a: str
    registration_b: str
    higher_registration_id: str | None


Snapshot = Union[
    RoundResultSnapshot,
    SpeakerResultSnapshot,
    RegistrationSnapshot,
    ComputedStandingSnapshot,
    HeadToHeadSnapshot,
]

SNAPSHOT_TYPES: dict[str, type] = {
    cls.entity_type: cls
    for cls in (
        RoundResultSnapshot,
        SpeakerResultSnapshot,
        RegistrationSnapshot,
        ComputedStandingSnapshot,
        HeadToHeadSnapshot,
    )
}


def snapshot_to_dict(snapshot: Snapshot | None) -> dict[str, Any] | None:
    return asdict(snapshot) if snapshot is not None else None


def parse_snapshot(entity_type: str, data: dict[str, Any] | None) -> Snapshot | None:
    """Rebuild a typed snapshot from its stored JSON form."""
    if data is None:
        return None
    cls = SNAPSHOT_TYPES.get(entity_type)
    if cls is None:
        raise OverrideValidationError(f"no snapshot schema for entity_type {entity_type!r}")
    if not isinstance(data, dict):
        raise OverrideValidationError(f"{entity_type} snapshot must be a mapping")
    expected = {f.name for f in fields(cls)}
    if set(data) != expected:
        raise OverrideValidationError(
            f"{entity_type} snapshot keys {sorted(data)} do not match {sorted(expected)}"
        )
    return cls(**data)


def overlay_key(snapshot: Snapshot) -> str:
    """Key of the authoritative value a snapshot sets; last write per key wins."""
    if isinstance(snapshot, RoundResultSnapshot):
        return f"round_result:{snapshot.pairing_id}"
    if isinstance(snapshot, SpeakerResultSnapshot):
        return f"speaker:{snapshot.speaker_result_id}"
    if isinstance(snapshot, RegistrationSnapshot):
        if snapshot.bye_round_id is not None:
            return f"bye:{snapshot.registration_id}:{snapshot.bye_round_id}"
        return f"dq:{snapshot.registration_id}"
    if isinstance(snapshot, ComputedStandingSnapshot):
        return f"manual_rank:{snapshot.registration_id}"
    if isinstance(snapshot, HeadToHeadSnapshot):
        return f"tiebreaker:{snapshot.registration_a}:{snapshot.registration_b}"
    raise OverrideValidationError(f"unknown snapshot type {type(snapshot).__name__}")


# ---------------------------------------------------------------------------
# Entries + requests
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TabAuditEntry:
    id: int
    tournament_id: str
    action: str
    entity_type: str
    entity_id: str
    old_value: Snapshot | None
    new_value: Snapshot
    reason: str
    user_id: str
    created_at: datetime
    based_on_entry_id: int | None = None
    conflicts_with_entry_id: int | None = None

    @property
    def overlay_key(self) -> str:
        return overlay_key(self.new_value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_value": snapshot_to_dict(self.old_value),
            "new_value": snapshot_to_dict(self.new_value),
            "reason": self.reason,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "based_on_entry_id": self.based_on_entry_id,
            "conflicts_with_entry_id": self.conflicts_with_entry_id,
        }


@dataclass(frozen=True)
class OverrideRequest:
    """One operator intervention.  Which fields are required depends on action."""

    tournament_id: str
    action: str
    reason: str
    user_id: str
    pairing_id: str | None = None
    speaker_result_id: str | None = None
    registration_id: str | None = None
    round_id: str | None = None
    points_tenths: int | None = None
    forfeiting_side: str | None = None
    winner_side: str | None = None
    target_rank: int | None = None
    higher_registration_id: str | None = None
    lower_registration_id: str | None = None
    disqualified: bool = True
    granted: bool = True
    based_on_entry_id: int | None = None


def _require(value: Any, action: str, name: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise OverrideValidationError(f"{action}: '{name}' is required")
    return value


def resolve_target(req: OverrideRequest) -> tuple[str, str, str]:
    """Return (entity_type, entity_id, overlay_key) for a request.

    Raises OverrideValidationError for unknown actions or missing
    identifying fields, reason or user.
    """
    if req.action not in VALID_ACTIONS:
        raise OverrideValidationError(
            f"unknown action {req.action!r}; expected one of {sorted(VALID_ACTIONS)}"
        )
    _require(req.reason, req.action, "reason")
    _require(req.user_id, req.action, "user_id")
    entity_type = ACTION_ENTITY_TYPES[req.action]

    if entity_type == "speaker_result":
        sid = _require(req.speaker_result_id, req.action, "speaker_result_id")
        return entity_type, sid, f"speaker:{sid}"
    if entity_type == "round_result":
        pid = _require(req.pairing_id, req.action, "pairing_id")
        return entity_type, pid, f"round_result:{pid}"
    if req.action == "dq":
        rid = _require(req.registration_id, req.action, "registration_id")
        return entity_type, rid, f"dq:{rid}"
    if req.action == "bye_assigned":
        rid = _require(req.registration_id, req.action, "registration_id")
        round_id = _require(req.round_id, req.action, "round_id")
        return entity_type, rid, f"bye:{rid}:{round_id}"
    if req.action == "manual_rank":
        rid = _require(req.registration_id, req.action, "registration_id")
        return entity_type, rid, f"manual_rank:{rid}"

    higher = _require(req.higher_registration_id, req.action, "higher_registration_id")
    lower = _require(req.lower_registration_id, req.action, "lower_registration_id")
    if higher == lower:
        raise OverrideValidationError(
            f"{req.action}: higher and lower registration must differ (got {higher})"
        )
    a, b = pair_key(higher, lower)
    return entity_type, f"{a}:{b}", f"tiebreaker:{a}:{b}"


def build_new_value(
    req: OverrideRequest,
    current: Snapshot | None,
    rules: TabRules | None = None,
) -> Snapshot:
    """Pure: the authoritative value after applying ``req`` on top of ``current``."""
    entity_type, entity_id, _ = resolve_target(req)
    action = req.action

    if entity_type == "speaker_result":
        if not isinstance(current, SpeakerResultSnapshot):
            raise OverrideValidationError(
                f"{action}: speaker result {entity_id} not found"
            )
        points = _require(req.points_tenths, action, "points")
        if rules is not None and not (
            rules.speaker_points_min_tenths <= points <= rules.speaker_points_max_tenths
        ):
            raise OverrideValidationError(
                f"{action}: points {tenths_to_decimal(points)} outside "
                f"[{rules.speaker_points_min}, {rules.speaker_points_max}] "
                f"for speaker result {entity_id}"
            )
        return SpeakerResultSnapshot(
            speaker_result_id=current.speaker_result_id,
            pairing_id=current.pairing_id,
            registration_id=current.registration_id,
            side=current.side,
            points_tenths=points,
        )

    if action == "forfeit":
        side = _require(req.forfeiting_side, action, "forfeiting_side")
        if side not in SIDES:
            raise OverrideValidationError(f"forfeit: forfeiting_side {side!r} is not aff/neg")
        return RoundResultSnapshot(
            pairing_id=entity_id,
            winner_side=other_side(side),
            forfeit=True,
            dq=False,
            bye=False,
        )

    if action == "result_correction":
        winner = _require(req.winner_side, action, "winner_side")
        if winner not in SIDES:
            raise OverrideValidationError(
                f"result_correction: winner_side {winner!r} is not aff/neg"
            )
        # A no-show is entered as a forfeit; a correction needs a ballot.
        if current is None:
            raise OverrideValidationError(
                f"result_correction: pairing {entity_id} has no recorded result to "
                "correct; ingest the ballot or record a forfeit"
            )
        return RoundResultSnapshot(
            pairing_id=entity_id, winner_side=winner, forfeit=False, dq=False, bye=False
        )

    if action == "dq":
        return RegistrationSnapshot(
            registration_id=entity_id,
            disqualified=bool(req.disqualified),
            bye_round_id=None,
            bye_granted=None,
        )

    if action == "bye_assigned":
        return RegistrationSnapshot(
            registration_id=entity_id,
            disqualified=None,
            bye_round_id=req.round_id,
            bye_granted=bool(req.granted),
        )

    if action == "manual_rank":
        if req.target_rank is not None and req.target_rank < 1:
            raise OverrideValidationError(
                f"manual_rank: target_rank must be >= 1 (got {req.target_rank}) "
                f"for registration {entity_id}"
            )
        return ComputedStandingSnapshot(registration_id=entity_id, manual_rank=req.target_rank)

    a, b = entity_id.split(":", 1)
    return HeadToHeadSnapshot(
        registration_a=a,
        registration_b=b,
        higher_registration_id=req.higher_registration_id,
    )


# ---------------------------------------------------------------------------
# Overlay
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Overlay:
    """Latest ledger value per overlay key, split by family."""

    round_results: dict[str, RoundResultSnapshot] = field(default_factory=dict)
    speaker_points: dict[str, int] = field(default_factory=dict)
    disqualified: dict[str, bool] = field(default_factory=dict)
    byes: dict[tuple[str, str], bool] = field(default_factory=dict)
    manual_ranks: dict[str, int | None] = field(default_factory=dict)
    tiebreakers: dict[tuple[str, str], str | None] = field(default_factory=dict)
    entry_ids: dict[str, int] = field(default_factory=dict)
    conflicts: tuple[int, ...] = ()

    def disqualified_ids(self) -> frozenset[str]:
        return frozenset(r for r, flag in self.disqualified.items() if flag)

    def granted_byes(self) -> list[tuple[str, str]]:
        return sorted(k for k, granted in self.byes.items() if granted)

    def source(self, key: str) -> str | None:
        entry_id = self.entry_ids.get(key)
        return f"audit:{entry_id}" if entry_id is not None else None

    def tiebreak_higher(self, a: str, b: str) -> str | None:
        return self.tiebreakers.get(pair_key(a, b))


def build_overlay(entries: list[TabAuditEntry]) -> Overlay:
    """Collapse ledger entries to the authoritative value per overlay key.

    Entries are applied in (created_at, id) order so the last write wins.
    """
    round_results: dict[str, RoundResultSnapshot] = {}
    speaker_points: dict[str, int] = {}
    disqualified: dict[str, bool] = {}
    byes: dict[tuple[str, str], bool] = {}
    manual_ranks: dict[str, int | None] = {}
    tiebreakers: dict[tuple[str, str], str | None] = {}
    entry_ids: dict[str, int] = {}
    conflicts = []

    for entry in sorted(entries, key=lambda e: (e.created_at, e.id)):
        snap = entry.new_value
        entry_ids[overlay_key(snap)] = entry.id
        if entry.conflicts_with_entry_id is not None:
            conflicts.append(entry.id)
        if isinstance(snap, RoundResultSnapshot):
            round_results[snap.pairing_id] = snap
        elif isinstance(snap, SpeakerResultSnapshot):
            speaker_points[snap.speaker_result_id] = snap.points_tenths
        elif isinstance(snap, RegistrationSnapshot):
            if snap.bye_round_id is not None:
                byes[(snap.registration_id, snap.bye_round_id)] = bool(snap.bye_granted)
            else:
                disqualified[snap.registration_id] = bool(snap.disqualified)
        elif isinstance(snap, ComputedStandingSnapshot):
            manual_ranks[snap.registration_id] = snap.manual_rank
        elif isinstance(snap, HeadToHeadSnapshot):
            tiebreakers[(snap.registration_a, snap.registration_b)] = snap.higher_registration_id

    return Overlay(
        round_results=round_results,
        speaker_points=speaker_points,
        disqualified=disqualified,
        byes=byes,
        manual_ranks=manual_ranks,
        tiebreakers=tiebreakers,
        entry_ids=entry_ids,
        conflicts=tuple(sorted(conflicts)),
    )


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

_ENTRY_COLUMNS = """
    id, tournament_id, action, entity_type, entity_id, old_value, new_value,
    reason, user_id, created_at, based_on_entry_id, conflicts_with_entry_id
"""


def _row_to_entry(row: tuple) -> TabAuditEntry:
    entity_type = row[3]
    return TabAuditEntry(
        id=int(row[0]),
        tournament_id=str(row[1]),
        action=row[2],
        entity_type=entity_type,
        entity_id=row[4],
        old_value=parse_snapshot(entity_type, row[5]),
        new_value=parse_snapshot(entity_type, row[6]),
        reason=row[7],
        user_id=row[8],
        created_at=row[9],
        based_on_entry_id=row[10],
        conflicts_with_entry_id=row[11],
    )


def _latest_entry_for_key(
    conn: psycopg.Connection, tournament_id: str, key: str
) -> TabAuditEntry | None:
    row = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS}
        FROM tab_audit_entry
        WHERE tournament_id = %s AND overlay_key = %s
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (tournament_id, key),
    ).fetchone()
    return _row_to_entry(row) if row else None


def _require_registration(conn: psycopg.Connection, tournament_id: str, rid: str) -> None:
    row = conn.execute(
        "SELECT 1 FROM registration WHERE id::text = %s AND tournament_id = %s",
        (rid, tournament_id),
    ).fetchone()
    if row is None:
        raise OverrideValidationError(
            f"registration {rid} not found in tournament {tournament_id}"
        )


def _load_base_snapshot(
    conn: psycopg.Connection, req: OverrideRequest, entity_type: str, entity_id: str
) -> Snapshot | None:
    """Validate the target exists and return its pre-ledger value."""
    tid = req.tournament_id
    if entity_type == "speaker_result":
        row = conn.execute(
            """
            SELECT sr.id, sr.pairing_id, sr.registration_id, sr.side, sr.points_tenths
            FROM speaker_result sr
            JOIN pairing p ON p.id = sr.pairing_id
            JOIN tab_round r ON r.id = p.round_id
            WHERE sr.id::text = %s AND r.tournament_id = %s
            """,
            (entity_id, tid),
        ).fetchone()
        if row is None:
            raise OverrideValidationError(
                f"{req.action}: speaker result {entity_id} not found in tournament {tid}"
            )
        return SpeakerResultSnapshot(
            speaker_result_id=str(row[0]),
            pairing_id=str(row[1]),
            registration_id=str(row[2]),
            side=row[3],
            points_tenths=int(row[4]),
        )

    if entity_type == "round_result":
        pairing = conn.execute(
            """
            SELECT p.neg_registration_id
            FROM pairing p JOIN tab_round r ON r.id = p.round_id
            WHERE p.id::text = %s AND r.tournament_id = %s
            """,
            (entity_id, tid),
        ).fetchone()
        if pairing is None:
            raise OverrideValidationError(
                f"{req.action}: pairing {entity_id} not found in tournament {tid}"
            )
        if pairing[0] is None:
            raise OverrideValidationError(
                f"{req.action}: pairing {entity_id} is a bye and has no opponent"
            )
        row = conn.execute(
            "SELECT winner_side, forfeit, dq, bye FROM round_result WHERE pairing_id::text = %s",
            (entity_id,),
        ).fetchone()
        if row is None:
            return None
        return RoundResultSnapshot(
            pairing_id=entity_id, winner_side=row[0], forfeit=row[1], dq=row[2], bye=row[3]
        )

    if req.action == "dq":
        _require_registration(conn, tid, entity_id)
        return RegistrationSnapshot(
            registration_id=entity_id, disqualified=False, bye_round_id=None, bye_granted=None
        )

    if req.action == "bye_assigned":
        _require_registration(conn, tid, entity_id)
        rnd = conn.execute(
            "SELECT 1 FROM tab_round WHERE id::text = %s AND tournament_id = %s",
            (req.round_id, tid),
        ).fetchone()
        if rnd is None:
            raise OverrideValidationError(
                f"bye_assigned: round {req.round_id} not found in tournament {tid}"
            )
        if req.granted:
            paired = conn.execute(
                """
                SELECT id FROM pairing
                WHERE round_id::text = %s
                  AND (aff_registration_id::text = %s OR neg_registration_id::text = %s)
                LIMIT 1
                """,
                (req.round_id, entity_id, entity_id),
            ).fetchone()
            if paired is not None:
                raise OverrideValidationError(
                    f"bye_assigned: registration {entity_id} is already paired in "
                    f"round {req.round_id} (pairing {paired[0]})"
                )
        return RegistrationSnapshot(
            registration_id=entity_id,
            disqualified=None,
            bye_round_id=req.round_id,
            bye_granted=False,
        )

    if req.action == "manual_rank":
        _require_registration(conn, tid, entity_id)
        return ComputedStandingSnapshot(registration_id=entity_id, manual_rank=None)

    a, b = entity_id.split(":", 1)
    _require_registration(conn, tid, a)
    _require_registration(conn, tid, b)
    return HeadToHeadSnapshot(registration_a=a, registration_b=b, higher_registration_id=None)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def record_override(
    conn: psycopg.Connection,
    req: OverrideRequest,
    rules: TabRules | None = None,
) -> TabAuditEntry:
    """Append one audit entry for ``req`` and return it.

    Caller manages the transaction; the per-target advisory lock is held
    until it commits or rolls back.

    Raises:
        OverrideValidationError: unknown action, missing field, missing target.
    """
    entity_type, entity_id, key = resolve_target(req)
    advisory_xact_lock(conn, f"tab_override:{req.tournament_id}:{key}")

    base = _load_base_snapshot(conn, req, entity_type, entity_id)
    latest = _latest_entry_for_key(conn, req.tournament_id, key)
    current = latest.new_value if latest is not None else base
    new_value = build_new_value(req, current, rules)

    conflicts_with = None
    if req.based_on_entry_id is not None:
        if latest is None:
            raise OverrideValidationError(
                f"{req.action}: based_on_entry_id {req.based_on_entry_id} does not "
                f"touch {entity_type} {entity_id}"
            )
        if latest.id != req.based_on_entry_id:
            conflicts_with = latest.id
            log.warning(
                "Override conflict on %s %s: based on entry %s but latest is %s",
                entity_type, entity_id, req.based_on_entry_id, latest.id,
            )

    row = conn.execute(
        f"""
        INSERT INTO tab_audit_entry
            (tournament_id, action, entity_type, entity_id, overlay_key,
             old_value, new_value, reason, user_id,
             based_on_entry_id, conflicts_with_entry_id)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {_ENTRY_COLUMNS}
        """,
        (
            req.tournament_id,
            req.action,
            entity_type,
            entity_id,
            key,
            Jsonb(snapshot_to_dict(current)) if current is not None else None,
            Jsonb(snapshot_to_dict(new_value)),
            req.reason.strip(),
            req.user_id.strip(),
            req.based_on_entry_id,
            conflicts_with,
        ),
    ).fetchone()
    return _row_to_entry(row)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def load_audit_entries(conn: psycopg.Connection, tournament_id: str) -> list[TabAuditEntry]:
    rows = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS}
        FROM tab_audit_entry
        WHERE tournament_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (tournament_id,),
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def entity_history(
    conn: psycopg.Connection, tournament_id: str, entity_type: str, entity_id: str
) -> list[TabAuditEntry]:
    rows = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS}
        FROM tab_audit_entry
        WHERE tournament_id = %s AND entity_type = %s AND entity_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (tournament_id, entity_type, entity_id),
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def standing_history(
    conn: psycopg.Connection, tournament_id: str, registration_id: str
) -> list[TabAuditEntry]:
    """Every entry that can move this registration's standing row."""
    rows = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS}
        FROM tab_audit_entry e
        WHERE e.tournament_id = %(tid)s
          AND (
            (e.entity_type IN ('registration', 'computed_standing')
                AND e.entity_id = %(rid)s)
            OR (e.entity_type = 'speaker_result'
                AND e.new_value ->> 'registration_id' = %(rid)s)
            OR (e.entity_type = 'head_to_head'
                AND %(rid)s IN (e.new_value ->> 'registration_a',
                                e.new_value ->> 'registration_b'))
            OR (e.entity_type = 'round_result'
                AND e.entity_id IN (
                    SELECT p.id::text FROM pairing p
                    WHERE p.aff_registration_id::text = %(rid)s
                       OR p.neg_registration_id::text = %(rid)s))
          )
        ORDER BY e.created_at ASC, e.id ASC
        """,
        {"tid": tournament_id, "rid": registration_id},
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def _describe(snapshot: Snapshot | None) -> str:
    if snapshot is None:
        return "(none)"
    if isinstance(snapshot, SpeakerResultSnapshot):
        return f"{tenths_to_decimal(snapshot.points_tenths)} pts"
    if isinstance(snapshot, RoundResultSnapshot):
        flags = [f for f in ("forfeit", "dq", "bye") if getattr(snapshot, f)]
        winner = snapshot.winner_side or "no winner"
        return winner + (f" [{','.join(flags)}]" if flags else "")
    if isinstance(snapshot, RegistrationSnapshot):
        if snapshot.bye_round_id is not None:
            state = "granted" if snapshot.bye_granted else "not granted"
            return f"bye round {snapshot.bye_round_id} {state}"
        return "disqualified" if snapshot.disqualified else "eligible"
    if isinstance(snapshot, ComputedStandingSnapshot):
        return f"manual rank {snapshot.manual_rank}" if snapshot.manual_rank else "no manual rank"
    higher = snapshot.higher_registration_id
    return f"{higher} ranks higher" if higher else "no decision"


def format_history(entries: list[TabAuditEntry]) -> str:
    """Human-readable audit trail, oldest first."""
    if not entries:
        return "(no audit entries)"
    lines = []
    for e in entries:
        line = (
            f"#{e.id} {e.created_at.isoformat()} {e.action} "
            f"{e.entity_type} {e.entity_id} by {e.user_id}: "
            f"{_describe(e.old_value)} -> {_describe(e.new_value)} "
            f"(reason: {e.reason})"
        )
        if e.conflicts_with_entry_id is not None:
            line += f" [CONFLICT with #{e.conflicts_with_entry_id}]"
        lines.append(line)
    return "\n".join(lines)
