"""debate_tab.results_ingest

Ballot ingestion pipeline (--mode results_ingest / close_round).

Reads a CSV of per-pairing ballots and records one immutable RoundResult
plus one SpeakerResult per scored side.  A ballot that repeats an already
recorded result is counted as unchanged; a ballot that disagrees with it is
rejected, because corrections go through the override ledger.

Input CSV format (comma-delimited, header row required):
    pairing_id,winner_side,forfeit,dq,aff_points,neg_points

Required columns: pairing_id, winner_side
Optional:         forfeit, dq (flags describing the losing side),
                  aff_points, neg_points (speaker points, one decimal place)

winner_side may be blank only for a double loss (forfeit or dq set).
Bye pairings (no negative side) take a blank or 'aff' winner and no points.

Processing order: caller drives; SAVEPOINT per row for per-row isolation.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple

import psycopg

from debate_tab.normalize import parse_bool, parse_speaker_points, tenths_to_decimal, trim
from debate_tab.shared import DataIntegrityError, RejectWriter, ResultValidationError
from debate_tab.tab_models import SIDES, Pairing, RoundResult
from debate_tab.tab_rules import TabRules, default_rules

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_REQUIRED_COLS = frozenset({"pairing_id", "winner_side"})


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class IngestCounters:
    rows_read: int = 0
    results_inserted: int = 0
    speaker_results_inserted: int = 0
    rows_unchanged: int = 0
    rows_rejected: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "results_inserted": self.results_inserted,
            "speaker_results_inserted": self.speaker_results_inserted,
            "rows_unchanged": self.rows_unchanged,
            "rows_rejected": self.rows_rejected,
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


class SpeakerScore(NamedTuple):
    registration_id: str
    side: str
    points_tenths: int


# ---------------------------------------------------------------------------
# Pure normalization
# ---------------------------------------------------------------------------

def normalize_ballot(
    raw: dict[str, str],
    pairing: Pairing,
    rules: TabRules | None = None,
    row_number: int | None = None,
) -> tuple[RoundResult, list[SpeakerScore]]:
    """Turn one raw ballot row into a RoundResult and its speaker scores.

    Raises:
        ResultValidationError: with the row number and pairing id.
    """
    rules = rules or default_rules()
    where = f"row {row_number} pairing {pairing.id}" if row_number is not None else f"pairing {pairing.id}"

    winner = (trim(raw.get("winner_side")) or "").lower() or None
    forfeit = parse_bool(raw.get("forfeit"))
    dq = parse_bool(raw.get("dq"))
    if forfeit is None or dq is None:
        raise ResultValidationError(
            f"{where}: unreadable forfeit/dq flag "
            f"(forfeit={raw.get('forfeit')!r}, dq={raw.get('dq')!r})"
        )
    if winner is not None and winner not in SIDES:
        raise ResultValidationError(f"{where}: winner_side {winner!r} is not aff/neg")

    if pairing.is_bye:
        if winner not in (None, "aff") or forfeit or dq:
            raise ResultValidationError(f"{where}: bye pairing only accepts an 'aff' win")
        if trim(raw.get("aff_points")) or trim(raw.get("neg_points")):
            raise ResultValidationError(f"{where}: bye pairing carries no speaker points")
        return RoundResult(pairing_id=pairing.id, winner_side="aff", bye=True), []

    if forfeit and dq:
        raise ResultValidationError(f"{where}: forfeit and dq are mutually exclusive")
    if winner is None and not (forfeit or dq):
        raise ResultValidationError(f"{where}: winner_side is required")

    scores = []
    for side in SIDES:
        raw_points = trim(raw.get(f"{side}_points"))
        if raw_points is None:
            continue
        points = parse_speaker_points(raw_points)
        if points is None:
            raise ResultValidationError(
                f"{where}: {side}_points {raw_points!r} is not a score in tenths"
            )
        if not (rules.speaker_points_min_tenths <= points <= rules.speaker_points_max_tenths):
            raise ResultValidationError(
                f"{where}: {side}_points {tenths_to_decimal(points)} outside "
                f"[{rules.speaker_points_min}, {rules.speaker_points_max}]"
            )
        scores.append(SpeakerScore(pairing.registration_for(side), side, points))

    return RoundResult(pairing_id=pairing.id, winner_side=winner, forfeit=forfeit, dq=dq), scores


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def _fetch_pairing(
    conn: psycopg.Connection, tournament_id: str, pairing_id: str
) -> Pairing | None:
    row = conn.execute(
        """
        SELECT p.id, p.round_id, p.aff_registration_id, p.neg_registration_id, p.status
        FROM pairing p
        JOIN tab_round r ON r.id = p.round_id
        WHERE p.id::text = %s AND r.tournament_id = %s
        """,
        (pairing_id, tournament_id),
    ).fetchone()
    if row is None:
        return None
    return Pairing(
        id=str(row[0]),
        round_id=str(row[1]),
        aff_registration_id=str(row[2]),
        neg_registration_id=str(row[3]) if row[3] is not None else None,
        status=row[4],
    )


def _existing_result(
    conn: psycopg.Connection, pairing_id: str
) -> tuple[RoundResult, list[SpeakerScore]] | None:
    row = conn.execute(
        "SELECT winner_side, forfeit, dq, bye FROM round_result WHERE pairing_id = %s",
        (pairing_id,),
    ).fetchone()
    if row is None:
        return None
    scores = [
        SpeakerScore(str(r[0]), r[1], int(r[2]))
        for r in conn.execute(
            """
            SELECT registration_id, side, points_tenths
            FROM speaker_result WHERE pairing_id = %s
            ORDER BY side
            """,
            (pairing_id,),
        ).fetchall()
    ]
    return RoundResult(pairing_id, row[0], row[1], row[2], row[3]), scores


def insert_result(
    conn: psycopg.Connection,
    pairing: Pairing,
    result: RoundResult,
    scores: list[SpeakerScore],
) -> None:
    conn.execute(
        """
        INSERT INTO round_result (pairing_id, winner_side, forfeit, dq, bye)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (pairing.id, result.winner_side, result.forfeit, result.dq, result.bye),
    )
    for s in scores:
        conn.execute(
            """
            INSERT INTO speaker_result (pairing_id, registration_id, side, points_tenths)
            VALUES (%s, %s, %s, %s)
            """,
            (pairing.id, s.registration_id, s.side, s.points_tenths),
        )
    winner_id = pairing.registration_for(result.winner_side) if result.winner_side else None
    conn.execute(
        "UPDATE pairing SET status = 'completed', winner_id = %s WHERE id = %s",
        (winner_id, pairing.id),
    )


# ---------------------------------------------------------------------------
# Top-level runners
# ---------------------------------------------------------------------------

def run_results_ingest(
    conn: psycopg.Connection,
    tournament_id: str,
    ballots_path: Path | str,
    rules: TabRules | None = None,
    rejects: RejectWriter | None = None,
) -> IngestCounters:
    """Record ballots from a CSV file.

    Args:
        conn: Open psycopg connection (caller manages transaction).
        tournament_id: Every pairing_id must belong to this tournament.
        ballots_path: CSV with the columns described in the module docstring.
        rules: Speaker-point bounds; defaults to the bundled rules.
        rejects: Optional writer receiving every rejected row with its reason.
    """
    rules = rules or default_rules()
    ctrs = IngestCounters()

    path = Path(ballots_path)
    with path.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        if reader.fieldnames is None:
            raise ValueError(f"ballots CSV is empty or has no header: {path}")
        fieldnames = [f.strip() for f in reader.fieldnames]
        missing = _REQUIRED_COLS - set(fieldnames)
        if missing:
            raise ValueError(f"ballots CSV missing required columns: {sorted(missing)}")
        reader.fieldnames = fieldnames

        # Header is row 1.
        for row_number, raw in enumerate(reader, start=2):
            ctrs.rows_read += 1
            sp = f"ballot_{row_number}"
            conn.execute(f"SAVEPOINT {sp}")
            try:
                pairing_id = trim(raw.get("pairing_id"))
                if pairing_id is None:
                    raise ResultValidationError(f"row {row_number}: pairing_id is required")
                pairing = _fetch_pairing(conn, tournament_id, pairing_id)
                if pairing is None:
                    raise ResultValidationError(
                        f"row {row_number}: pairing {pairing_id} not found in "
                        f"tournament {tournament_id}"
                    )
                result, scores = normalize_ballot(raw, pairing, rules, row_number)

                existing = _existing_result(conn, pairing.id)
                if existing is not None:
                    if existing == (result, sorted(scores, key=lambda s: s.side)):
                        ctrs.rows_unchanged += 1
                        conn.execute(f"RELEASE SAVEPOINT {sp}")
                        continue
                    raise ResultValidationError(
                        f"row {row_number}: pairing {pairing.id} already has a different "
                        "recorded result; use an override (result_correction / score_override)"
                    )

                insert_result(conn, pairing, result, scores)
                ctrs.results_inserted += 1
                ctrs.speaker_results_inserted += len(scores)
                conn.execute(f"RELEASE SAVEPOINT {sp}")
            except ResultValidationError as exc:
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
                ctrs.rows_rejected += 1
                ctrs.warnings.append(str(exc))
                if rejects is not None:
                    rejects.write(raw, str(exc))
            except psycopg.Error as exc:
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
                ctrs.db_errors += 1
                ctrs.warnings.append(f"row {row_number}: db error: {exc}")
    return ctrs


def close_round(conn: psycopg.Connection, tournament_id: str, sequence_number: int) -> str:
    """Mark a round completed once every two-sided pairing has a result.

    Returns the round id.

    Raises:
        ValueError: no such round.
        DataIntegrityError: pairings in the round still lack a result.
    """
    row = conn.execute(
        "SELECT id FROM tab_round WHERE tournament_id = %s AND sequence_number = %s",
        (tournament_id, sequence_number),
    ).fetchone()
    if row is None:
        raise ValueError(f"round {sequence_number} not found in tournament {tournament_id}")
    round_id = str(row[0])
    missing = [
        str(r[0])
        for r in conn.execute(
            """
            SELECT p.id FROM pairing p
            LEFT JOIN round_result rr ON rr.pairing_id = p.id
            WHERE p.round_id = %s
              AND p.neg_registration_id IS NOT NULL
              AND rr.pairing_id IS NULL
            ORDER BY p.id
            """,
            (round_id,),
        ).fetchall()
    ]
    if missing:
        raise DataIntegrityError(missing, f"round {sequence_number} cannot close")
    conn.execute("UPDATE tab_round SET status = 'completed' WHERE id = %s", (round_id,))
    return round_id


def build_ingest_report(ctrs: IngestCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"Results ingest{' (DRY RUN)' if dry_run else ''}",
        "=" * 60,
        f"rows read               : {ctrs.rows_read}",
        f"results inserted        : {ctrs.results_inserted}",
        f"speaker results inserted: {ctrs.speaker_results_inserted}",
        f"rows unchanged          : {ctrs.rows_unchanged}",
        f"rows rejected           : {ctrs.rows_rejected}",
        f"db errors               : {ctrs.db_errors}",
    ]
    for w in ctrs.warnings[:20]:
        lines.append(f"  ! {w}")
    lines.append("=" * 60)
    return "\n".join(lines)
