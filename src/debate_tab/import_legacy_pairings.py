"""debate_tab.import_legacy_pairings

Legacy pairing-sheet import (--mode legacy_import).

Reads a two-column sheet produced by an external pairing tool (column A =
affirmative team, column B = negative team), fuzzy-matches each name
against the tournament roster and, once every side is resolved, commits a
new Round plus its Pairings.

Sheet format (.csv or .xlsx, first worksheet):
  - first row is a header and is ignored
  - blank rows are skipped
  - exactly two non-blank cells per data row
  - a negative cell of "BYE" gives the affirmative team a bye

Resolution:
  - exact / good matches are auto-selected
  - low matches are shown but need an operator selection
  - no candidate above the low floor is "no match" and needs a selection
  Operator selections come from a CSV: row_number,side,registration_id

Commit:
  - refuses while any side is unresolved (AmbiguousMatchError)
  - one (tournament, sequence_number) at a time: advisory lock plus the
    UNIQUE constraint on tab_round (DuplicateRoundError)
  - SAVEPOINT per pairing; failures are reported per row, never hidden
  - side counters (aff_count / neg_count) are bumped afterwards; a failed
    counter update is logged and listed but does not undo any pairing
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterator

import openpyxl
import psycopg
from psycopg import errors as pg_errors

from debate_tab.normalize import parse_int, trim
from debate_tab.shared import (
    AmbiguousMatchError,
    DuplicateRoundError,
    MalformedSheetError,
    PartialCommitError,
    advisory_xact_lock,
)
from debate_tab.tab_models import SIDES, Registration
from debate_tab.tab_rules import AUTO_SELECT_BANDS, TabRules, default_rules
from debate_tab.team_matcher import TeamMatch, match_team

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BYE_TOKENS = frozenset({"bye", "(bye)", "-bye-"})
MAX_CANDIDATES = 5

BAND_LABELS = {
    "exact": "Exact",
    "good": "Good",
    "low": "Low",
    "no_match": "No Match",
}

_SELECTION_COLS = frozenset({"row_number", "side", "registration_id"})


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SheetRow:
    row_number: int
    aff_name: str
    neg_name: str | None  # None -> bye


@dataclass(frozen=True)
class SheetReject:
    row_number: int
    values: tuple[str, ...]
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {"row_number": self.row_number, "side": "", "values": " | ".join(self.values)}


def _cell_text(value: Any) -> str | None:
    if value is None:
        return None
    return trim(str(value))


def _iter_raw_rows(path: Path) -> Iterator[tuple[int, list[str | None]]]:
    """Yield (1-based row number, cell texts) from a .csv or .xlsx sheet."""
    if path.suffix.lower() in (".xlsx", ".xlsm"):
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            for idx, values in enumerate(ws.iter_rows(values_only=True), start=1):
                yield idx, [_cell_text(v) for v in values]
        finally:
            wb.close()
        return
    with path.open(newline="", encoding="utf-8-sig") as fh:
        for idx, values in enumerate(csv.reader(fh), start=1):
            yield idx, [_cell_text(v) for v in values]


def read_pairing_sheet(path: Path | str) -> tuple[list[SheetRow], list[SheetReject]]:
    """Parse a legacy pairing sheet into candidate rows and malformed rows."""
    rows: list[SheetRow] = []
    rejects: list[SheetReject] = []
    for row_number, cells in _iter_raw_rows(Path(path)):
        if row_number == 1:
            continue
        while cells and cells[-1] is None:
            cells.pop()
        if not cells:
            continue
        values = tuple(c or "" for c in cells)
        if any(c for c in cells[2:]):
            rejects.append(SheetReject(
                row_number, values, "expected exactly two columns (aff, neg)"
            ))
            continue
        aff = cells[0] if len(cells) > 0 else None
        neg = cells[1] if len(cells) > 1 else None
        if not aff or not neg:
            rejects.append(SheetReject(
                row_number, values, "both aff and neg team names are required"
            ))
            continue
        if aff.lower() in BYE_TOKENS:
            rejects.append(SheetReject(row_number, values, "BYE belongs in the neg column"))
            continue
        rows.append(SheetRow(
            row_number=row_number,
            aff_name=aff,
            neg_name=None if neg.lower() in BYE_TOKENS else neg,
        ))
    return rows, rejects


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SideProposal:
    side: str
    raw_name: str
    candidates: tuple[TeamMatch, ...]
    selected_registration_id: str | None = None
    selection: str | None = None  # "auto" | "operator"

    @property
    def best(self) -> TeamMatch | None:
        return self.candidates[0] if self.candidates else None

    @property
    def band(self) -> str:
        return self.best.band if self.best else "no_match"


@dataclass(frozen=True)
class ProposedPairing:
    row_number: int
    aff: SideProposal
    neg: SideProposal | None

    @property
    def is_bye(self) -> bool:
        return self.neg is None

    def sides(self) -> list[SideProposal]:
        return [self.aff] if self.neg is None else [self.aff, self.neg]


@dataclass(frozen=True)
class ImportProposal:
    tournament_id: str
    pairings: tuple[ProposedPairing, ...]
    rejects: tuple[SheetReject, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        sides = [sp for p in self.pairings for sp in p.sides()]
        return {
            "tournament_id": self.tournament_id,
            "pairings": len(self.pairings),
            "byes": sum(1 for p in self.pairings if p.is_bye),
            "sides_auto_selected": sum(1 for sp in sides if sp.selection == "auto"),
            "sides_operator_selected": sum(1 for sp in sides if sp.selection == "operator"),
            "sides_unresolved": len(unresolved_sides(self)),
            "rows_rejected": len(self.rejects),
            "warnings": [f"row {r.row_number}: {r.reason}" for r in self.rejects][:50],
        }


def _propose_side(
    side: str, name: str, roster: list[Registration], rules: TabRules
) -> SideProposal:
    candidates = tuple(match_team(name, roster, rules)[:MAX_CANDIDATES])
    best = candidates[0] if candidates else None
    if best is not None and best.band in AUTO_SELECT_BANDS:
        return SideProposal(side, name, candidates, best.registration_id, "auto")
    return SideProposal(side, name, candidates)


def propose_round(
    tournament_id: str,
    rows: list[SheetRow],
    roster: list[Registration],
    rules: TabRules | None = None,
    rejects: list[SheetReject] | None = None,
) -> ImportProposal:
    """Best-guess match for every side of every row; pure."""
    rules = rules or default_rules()
    pairings = []
    for row in rows:
        aff = _propose_side("aff", row.aff_name, roster, rules)
        neg = (
            _propose_side("neg", row.neg_name, roster, rules)
            if row.neg_name is not None else None
        )
        pairings.append(ProposedPairing(row.row_number, aff, neg))
    return ImportProposal(tournament_id, tuple(pairings), tuple(rejects or ()))


def read_selections(path: Path | str) -> dict[tuple[int, str], str]:
    """Load operator selections: (row_number, side) -> registration_id."""
    path = Path(path)
    selections: dict[tuple[int, str], str] = {}
    with path.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        if reader.fieldnames is None:
            raise ValueError(f"selections CSV is empty or has no header: {path}")
        missing = _SELECTION_COLS - {f.strip() for f in reader.fieldnames}
        if missing:
            raise ValueError(f"selections CSV missing required columns: {sorted(missing)}")
        for idx, raw in enumerate(reader, start=2):
            raw = {k.strip(): v for k, v in raw.items() if k}
            row_number = parse_int(raw.get("row_number"))
            side = (trim(raw.get("side")) or "").lower()
            reg_id = trim(raw.get("registration_id"))
            if row_number is None or side not in SIDES or reg_id is None:
                raise ValueError(
                    f"selections CSV line {idx}: need row_number, side (aff/neg) and "
                    f"registration_id (got {raw!r})"
                )
            selections[(row_number, side)] = reg_id
    return selections


def apply_selections(
    proposal: ImportProposal,
    selections: dict[tuple[int, str], str],
    roster: list[Registration],
) -> ImportProposal:
    """Return a new proposal with operator choices applied.

    Raises:
        ValueError: a selection names an unknown row, a bye side, or a
            registration that is not on the active roster.
    """
    eligible = {r.id for r in roster if not r.withdrawn}
    by_row = {p.row_number: p for p in proposal.pairings}
    updated = dict(by_row)
    for (row_number, side), reg_id in sorted(selections.items()):
        pairing = updated.get(row_number)
        if pairing is None:
            raise ValueError(f"selection for row {row_number}: row is not in the sheet")
        if reg_id not in eligible:
            raise ValueError(
                f"selection for row {row_number} {side}: registration {reg_id} "
                "is not on the active roster"
            )
        if side == "aff":
            pairing = replace(
                pairing,
                aff=replace(pairing.aff, selected_registration_id=reg_id, selection="operator"),
            )
        else:
            if pairing.neg is None:
                raise ValueError(f"selection for row {row_number} neg: row is a bye")
            pairing = replace(
                pairing,
                neg=replace(pairing.neg, selected_registration_id=reg_id, selection="operator"),
            )
        updated[row_number] = pairing
    return replace(
        proposal,
        pairings=tuple(updated[p.row_number] for p in proposal.pairings),
    )


def unresolved_sides(proposal: ImportProposal) -> list[tuple[int, str, str]]:
    """(row_number, side, detail) for every side that blocks a commit."""
    problems: list[tuple[int, str, str]] = []
    seen: dict[str, int] = {}
    for pairing in proposal.pairings:
        for sp in pairing.sides():
            reg_id = sp.selected_registration_id
            if reg_id is None:
                problems.append((pairing.row_number, sp.side, f"{sp.raw_name} ({sp.band})"))
                continue
            if reg_id in seen:
                problems.append((
                    pairing.row_number,
                    sp.side,
                    f"{sp.raw_name}: registration {reg_id} already used in row {seen[reg_id]}",
                ))
                continue
            seen[reg_id] = pairing.row_number
    return problems


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

@dataclass
class RowStatus:
    row_number: int
    status: str  # "committed" | "failed"
    pairing_id: str | None = None
    error: str | None = None


@dataclass
class CommitReport:
    tournament_id: str
    sequence_number: int
    round_id: str
    rows: list[RowStatus] = field(default_factory=list)
    counter_failures: list[str] = field(default_factory=list)

    @property
    def fully_committed(self) -> bool:
        return all(r.status == "committed" for r in self.rows)

    @property
    def failed_rows(self) -> list[RowStatus]:
        return [r for r in self.rows if r.status != "committed"]

    def raise_for_partial(self) -> None:
        if not self.fully_committed:
            raise PartialCommitError(
                self.round_id, [(r.row_number, r.error or "unknown") for r in self.failed_rows]
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "sequence_number": self.sequence_number,
            "round_id": self.round_id,
            "fully_committed": self.fully_committed,
            "pairings_committed": sum(1 for r in self.rows if r.status == "committed"),
            "pairings_failed": len(self.failed_rows),
            "rows": [
                {
                    "row_number": r.row_number,
                    "status": r.status,
                    "pairing_id": r.pairing_id,
                    "error": r.error,
                }
                for r in self.rows
            ],
            "counter_failures": self.counter_failures[:50],
        }


def load_roster(conn: psycopg.Connection, tournament_id: str) -> list[Registration]:
    rows = conn.execute(
        """
        SELECT id, tournament_id, display_name, participant_name, partner_name,
               school, withdrawn, aff_count, neg_count
        FROM registration
        WHERE tournament_id = %s
        ORDER BY id
        """,
        (tournament_id,),
    ).fetchall()
    return [
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
        for r in rows
    ]


def _insert_round(
    conn: psycopg.Connection, tournament_id: str, sequence_number: int, name: str | None
) -> str:
    existing = conn.execute(
        "SELECT id FROM tab_round WHERE tournament_id = %s AND sequence_number = %s",
        (tournament_id, sequence_number),
    ).fetchone()
    if existing:
        raise DuplicateRoundError(tournament_id, sequence_number)
    conn.execute("SAVEPOINT legacy_round")
    try:
        row = conn.execute(
            """
            INSERT INTO tab_round (tournament_id, sequence_number, status, name)
            VALUES (%s, %s, 'upcoming', %s)
            RETURNING id
            """,
            (tournament_id, sequence_number, name or f"Round {sequence_number}"),
        ).fetchone()
    except pg_errors.UniqueViolation:
        conn.execute("ROLLBACK TO SAVEPOINT legacy_round")
        raise DuplicateRoundError(tournament_id, sequence_number)
    conn.execute("RELEASE SAVEPOINT legacy_round")
    return str(row[0])


def _bump_side_counter(
    conn: psycopg.Connection, registration_id: str, side: str, report: CommitReport
) -> None:
    column = "aff_count" if side == "aff" else "neg_count"
    sp = f"side_count_{side}"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        updated = conn.execute(
            f"UPDATE registration SET {column} = {column} + 1 WHERE id = %s",
            (registration_id,),
        ).rowcount
        if updated != 1:
            raise LookupError(f"registration {registration_id} not found")
        conn.execute(f"RELEASE SAVEPOINT {sp}")
    except (psycopg.Error, LookupError) as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        msg = f"{column} +1 for registration {registration_id} failed: {exc}"
        log.warning("Side counter update skipped: %s", msg)
        report.counter_failures.append(msg)


def commit_proposal(
    conn: psycopg.Connection,
    proposal: ImportProposal,
    sequence_number: int,
    round_name: str | None = None,
) -> CommitReport:
    """Create the Round and its Pairings for a fully resolved proposal.

    Caller manages the transaction and commits even when some rows failed,
    so the round and the rows that did insert are kept for cleanup.

    Raises:
        MalformedSheetError: the sheet had rows that could not be parsed.
        AmbiguousMatchError: some side has no selection (or a duplicate one).
        DuplicateRoundError: this sequence number already exists.
    """
    if proposal.rejects:
        raise MalformedSheetError([(r.row_number, r.reason) for r in proposal.rejects])
    problems = unresolved_sides(proposal)
    if problems:
        raise AmbiguousMatchError(problems)

    tid = proposal.tournament_id
    advisory_xact_lock(conn, f"legacy_import:{tid}:{sequence_number}")
    round_id = _insert_round(conn, tid, sequence_number, round_name)
    report = CommitReport(tournament_id=tid, sequence_number=sequence_number, round_id=round_id)

    committed: list[ProposedPairing] = []
    for pairing in proposal.pairings:
        sp = f"legacy_pairing_{pairing.row_number}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            row = conn.execute(
                """
                INSERT INTO pairing
                    (round_id, aff_registration_id, neg_registration_id, status)
                VALUES (%s, %s, %s, 'scheduled')
                RETURNING id
                """,
                (
                    round_id,
                    pairing.aff.selected_registration_id,
                    pairing.neg.selected_registration_id if pairing.neg else None,
                ),
            ).fetchone()
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            report.rows.append(RowStatus(pairing.row_number, "failed", error=str(exc).strip()))
            continue
        report.rows.append(RowStatus(pairing.row_number, "committed", pairing_id=str(row[0])))
        committed.append(pairing)

    for pairing in committed:
        if pairing.neg is None:
            continue
        _bump_side_counter(conn, pairing.aff.selected_registration_id, "aff", report)
        _bump_side_counter(conn, pairing.neg.selected_registration_id, "neg", report)

    if not report.fully_committed:
        log.warning(
            "Round %s (sequence %s) committed partially: failed rows %s",
            round_id, sequence_number, [r.row_number for r in report.failed_rows],
        )
    return report


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def _describe_side(sp: SideProposal) -> str:
    label = BAND_LABELS[sp.band]
    if sp.selected_registration_id is None:
        best = sp.best
        hint = f" best={best.display_name!r} {best.confidence:.2f}" if best else ""
        return f"{sp.raw_name!r} -> UNRESOLVED [{label}]{hint}"
    chosen = next(
        (c for c in sp.candidates if c.registration_id == sp.selected_registration_id), None
    )
    shown = chosen.display_name if chosen else sp.selected_registration_id
    conf = f" {chosen.confidence:.2f}" if chosen else ""
    return f"{sp.raw_name!r} -> {shown} [{label}{conf}, {sp.selection}]"


def build_proposal_report(proposal: ImportProposal) -> str:
    lines = [
        "=" * 78,
        f"Legacy pairing import proposal: tournament {proposal.tournament_id}",
        "=" * 78,
    ]
    for p in proposal.pairings:
        neg = _describe_side(p.neg) if p.neg is not None else "BYE"
        lines.append(f"row {p.row_number:>3}: {_describe_side(p.aff)}  vs  {neg}")
    for r in proposal.rejects:
        lines.append(f"row {r.row_number:>3}: REJECTED {r.reason} ({' | '.join(r.values)})")
    problems = unresolved_sides(proposal)
    lines.append("-" * 78)
    lines.append(
        f"{len(proposal.pairings)} pairing(s), {len(problems)} side(s) need operator "
        f"selection, {len(proposal.rejects)} malformed row(s)"
    )
    lines.append("=" * 78)
    return "\n".join(lines)


def write_proposal_csv(proposal: ImportProposal, path: Path) -> Path:
    """Review file listing every side and its candidates for operator selection."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow([
            "row_number", "side", "raw_name", "band", "confidence",
            "registration_id", "display_name", "selection", "alternates",
        ])
        for p in proposal.pairings:
            for sp in p.sides():
                best = sp.best
                alternates = "; ".join(
                    f"{c.registration_id}={c.display_name} ({c.confidence:.2f})"
                    for c in sp.candidates[1:]
                )
                writer.writerow([
                    p.row_number,
                    sp.side,
                    sp.raw_name,
                    sp.band,
                    f"{best.confidence:.4f}" if best else "",
                    sp.selected_registration_id or "",
                    best.display_name if best else "",
                    sp.selection or "",
                    alternates,
                ])
    return path
