"""debate_tab.shared

Shared utilities used by every tabulation mode.
Includes the error taxonomy, RejectWriter, advisory-lock helpers and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DataIntegrityError(Exception):
    """A completed round has pairings without an authoritative result."""

    def __init__(self, pairing_ids: list[str], detail: str = "") -> None:
        self.pairing_ids = sorted(pairing_ids)
        msg = (
            "completed round(s) missing results for pairing(s): "
            + ", ".join(self.pairing_ids)
        )
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class AmbiguousMatchError(Exception):
    """Raised when import sides have no usable roster match or selection.

    ``unresolved`` holds (row_number, side, raw_name) tuples.
    """

    def __init__(self, unresolved: list[tuple[int, str, str]]) -> None:
        self.unresolved = unresolved
        parts = [f"row {r} {side}={name!r}" for r, side, name in unresolved]
        super().__init__(
            "unresolved team match(es) require operator selection: " + "; ".join(parts)
        )


class MalformedSheetError(Exception):
    """Pairing sheet has rows that could not be parsed; nothing was committed.

    ``rejected`` holds (row_number, reason) tuples.
    """

    def __init__(self, rejected: list[tuple[int, str]]) -> None:
        self.rejected = rejected
        parts = [f"row {r}: {reason}" for r, reason in rejected]
        super().__init__(
            "pairing sheet has malformed row(s); fix the sheet and re-run: " + "; ".join(parts)
        )


class DuplicateRoundError(Exception):
    """A round with this sequence number already exists for the tournament."""

    def __init__(self, tournament_id: str, sequence_number: int) -> None:
        self.tournament_id = tournament_id
        self.sequence_number = sequence_number
        super().__init__(
            f"round {sequence_number} already exists for tournament {tournament_id}"
        )


class PartialCommitError(Exception):
    """Round created but not every pairing was inserted."""

    def __init__(self, round_id: str, failed_rows: list[tuple[int, str]]) -> None:
        self.round_id = round_id
        self.failed_rows = failed_rows
        parts = [f"row {r}: {reason}" for r, reason in failed_rows]
        super().__init__(
            f"round {round_id} committed partially; failed " + "; ".join(parts)
        )


class OverrideValidationError(ValueError):
    """Malformed override request (unknown action, missing field, bad value)."""


class ResultValidationError(ValueError):
    """Malformed ballot row."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def advisory_xact_lock(conn: psycopg.Connection, key: str) -> None:
    """Take a transaction-scoped advisory lock keyed by an arbitrary string.

    Released automatically on COMMIT / ROLLBACK.
    """
    conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: SupportsToDict,
    report_dir: Path | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = (report_dir or Path("./artifacts/reports")) / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
