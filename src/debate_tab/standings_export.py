"""debate_tab.standings_export

Speaker awards and file exports of a standings snapshot
(--mode standings_export).

Ballots carry one score per side (a single debater or the team aggregate),
so an award entry is a registration.  Only rounds that were debated and
scored (win / loss after overrides and DQ policy) with a recorded speaker
result count; byes, forfeits and DQ losses add nothing.

Award order: adjusted points descending, then total points descending.
Adjusted points drop the ``drop_high_low`` highest and lowest round scores
once at least 2 * drop_high_low + 1 rounds were spoken; below that they equal
the total.  Equal entries share a rank (1, 2, 2, 4).  ``top_n`` keeps every
entry ranked within the first N places, so a tie at the cutoff is kept whole.

Export formats, chosen by file suffix:
  .csv   standings table
  .json  standings (and speaker awards) with tournament metadata
  .xlsx  "Standings" sheet, plus a "Speaker Awards" sheet when awards are given
"""

from __future__ import annotations

import csv
import itertools
import json
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Iterable

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from debate_tab.normalize import tenths_to_decimal
from debate_tab.standings import TabInputs, check_integrity, derive_outcomes
from debate_tab.tab_ledger import Overlay
from debate_tab.tab_models import SPEAKING_OUTCOMES, Registration, StandingsSnapshot
from debate_tab.tab_rules import TabRules

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXPORT_FORMATS = (".csv", ".json", ".xlsx")
STANDINGS_HEADERS = [
    "Rank", "Team", "School", "Record", "Wins", "Losses",
    "Total Speaks", "Avg Speaks", "Decided By", "DQ",
]
AWARD_HEADERS = [
    "Rank", "Speaker", "Team", "School", "Rounds",
    "Total Points", "Avg Points", "High", "Low", "Adjusted",
]
_SHEET_TITLE_MAX = 31
_INVALID_SHEET_CHARS = "/\\*?:[]"
_HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
_HEADER_FONT = Font(color="FFFFFF", bold=True)


# ---------------------------------------------------------------------------
# Speaker awards
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpeakerAward:
    registration_id: str
    speaker_name: str
    team_name: str
    school: str
    rounds_spoken: int
    total_tenths: int
    high_tenths: int
    low_tenths: int
    adjusted_tenths: int
    rank: int = 0

    @property
    def avg_points(self) -> Decimal:
        if self.rounds_spoken == 0:
            return Decimal("0.00")
        avg = Decimal(self.total_tenths) / Decimal(10 * self.rounds_spoken)
        return avg.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "registration_id": self.registration_id,
            "speaker": self.speaker_name,
            "team": self.team_name,
            "school": self.school,
            "rounds_spoken": self.rounds_spoken,
            "total_points": str(tenths_to_decimal(self.total_tenths)),
            "avg_points": str(self.avg_points),
            "high": str(tenths_to_decimal(self.high_tenths)),
            "low": str(tenths_to_decimal(self.low_tenths)),
            "adjusted_points": str(tenths_to_decimal(self.adjusted_tenths)),
        }

    def as_row(self) -> list[Any]:
        return [
            self.rank,
            self.speaker_name,
            self.team_name,
            self.school,
            self.rounds_spoken,
            tenths_to_decimal(self.total_tenths),
            self.avg_points,
            tenths_to_decimal(self.high_tenths),
            tenths_to_decimal(self.low_tenths),
            tenths_to_decimal(self.adjusted_tenths),
        ]


def adjusted_points(points: list[int], drop: int) -> int:
    """Sum of ``points`` without the ``drop`` highest and lowest values."""
    if drop < 0:
        raise ValueError(f"drop must be >= 0 (got {drop})")
    if drop == 0 or len(points) < 2 * drop + 1:
        return sum(points)
    ordered = sorted(points)
    return sum(ordered[drop:len(ordered) - drop])


def _speaker_name(reg: Registration) -> str:
    names = [n for n in (reg.participant_name, reg.partner_name) if n]
    return " & ".join(names) if names else reg.display_name


def _rank_awards(awards: list[SpeakerAward]) -> list[SpeakerAward]:
    def key(a: SpeakerAward) -> tuple[int, int]:
        return (a.adjusted_tenths, a.total_tenths)

    ordered = sorted(awards, key=lambda a: (-a.adjusted_tenths, -a.total_tenths, a.registration_id))
    ranked: list[SpeakerAward] = []
    position = 1
    for _, group in itertools.groupby(ordered, key=key):
        members = list(group)
        ranked.extend(replace(a, rank=position) for a in members)
        position += len(members)
    return ranked


def calculate_speaker_awards(
    inputs: TabInputs,
    overlay: Overlay | None = None,
    rules: TabRules | None = None,
    drop_high_low: int = 1,
    top_n: int | None = None,
) -> list[SpeakerAward]:
    """Ranked speaker awards from the same authoritative results as standings.

    Raises:
        DataIntegrityError: a completed round has a pairing without a result.
        ValueError: negative ``drop_high_low`` or ``top_n`` below 1.
    """
    if drop_high_low < 0:
        raise ValueError(f"drop_high_low must be >= 0 (got {drop_high_low})")
    if top_n is not None and top_n < 1:
        raise ValueError(f"top_n must be >= 1 (got {top_n})")
    overlay = overlay or Overlay()
    check_integrity(inputs, overlay)

    scored = {(sr.pairing_id, sr.registration_id) for sr in inputs.speaker_results}
    points: dict[str, list[int]] = defaultdict(list)
    for o in derive_outcomes(inputs, overlay, rules):
        if o.outcome in SPEAKING_OUTCOMES and (o.pairing_id, o.registration_id) in scored:
            points[o.registration_id].append(o.speaks_tenths)

    regs = {r.id: r for r in inputs.registrations}
    awards = []
    for reg_id in sorted(points):
        reg = regs.get(reg_id)
        if reg is None:
            continue
        pts = points[reg_id]
        awards.append(SpeakerAward(
            registration_id=reg_id,
            speaker_name=_speaker_name(reg),
            team_name=reg.display_name,
            school=reg.school or "",
            rounds_spoken=len(pts),
            total_tenths=sum(pts),
            high_tenths=max(pts),
            low_tenths=min(pts),
            adjusted_tenths=adjusted_points(pts, drop_high_low),
        ))

    ranked = _rank_awards(awards)
    if top_n is not None:
        ranked = [a for a in ranked if a.rank <= top_n]
    return ranked


def build_speaker_awards_report(awards: list[SpeakerAward]) -> str:
    lines = [
        "=" * 78,
        "Speaker awards",
        "=" * 78,
        f"{'rank':>4}  {'speaker':<30} {'rds':>3} {'total':>7} {'avg':>6} {'adj':>7}",
    ]
    for a in awards:
        lines.append(
            f"{a.rank:>4}  {a.speaker_name[:30]:<30} {a.rounds_spoken:>3} "
            f"{str(tenths_to_decimal(a.total_tenths)):>7} {str(a.avg_points):>6} "
            f"{str(tenths_to_decimal(a.adjusted_tenths)):>7}"
        )
    if not awards:
        lines.append("(no scored rounds)")
    lines.append("=" * 78)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Standings table
# ---------------------------------------------------------------------------

def standings_table(
    snapshot: StandingsSnapshot, registrations: Iterable[Registration]
) -> list[list[Any]]:
    """One row per ranked registration, in STANDINGS_HEADERS order."""
    regs = {r.id: r for r in registrations}
    rows = []
    for r in snapshot.rows:
        reg = regs.get(r.registration_id)
        rows.append([
            r.rank,
            reg.display_name if reg else r.registration_id,
            (reg.school if reg else None) or "",
            f"{r.wins}-{r.losses}",
            r.wins,
            r.losses,
            r.total_speaks,
            r.avg_speaks,
            r.decided_by or "",
            "yes" if r.disqualified else "",
        ])
    return rows


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def write_standings_csv(
    path: Path, snapshot: StandingsSnapshot, registrations: Iterable[Registration]
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(STANDINGS_HEADERS)
        writer.writerows(standings_table(snapshot, registrations))
    return path


def write_speaker_awards_csv(path: Path, awards: list[SpeakerAward]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(AWARD_HEADERS)
        writer.writerows(a.as_row() for a in awards)
    return path


def write_standings_json(
    path: Path,
    snapshot: StandingsSnapshot,
    registrations: Iterable[Registration],
    awards: list[SpeakerAward] | None = None,
    tournament_name: str | None = None,
) -> Path:
    keys = ["rank", "team", "school", "record", "wins", "losses",
            "total_speaks", "avg_speaks", "decided_by", "disqualified"]
    standings = []
    for row in standings_table(snapshot, registrations):
        item = dict(zip(keys, row))
        item["total_speaks"] = str(item["total_speaks"])
        item["avg_speaks"] = str(item["avg_speaks"])
        item["disqualified"] = item["disqualified"] == "yes"
        standings.append(item)
    payload: dict[str, Any] = {
        "tournament_id": snapshot.tournament_id,
        "tournament_name": tournament_name,
        "computed_at": snapshot.computed_at.isoformat(),
        "version": snapshot.version,
        "standings": standings,
    }
    if awards is not None:
        payload["speaker_awards"] = [a.to_dict() for a in awards]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def _sheet_title(tournament_name: str | None) -> str:
    title = f"{tournament_name[:20]} Standings" if tournament_name else "Standings"
    for ch in _INVALID_SHEET_CHARS:
        title = title.replace(ch, "-")
    return title[:_SHEET_TITLE_MAX]


def _fill_sheet(ws: Worksheet, headers: list[str], rows: list[list[Any]]) -> None:
    ws.append(headers)
    for row in rows:
        # Sheet cells hold plain numbers.
        ws.append([float(v) if isinstance(v, Decimal) else v for v in row])
    for cell in ws[1]:
        cell.fill = _HEADER_FILL
        cell.font = _HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")
    for col_idx, column in enumerate(ws.iter_cols(min_row=1), start=1):
        width = max((len(str(c.value)) for c in column if c.value is not None), default=0)
        ws.column_dimensions[get_column_letter(col_idx)].width = min(width + 2, 50)
    ws.freeze_panes = "A2"


def write_standings_xlsx(
    path: Path,
    snapshot: StandingsSnapshot,
    registrations: Iterable[Registration],
    awards: list[SpeakerAward] | None = None,
    tournament_name: str | None = None,
) -> Path:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = _sheet_title(tournament_name)
    _fill_sheet(ws, STANDINGS_HEADERS, standings_table(snapshot, registrations))
    if awards is not None:
        _fill_sheet(wb.create_sheet("Speaker Awards"), AWARD_HEADERS, [a.as_row() for a in awards])
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(path)
    return path


def export_standings(
    path: Path,
    snapshot: StandingsSnapshot,
    registrations: Iterable[Registration],
    awards: list[SpeakerAward] | None = None,
    tournament_name: str | None = None,
) -> Path:
    """Write ``snapshot`` in the format named by ``path``'s suffix.

    CSV exports hold standings only; write awards with
    write_speaker_awards_csv.
    """
    suffix = path.suffix.lower()
    registrations = list(registrations)
    if suffix == ".csv":
        return write_standings_csv(path, snapshot, registrations)
    if suffix == ".json":
        return write_standings_json(path, snapshot, registrations, awards, tournament_name)
    if suffix == ".xlsx":
        return write_standings_xlsx(path, snapshot, registrations, awards, tournament_name)
    raise ValueError(
        f"unsupported export format {path.suffix!r}; expected one of {', '.join(EXPORT_FORMATS)}"
    )


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

@dataclass
class ExportSummary:
    tournament_id: str
    version: str
    standings_rows: int
    awards: list[SpeakerAward] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "version": self.version,
            "standings_rows": self.standings_rows,
            "speaker_awards": [a.to_dict() for a in self.awards],
            "paths": self.paths,
        }
