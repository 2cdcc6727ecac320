"""debate_tab.tab_cli

Unified CLI entrypoint for tournament tabulation.

Modes (--mode):
  results_ingest   record ballots from a CSV file
  close_round      mark a round completed once every pairing has a result
  standings        recompute and publish standings for one tournament (default)
  standings_watch  LISTEN for result / override events, recompute in debounced batches
  override         append one entry to the override ledger
  audit_history    print the audit trail of a tournament, registration or entity
  legacy_import    propose (and with --commit, create) a round from a legacy sheet
  standings_export write standings (.csv, .json, .xlsx) and speaker awards to files

Usage (results_ingest):
    debate-tab --mode results_ingest \\
        --db-dsn "$DB_DSN" \\
        --tournament-id "$TOURNAMENT_ID" \\
        --ballots-path "ballots/round3.csv"

Usage (override):
    debate-tab --mode override \\
        --db-dsn "$DB_DSN" \\
        --tournament-id "$TOURNAMENT_ID" \\
        --action score_override --speaker-result-id "$SPEAKER_RESULT_ID" \\
        --points 28.5 --reason "recount after ballot review" --user-id tab_director

Usage (standings_export):
    debate-tab --mode standings_export \\
        --db-dsn "$DB_DSN" \\
        --tournament-id "$TOURNAMENT_ID" \\
        --export-path "artifacts/exports/standings.xlsx" --top-speakers 10

Usage (legacy_import):
    debate-tab --mode legacy_import \\
        --db-dsn "$DB_DSN" \\
        --tournament-id "$TOURNAMENT_ID" --sequence-number 3 \\
        --sheet-path "legacy/round3.xlsx" \\
        --proposal-path "artifacts/proposals/round3.csv"
    # review the proposal, then
    debate-tab --mode legacy_import ... \\
        --selections-path "legacy/round3_selections.csv" --commit
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from pathlib import Path

import click
import psycopg

from debate_tab.import_legacy_pairings import (
    apply_selections,
    build_proposal_report,
    commit_proposal,
    load_roster,
    propose_round,
    read_pairing_sheet,
    read_selections,
    unresolved_sides,
    write_proposal_csv,
)
from debate_tab.normalize import parse_speaker_points
from debate_tab.recompute_scheduler import run_standings_watch
from debate_tab.results_ingest import build_ingest_report, close_round, run_results_ingest
from debate_tab.shared import (
    AmbiguousMatchError,
    DataIntegrityError,
    DuplicateRoundError,
    MalformedSheetError,
    PartialCommitError,
    RejectWriter,
    utcnow,
    write_run_report,
)
from debate_tab.standings import (
    build_standings_report,
    compute_standings,
    load_tab_inputs,
    run_standings,
)
from debate_tab.standings_export import (
    EXPORT_FORMATS,
    ExportSummary,
    build_speaker_awards_report,
    calculate_speaker_awards,
    export_standings,
    write_speaker_awards_csv,
)
from debate_tab.tab_ledger import (
    ACTION_ENTITY_TYPES,
    OverrideRequest,
    build_overlay,
    entity_history,
    format_history,
    load_audit_entries,
    record_override,
    standing_history,
)
from debate_tab.tab_rules import (
    DEFAULT_RULES_PATH,
    TabRules,
    TabRulesValidationError,
    default_rules,
    load_tab_rules,
)

# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="standings",
    type=click.Choice([
        "results_ingest", "close_round", "standings", "standings_watch",
        "override", "audit_history", "legacy_import", "standings_export",
    ]),
    show_default=True,
    help="Tabulation mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--tournament-id", default=None, help="Tournament the run applies to")
# results_ingest / close_round
@click.option("--ballots-path", default=None, type=click.Path(), help="[results_ingest] Ballots CSV")
@click.option("--sequence-number", default=None, type=int, help="[close_round|legacy_import] Round sequence number")
# legacy_import
@click.option("--sheet-path", default=None, type=click.Path(), help="[legacy_import] Two-column pairing sheet (.csv or .xlsx)")
@click.option("--selections-path", default=None, type=click.Path(), help="[legacy_import] Operator selections CSV (row_number,side,registration_id)")
@click.option("--proposal-path", default=None, type=click.Path(), help="[legacy_import] Write the proposal review CSV here")
@click.option("--round-name", default=None, help="[legacy_import] Display name for the new round")
@click.option("--commit", "commit_round", is_flag=True, default=False, help="[legacy_import] Create the round once every side is resolved")
# override
@click.option(
    "--action",
    default=None,
    type=click.Choice(sorted(ACTION_ENTITY_TYPES)),
    help="[override] Ledger action",
)
@click.option("--reason", default=None, help="[override] Why the override is made (required)")
@click.option("--user-id", default=None, help="[override] Operator recording the override (required)")
@click.option("--pairing-id", default=None, help="[override] forfeit / result_correction target")
@click.option("--speaker-result-id", default=None, help="[override] score_override / speaker_points_edit target")
@click.option("--registration-id", default=None, help="[override|audit_history] Registration target")
@click.option("--round-id", default=None, help="[override] bye_assigned round")
@click.option("--points", default=None, help="[override] New speaker points, one decimal place")
@click.option("--forfeiting-side", default=None, type=click.Choice(["aff", "neg"]), help="[override] forfeit")
@click.option("--winner-side", default=None, type=click.Choice(["aff", "neg"]), help="[override] result_correction")
@click.option("--target-rank", default=None, type=int, help="[override] manual_rank; omit to clear")
@click.option("--higher-registration-id", default=None, help="[override] tiebreaker_override")
@click.option("--lower-registration-id", default=None, help="[override] tiebreaker_override")
@click.option("--lift", is_flag=True, default=False, help="[override] dq / bye_assigned: lift instead of impose")
@click.option("--based-on-entry-id", default=None, type=int, help="[override] Latest entry the operator saw")
# audit_history
@click.option("--entity-type", default=None, help="[audit_history] Entity type filter")
@click.option("--entity-id", default=None, help="[audit_history] Entity id filter")
# standings_export
@click.option("--export-path", default=None, type=click.Path(), help="[standings_export] Standings file; format from suffix (.csv, .json, .xlsx)")
@click.option("--speaker-awards-path", default=None, type=click.Path(), help="[standings_export] Also write speaker awards to this CSV")
@click.option("--top-speakers", default=10, type=int, show_default=True, help="[standings_export] Speaker award places to list")
@click.option("--drop-high-low", default=1, type=int, show_default=True, help="[standings_export] Round scores dropped from each end for adjusted points")
@click.option("--tournament-name", default=None, help="[standings_export] Title for the exported sheet")
# standings_watch
@click.option("--poll-seconds", default=1.0, type=float, show_default=True, help="[standings_watch] LISTEN poll interval")
@click.option("--max-batches", default=None, type=int, help="[standings_watch] Stop after this many recompute batches")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--rules-file", default=None, type=click.Path(), help="YAML tab rules (defaults to config/tab_rules/default.yml)")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/tab_rejects.csv",
    show_default=True,
)
@click.option("--log-level", default="INFO", show_default=True)
def main(
    mode: str,
    db_dsn: str,
    tournament_id: str | None,
    # results_ingest / close_round
    ballots_path: str | None,
    sequence_number: int | None,
    # legacy_import
    sheet_path: str | None,
    selections_path: str | None,
    proposal_path: str | None,
    round_name: str | None,
    commit_round: bool,
    # override
    action: str | None,
    reason: str | None,
    user_id: str | None,
    pairing_id: str | None,
    speaker_result_id: str | None,
    registration_id: str | None,
    round_id: str | None,
    points: str | None,
    forfeiting_side: str | None,
    winner_side: str | None,
    target_rank: int | None,
    higher_registration_id: str | None,
    lower_registration_id: str | None,
    lift: bool,
    based_on_entry_id: int | None,
    # audit_history
    entity_type: str | None,
    entity_id: str | None,
    # standings_export
    export_path: str | None,
    speaker_awards_path: str | None,
    top_speakers: int,
    drop_high_low: int,
    tournament_name: str | None,
    # standings_watch
    poll_seconds: float,
    max_batches: int | None,
    # shared
    dry_run: bool,
    run_id: str | None,
    rules_file: str | None,
    rejects_path: str,
    log_level: str,
) -> None:
    """Unified tournament tabulation CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = utcnow().isoformat()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    rules = _load_rules(rules_file, run_id)

    if mode == "results_ingest":
        _require_flags(run_id, mode, tournament_id=tournament_id, ballots_path=ballots_path)
        _require_file(run_id, "--ballots-path", ballots_path)  # type: ignore[arg-type]
        _run_results_ingest(
            run_id, started_at, db_dsn, rules, dry_run, rejects_path,
            tournament_id=tournament_id,  # type: ignore[arg-type]
            ballots_path=ballots_path,  # type: ignore[arg-type]
        )
    elif mode == "close_round":
        _require_flags(run_id, mode, tournament_id=tournament_id, sequence_number=sequence_number)
        conn = psycopg.connect(db_dsn, autocommit=False)
        try:
            closed_id = close_round(conn, tournament_id, sequence_number)  # type: ignore[arg-type]
            click.echo(f"[{run_id}] Round {sequence_number} ({closed_id}) closed.")
            _commit_or_rollback(conn, run_id, dry_run)
        except (DataIntegrityError, ValueError) as exc:
            conn.rollback()
            _fatal(run_id, exc)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
    elif mode == "standings":
        _require_flags(run_id, mode, tournament_id=tournament_id)
        _run_standings(run_id, started_at, db_dsn, rules, dry_run, tournament_id)  # type: ignore[arg-type]
    elif mode == "standings_watch":
        if dry_run:
            click.echo(f"[{run_id}] FATAL: standings_watch does not support --dry-run", err=True)
            sys.exit(1)
        click.echo(
            f"[{run_id}] Watching for recompute events "
            f"(debounce={rules.debounce_seconds}s poll={poll_seconds}s)"
        )
        run_standings_watch(
            db_dsn,
            rules,
            poll_seconds=poll_seconds,
            max_batches=max_batches,
            on_snapshot=lambda s: click.echo(
                f"[{run_id}] Published standings for {s.tournament_id} "
                f"version={s.version[:12]} rows={len(s.rows)}"
            ),
        )
        click.echo(f"[{run_id}] Watch stopped.")
    elif mode == "override":
        _require_flags(
            run_id, mode,
            tournament_id=tournament_id, action=action, reason=reason, user_id=user_id,
        )
        points_tenths = None
        if points is not None:
            points_tenths = parse_speaker_points(points)
            if points_tenths is None:
                click.echo(
                    f"[{run_id}] FATAL: --points {points!r} is not a score with at most one decimal place",
                    err=True,
                )
                sys.exit(1)
        req = OverrideRequest(
            tournament_id=tournament_id,  # type: ignore[arg-type]
            action=action,  # type: ignore[arg-type]
            reason=reason,  # type: ignore[arg-type]
            user_id=user_id,  # type: ignore[arg-type]
            pairing_id=pairing_id,
            speaker_result_id=speaker_result_id,
            registration_id=registration_id,
            round_id=round_id,
            points_tenths=points_tenths,
            forfeiting_side=forfeiting_side,
            winner_side=winner_side,
            target_rank=target_rank,
            higher_registration_id=higher_registration_id,
            lower_registration_id=lower_registration_id,
            disqualified=not lift,
            granted=not lift,
            based_on_entry_id=based_on_entry_id,
        )
        _run_override(run_id, started_at, db_dsn, rules, dry_run, req)
    elif mode == "audit_history":
        _require_flags(run_id, mode, tournament_id=tournament_id)
        conn = psycopg.connect(db_dsn, autocommit=False)
        try:
            if registration_id:
                entries = standing_history(conn, tournament_id, registration_id)  # type: ignore[arg-type]
            elif entity_type and entity_id:
                entries = entity_history(conn, tournament_id, entity_type, entity_id)  # type: ignore[arg-type]
            else:
                entries = load_audit_entries(conn, tournament_id)  # type: ignore[arg-type]
            conn.rollback()
        finally:
            conn.close()
        click.echo(format_history(entries))
        click.echo(f"[{run_id}] {len(entries)} audit entr{'y' if len(entries) == 1 else 'ies'}.")
    elif mode == "standings_export":
        _require_flags(run_id, mode, tournament_id=tournament_id, export_path=export_path)
        if Path(export_path).suffix.lower() not in EXPORT_FORMATS:  # type: ignore[arg-type]
            click.echo(
                f"[{run_id}] FATAL: --export-path must end in one of {', '.join(EXPORT_FORMATS)}",
                err=True,
            )
            sys.exit(1)
        _run_standings_export(
            run_id, started_at, db_dsn, rules,
            tournament_id=tournament_id,  # type: ignore[arg-type]
            export_path=export_path,  # type: ignore[arg-type]
            speaker_awards_path=speaker_awards_path,
            top_speakers=top_speakers,
            drop_high_low=drop_high_low,
            tournament_name=tournament_name,
        )
    else:
        _require_flags(
            run_id, mode,
            tournament_id=tournament_id, sheet_path=sheet_path, sequence_number=sequence_number,
        )
        _require_file(run_id, "--sheet-path", sheet_path)  # type: ignore[arg-type]
        if selections_path:
            _require_file(run_id, "--selections-path", selections_path)
        _run_legacy_import(
            run_id, started_at, db_dsn, rules, dry_run, rejects_path,
            tournament_id=tournament_id,  # type: ignore[arg-type]
            sequence_number=sequence_number,  # type: ignore[arg-type]
            sheet_path=sheet_path,  # type: ignore[arg-type]
            selections_path=selections_path,
            proposal_path=proposal_path,
            round_name=round_name,
            commit_round=commit_round,
        )
    click.echo(f"[{run_id}] Done.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_rules(rules_file: str | None, run_id: str) -> TabRules:
    try:
        if rules_file:
            return load_tab_rules(Path(rules_file))
        if DEFAULT_RULES_PATH.exists():
            return load_tab_rules()
    except (OSError, TabRulesValidationError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot load tab rules: {exc}", err=True)
        sys.exit(1)
    return default_rules()


def _require_flags(run_id: str, mode: str, **flags: object) -> None:
    missing = [
        "--" + name.replace("_", "-") for name, value in flags.items() if value is None
    ]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: {mode} mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


def _require_file(run_id: str, flag: str, path: str) -> None:
    if not Path(path).exists():
        click.echo(f"[{run_id}] FATAL: {flag} not found: {path}", err=True)
        sys.exit(1)


def _fatal(run_id: str, exc: Exception) -> None:
    click.echo(f"[{run_id}] ERROR: {exc}", err=True)
    sys.exit(1)


def _commit_or_rollback(
    conn: psycopg.Connection, run_id: str, dry_run: bool, db_errors: int = 0
) -> bool:
    """Commit unless this is a dry run or DB errors occurred.  False on errors."""
    if dry_run or db_errors > 0:
        conn.rollback()
        if dry_run:
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
            return True
        click.echo(f"[{run_id}] {db_errors} DB errors: rolled back.", err=True)
        return False
    conn.commit()
    click.echo(f"[{run_id}] Committed.")
    return True


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_results_ingest(
    run_id: str,
    started_at: str,
    db_dsn: str,
    rules: TabRules,
    dry_run: bool,
    rejects_path: str,
    tournament_id: str,
    ballots_path: str,
) -> None:
    rejects = RejectWriter(Path(rejects_path))
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        ctrs = run_results_ingest(conn, tournament_id, Path(ballots_path), rules, rejects)
        click.echo(build_ingest_report(ctrs, dry_run=dry_run))
        ok = _commit_or_rollback(conn, run_id, dry_run, ctrs.db_errors)
    except ValueError as exc:
        conn.rollback()
        _fatal(run_id, exc)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        rejects.close()

    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected row(s) written to {rejects_path}")
    report_path = write_run_report(
        run_id, started_at, "results_ingest", dry_run,
        {"tournament_id": tournament_id, "ballots_path": ballots_path},
        ctrs,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if not ok:
        sys.exit(1)


def _run_standings(
    run_id: str,
    started_at: str,
    db_dsn: str,
    rules: TabRules,
    dry_run: bool,
    tournament_id: str,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        snapshot = run_standings(conn, tournament_id, rules)
        names = {r.id: r.display_name for r in load_roster(conn, tournament_id)}
        click.echo(build_standings_report(snapshot, names))
        _commit_or_rollback(conn, run_id, dry_run)
    except DataIntegrityError as exc:
        conn.rollback()
        _fatal(run_id, exc)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    report_path = write_run_report(
        run_id, started_at, "standings", dry_run,
        {"tournament_id": tournament_id, "rules_version": rules.version},
        snapshot,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_standings_export(
    run_id: str,
    started_at: str,
    db_dsn: str,
    rules: TabRules,
    tournament_id: str,
    export_path: str,
    speaker_awards_path: str | None,
    top_speakers: int,
    drop_high_low: int,
    tournament_name: str | None,
) -> None:
    # Read-only: standings are computed for the files, not republished.
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        inputs = load_tab_inputs(conn, tournament_id)
        overlay = build_overlay(load_audit_entries(conn, tournament_id))
        conn.rollback()
    finally:
        conn.close()

    try:
        snapshot = compute_standings(inputs, overlay, rules)
        awards = calculate_speaker_awards(inputs, overlay, rules, drop_high_low, top_speakers)
    except (DataIntegrityError, ValueError) as exc:
        _fatal(run_id, exc)

    summary = ExportSummary(tournament_id, snapshot.version, len(snapshot.rows), awards)
    out = export_standings(
        Path(export_path), snapshot, inputs.registrations, awards, tournament_name
    )
    summary.paths.append(str(out))
    click.echo(f"[{run_id}] Standings written to {out}")
    if speaker_awards_path:
        awards_out = write_speaker_awards_csv(Path(speaker_awards_path), awards)
        summary.paths.append(str(awards_out))
        click.echo(f"[{run_id}] Speaker awards written to {awards_out}")
    click.echo(build_speaker_awards_report(awards))

    report_path = write_run_report(
        run_id, started_at, "standings_export", False,
        {"tournament_id": tournament_id, "export_path": export_path},
        summary,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_override(
    run_id: str,
    started_at: str,
    db_dsn: str,
    rules: TabRules,
    dry_run: bool,
    req: OverrideRequest,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        entry = record_override(conn, req, rules)
        click.echo(format_history([entry]))
        if entry.conflicts_with_entry_id is not None:
            click.echo(
                f"[{run_id}] WARNING: entry #{entry.id} was based on #{req.based_on_entry_id} "
                f"but #{entry.conflicts_with_entry_id} was already recorded; review both.",
                err=True,
            )
        _commit_or_rollback(conn, run_id, dry_run)
    except ValueError as exc:
        conn.rollback()
        _fatal(run_id, exc)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    report_path = write_run_report(
        run_id, started_at, "override", dry_run,
        {"tournament_id": req.tournament_id, "action": req.action},
        entry,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_legacy_import(
    run_id: str,
    started_at: str,
    db_dsn: str,
    rules: TabRules,
    dry_run: bool,
    rejects_path: str,
    tournament_id: str,
    sequence_number: int,
    sheet_path: str,
    selections_path: str | None,
    proposal_path: str | None,
    round_name: str | None,
    commit_round: bool,
) -> None:
    rejects = RejectWriter(Path(rejects_path))
    rows, sheet_rejects = read_pairing_sheet(sheet_path)
    for r in sheet_rejects:
        rejects.write(r.as_dict(), r.reason)

    report = None
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        roster = load_roster(conn, tournament_id)
        proposal = propose_round(tournament_id, rows, roster, rules, sheet_rejects)
        if selections_path:
            proposal = apply_selections(proposal, read_selections(selections_path), roster)
        for row_number, side, detail in unresolved_sides(proposal):
            rejects.write(
                {"row_number": row_number, "side": side, "values": detail},
                "unresolved team match",
            )
        click.echo(build_proposal_report(proposal))
        if proposal_path:
            out = write_proposal_csv(proposal, Path(proposal_path))
            click.echo(f"[{run_id}] Proposal review file: {out}")

        if not commit_round:
            conn.rollback()
            click.echo(
                f"[{run_id}] Proposal only; rerun with --commit to create round {sequence_number}."
            )
        else:
            report = commit_proposal(conn, proposal, sequence_number, round_name)
            click.echo(json.dumps(report.to_dict(), indent=2, default=str))
            _commit_or_rollback(conn, run_id, dry_run)
    except (AmbiguousMatchError, DuplicateRoundError, MalformedSheetError, ValueError) as exc:
        conn.rollback()
        _fatal(run_id, exc)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        rejects.close()

    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected / unresolved row(s) written to {rejects_path}")
    report_path = write_run_report(
        run_id, started_at, "legacy_import", dry_run,
        {"tournament_id": tournament_id, "sheet_path": sheet_path, "selections_path": selections_path},
        report if report is not None else proposal,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if report is not None:
        try:
            report.raise_for_partial()
        except PartialCommitError as exc:
            _fatal(run_id, exc)


if __name__ == "__main__":
    main()
