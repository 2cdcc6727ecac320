"""Integration tests for standings persistence and the recompute trigger path."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest

from debate_tab.recompute_scheduler import NOTIFY_CHANNEL, run_standings_watch
from debate_tab.results_ingest import SpeakerScore, insert_result
from debate_tab.shared import DataIntegrityError
from debate_tab.standings import load_tab_inputs, run_standings
from debate_tab.tab_models import Pairing, RoundResult
from debate_tab.tab_rules import TabRules

TID = "spring-open-2026"
COMPUTED_AT = datetime(2026, 3, 7, 18, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _insert_registration(conn: psycopg.Connection, display_name: str) -> str:
    row = conn.execute(
        "INSERT INTO registration (tournament_id, display_name) VALUES (%s, %s) RETURNING id",
        (TID, display_name),
    ).fetchone()
    return str(row[0])


def _insert_round(conn: psycopg.Connection, seq: int, status: str = "completed") -> str:
    row = conn.execute(
        "INSERT INTO tab_round (tournament_id, sequence_number, status) VALUES (%s, %s, %s) RETURNING id",
        (TID, seq, status),
    ).fetchone()
    return str(row[0])


def _debate(conn, round_id, aff, neg, winner, aff_points, neg_points) -> str:
    row = conn.execute(
        """
        INSERT INTO pairing (round_id, aff_registration_id, neg_registration_id)
        VALUES (%s, %s, %s) RETURNING id
        """,
        (round_id, aff, neg),
    ).fetchone()
    pairing = Pairing(str(row[0]), round_id, aff, neg)
    insert_result(
        conn, pairing, RoundResult(pairing.id, winner),
        [SpeakerScore(aff, "aff", aff_points), SpeakerScore(neg, "neg", neg_points)],
    )
    return pairing.id


def _seed_four_teams(conn: psycopg.Connection) -> dict[str, str]:
    """A 2-0, C 1-1 (57.0), D 1-1 (53.5), B 0-2."""
    ids = {k: _insert_registration(conn, f"Team {k}") for k in "ABCD"}
    r1 = _insert_round(conn, 1)
    r2 = _insert_round(conn, 2)
    _debate(conn, r1, ids["A"], ids["B"], "aff", 280, 270)
    _debate(conn, r1, ids["C"], ids["D"], "aff", 290, 260)
    _debate(conn, r2, ids["A"], ids["C"], "aff", 285, 280)
    _debate(conn, r2, ids["D"], ids["B"], "aff", 275, 270)
    return ids


# ---------------------------------------------------------------------------
# run_standings
# ---------------------------------------------------------------------------

class TestRunStandings:
    def test_ranks_persisted(self, db_conn):
        conn, _ = db_conn
        ids = _seed_four_teams(conn)
        snapshot = run_standings(conn, TID, computed_at=COMPUTED_AT)

        assert [r.registration_id for r in snapshot.rows] == [ids[k] for k in "ACDB"]
        rows = conn.execute(
            """
            SELECT registration_id, rank, wins, losses, total_speaks, avg_speaks, decided_by
            FROM computed_standing WHERE tournament_id = %s ORDER BY rank
            """,
            (TID,),
        ).fetchall()
        assert [(str(r[0]), r[1], r[2], r[3]) for r in rows] == [
            (ids["A"], 1, 2, 0),
            (ids["C"], 2, 1, 1),
            (ids["D"], 3, 1, 1),
            (ids["B"], 4, 0, 2),
        ]
        assert rows[1][4] == Decimal("57.0")
        assert rows[1][5] == Decimal("28.50")
        assert rows[1][6] == "total_speaks"

    def test_head_to_head_persisted(self, db_conn):
        conn, _ = db_conn
        _seed_four_teams(conn)
        run_standings(conn, TID, computed_at=COMPUTED_AT)
        count = conn.execute(
            "SELECT count(*) FROM head_to_head WHERE tournament_id = %s", (TID,)
        ).fetchone()[0]
        assert count == 4

    def test_recompute_is_idempotent(self, db_conn):
        conn, _ = db_conn
        _seed_four_teams(conn)
        first = run_standings(conn, TID, computed_at=COMPUTED_AT)
        second = run_standings(conn, TID)
        assert first.version == second.version
        versions = conn.execute(
            "SELECT DISTINCT version FROM standings_snapshot WHERE tournament_id = %s", (TID,)
        ).fetchall()
        assert versions == [(first.version,)]
        count = conn.execute(
            "SELECT count(*) FROM computed_standing WHERE tournament_id = %s", (TID,)
        ).fetchone()[0]
        assert count == 4

    def test_completed_round_missing_result(self, db_conn):
        conn, _ = db_conn
        ids = _seed_four_teams(conn)
        r3 = _insert_round(conn, 3)
        missing = conn.execute(
            """
            INSERT INTO pairing (round_id, aff_registration_id, neg_registration_id)
            VALUES (%s, %s, %s) RETURNING id
            """,
            (r3, ids["A"], ids["D"]),
        ).fetchone()[0]
        with pytest.raises(DataIntegrityError) as exc_info:
            run_standings(conn, TID)
        assert exc_info.value.pairing_ids == [str(missing)]

    def test_rounds_in_progress_ignored(self, db_conn):
        conn, _ = db_conn
        ids = _seed_four_teams(conn)
        r3 = _insert_round(conn, 3, status="in_progress")
        _debate(conn, r3, ids["B"], ids["A"], "aff", 290, 250)
        rows = {r.registration_id: r for r in run_standings(conn, TID).rows}
        assert rows[ids["B"]].wins == 0
        assert rows[ids["A"]].rounds_completed == 2

    def test_load_tab_inputs_scoped_to_tournament(self, db_conn):
        conn, _ = db_conn
        _seed_four_teams(conn)
        conn.execute(
            "INSERT INTO registration (tournament_id, display_name) VALUES ('other', 'Elsewhere')"
        )
        inputs = load_tab_inputs(conn, TID)
        assert len(inputs.registrations) == 4
        assert len(inputs.pairings) == 4
        assert len(inputs.speaker_results) == 8


# ---------------------------------------------------------------------------
# NOTIFY-driven recompute
# ---------------------------------------------------------------------------

class TestRecomputeTriggers:
    def test_result_insert_notifies(self, db_conn):
        conn, dsn = db_conn
        with psycopg.connect(dsn, autocommit=True) as listener:
            listener.execute(f"LISTEN {NOTIFY_CHANNEL}")
            _seed_four_teams(conn)
            conn.commit()
            payloads = {n.payload for n in listener.notifies(timeout=5.0, stop_after=1)}
        assert payloads == {TID}

    def test_watch_publishes_snapshot(self, db_conn):
        conn, dsn = db_conn
        ids = _seed_four_teams(conn)
        conn.commit()

        rules = TabRules(
            version="test",
            confidence_bands={"exact": 0.95, "good": 0.80, "low": 0.50},
            debounce_seconds=0.0,
        )
        published = []
        watcher = threading.Thread(
            target=run_standings_watch,
            args=(dsn, rules),
            kwargs={"poll_seconds": 0.1, "max_batches": 1, "on_snapshot": published.append},
            daemon=True,
        )
        watcher.start()
        # Keep poking until the listener is up and has run one batch.
        deadline = time.monotonic() + 20.0
        while watcher.is_alive() and time.monotonic() < deadline:
            conn.execute("SELECT pg_notify(%s, %s)", (NOTIFY_CHANNEL, TID))
            conn.commit()
            watcher.join(timeout=0.5)

        assert not watcher.is_alive()
        assert [s.tournament_id for s in published] == [TID]
        assert published[0].rows[0].registration_id == ids["A"]
