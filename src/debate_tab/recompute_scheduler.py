"""debate_tab.recompute_scheduler

Event-driven, debounced standings recompute (--mode standings_watch).

Events (a result committed, an override committed, a round closed) arrive
through notify().  The first event for a tournament opens a batch window of
``debounce_seconds``; when it elapses run_due() recomputes that tournament
once, however many events arrived meanwhile.  Staleness is therefore bounded
by the debounce window plus one recompute, and is observable through
last_computed_at() / is_stale().

In production the events come from PostgreSQL: triggers installed by
migrations/0003_standings.sql emit NOTIFY tab_recompute with the
tournament id as payload, and run_standings_watch() feeds them in.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable

import psycopg

from debate_tab.shared import utcnow
from debate_tab.standings import run_standings
from debate_tab.tab_models import StandingsSnapshot
from debate_tab.tab_rules import TabRules, default_rules

log = logging.getLogger(__name__)

NOTIFY_CHANNEL = "tab_recompute"


class RecomputeScheduler:
    def __init__(
        self,
        recompute: Callable[[str], Any],
        debounce_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._recompute = recompute
        self._debounce = debounce_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._pending: dict[str, float] = {}
        self._reasons: dict[str, list[str]] = {}
        self._last_computed: dict[str, datetime] = {}
        self._last_error: dict[str, str] = {}

    def notify(self, tournament_id: str, reason: str = "event") -> None:
        with self._lock:
            self._pending.setdefault(tournament_id, self._clock())
            self._reasons.setdefault(tournament_id, []).append(reason)

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def due(self) -> list[str]:
        now = self._clock()
        with self._lock:
            return sorted(
                tid for tid, opened in self._pending.items()
                if now - opened >= self._debounce
            )

    def run_due(self) -> list[str]:
        """Recompute every tournament whose batch window has elapsed.

        Returns the tournament ids recomputed successfully.  A failed
        recompute is logged and re-queued with a fresh window.
        """
        done = []
        for tid in self.due():
            with self._lock:
                self._pending.pop(tid, None)
                reasons = self._reasons.pop(tid, [])
            if self._run(tid, reasons):
                done.append(tid)
        return done

    def refresh(self, tournament_id: str) -> bool:
        """Manual refresh: recompute now, absorbing any pending batch."""
        with self._lock:
            self._pending.pop(tournament_id, None)
            reasons = self._reasons.pop(tournament_id, [])
        return self._run(tournament_id, reasons + ["manual_refresh"])

    def _run(self, tid: str, reasons: list[str]) -> bool:
        try:
            self._recompute(tid)
        except Exception as exc:
            log.error(
                "Recompute failed for tournament %s after %d event(s): %s",
                tid, len(reasons), exc,
            )
            with self._lock:
                self._last_error[tid] = str(exc)
                self._pending.setdefault(tid, self._clock())
                self._reasons.setdefault(tid, []).extend(reasons)
            return False
        with self._lock:
            self._last_computed[tid] = self._wall_clock()
            self._last_error.pop(tid, None)
        log.info("Recomputed standings for %s (%d event(s))", tid, len(reasons))
        return True

    def last_computed_at(self, tournament_id: str) -> datetime | None:
        with self._lock:
            return self._last_computed.get(tournament_id)

    def last_error(self, tournament_id: str) -> str | None:
        with self._lock:
            return self._last_error.get(tournament_id)

    def is_stale(self, tournament_id: str, staleness_seconds: float) -> bool:
        """True when events are pending past the window or nothing was computed recently."""
        with self._lock:
            opened = self._pending.get(tournament_id)
            last = self._last_computed.get(tournament_id)
        if opened is not None and self._clock() - opened > staleness_seconds:
            return True
        if last is None:
            return True
        return (self._wall_clock() - last).total_seconds() > staleness_seconds


# ---------------------------------------------------------------------------
# LISTEN/NOTIFY loop
# ---------------------------------------------------------------------------

def run_standings_watch(
    db_dsn: str,
    rules: TabRules | None = None,
    poll_seconds: float = 1.0,
    max_batches: int | None = None,
    on_snapshot: Callable[[StandingsSnapshot], None] | None = None,
) -> RecomputeScheduler:
    """Listen for tab_recompute notifications and recompute in debounced batches.

    Each recompute runs in its own committed transaction.  Returns the
    scheduler after ``max_batches`` successful batches (forever when None).
    """
    rules = rules or default_rules()

    def recompute(tournament_id: str) -> None:
        with psycopg.connect(db_dsn) as conn:
            snapshot = run_standings(conn, tournament_id, rules)
        if on_snapshot is not None:
            on_snapshot(snapshot)

    scheduler = RecomputeScheduler(recompute, debounce_seconds=rules.debounce_seconds)
    with psycopg.connect(db_dsn, autocommit=True) as listen_conn:
        listen_conn.execute(f"LISTEN {NOTIFY_CHANNEL}")
        batches = 0
        while max_batches is None or batches < max_batches:
            for note in listen_conn.notifies(timeout=poll_seconds):
                scheduler.notify(note.payload, reason="notify")
            if scheduler.run_due():
                batches += 1
    return scheduler
