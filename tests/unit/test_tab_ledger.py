"""Unit tests for the pure parts of debate_tab.tab_ledger."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from debate_tab.shared import OverrideValidationError
from debate_tab.tab_ledger import (
    ComputedStandingSnapshot,
    HeadToHeadSnapshot,
    OverrideRequest,
    RegistrationSnapshot,
    RoundResultSnapshot,
    SpeakerResultSnapshot,
    TabAuditEntry,
    build_new_value,
    build_overlay,
    format_history,
    overlay_key,
    parse_snapshot,
    resolve_target,
    snapshot_to_dict,
)
from debate_tab.tab_rules import default_rules

T0 = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)

SPEAKER = SpeakerResultSnapshot(
    speaker_result_id="sr1", pairing_id="p1", registration_id="r1", side="aff", points_tenths=275
)


def _req(action, **kw):
    base = {"tournament_id": "t1", "reason": "ballot recount", "user_id": "tab_director"}
    base.update(kw)
    return OverrideRequest(action=action, **base)


def _entry(entry_id, snapshot, seconds=0, action="score_override", conflicts_with=None):
    return TabAuditEntry(
        id=entry_id,
        tournament_id="t1",
        action=action,
        entity_type=snapshot.entity_type,
        entity_id="x",
        old_value=None,
        new_value=snapshot,
        reason="because",
        user_id="u1",
        created_at=T0 + timedelta(seconds=seconds),
        conflicts_with_entry_id=conflicts_with,
    )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class TestSnapshots:
    @pytest.mark.parametrize("snapshot", [
        SPEAKER,
        RoundResultSnapshot("p1", "neg", forfeit=True, dq=False, bye=False),
        RoundResultSnapshot("p1", None, forfeit=False, dq=True, bye=False),
        RegistrationSnapshot("r1", disqualified=True, bye_round_id=None, bye_granted=None),
        RegistrationSnapshot("r1", disqualified=None, bye_round_id="rd1", bye_granted=True),
        ComputedStandingSnapshot("r1", manual_rank=3),
        HeadToHeadSnapshot("r1", "r2", higher_registration_id="r2"),
    ])
    def test_json_round_trip_unchanged(self, snapshot):
        stored = json.loads(json.dumps(snapshot_to_dict(snapshot)))
        assert parse_snapshot(snapshot.entity_type, stored) == snapshot

    def test_entity_type_not_serialized(self):
        assert "entity_type" not in snapshot_to_dict(SPEAKER)

    def test_none(self):
        assert parse_snapshot("speaker_result", None) is None
        assert snapshot_to_dict(None) is None

    def test_unknown_entity_type(self):
        with pytest.raises(OverrideValidationError, match="no snapshot schema"):
            parse_snapshot("pairing", {"pairing_id": "p1"})

    def test_missing_key_rejected(self):
        data = snapshot_to_dict(SPEAKER)
        del data["side"]
        with pytest.raises(OverrideValidationError, match="do not match"):
            parse_snapshot("speaker_result", data)

    def test_extra_key_rejected(self):
        data = snapshot_to_dict(SPEAKER)
        data["note"] = "hello"
        with pytest.raises(OverrideValidationError, match="do not match"):
            parse_snapshot("speaker_result", data)

    def test_non_integer_points_rejected(self):
        data = snapshot_to_dict(SPEAKER)
        data["points_tenths"] = 27.5
        with pytest.raises(OverrideValidationError, match="integer"):
            parse_snapshot("speaker_result", data)

    def test_bad_winner_side_rejected(self):
        with pytest.raises(OverrideValidationError, match="aff/neg"):
            RoundResultSnapshot("p1", "gov", forfeit=False, dq=False, bye=False)

    def test_overlay_keys(self):
        assert overlay_key(SPEAKER) == "speaker:sr1"
        assert overlay_key(RoundResultSnapshot("p1", "aff", False, False, False)) == "round_result:p1"
        assert overlay_key(RegistrationSnapshot("r1", True, None, None)) == "dq:r1"
        assert overlay_key(RegistrationSnapshot("r1", None, "rd1", True)) == "bye:r1:rd1"
        assert overlay_key(ComputedStandingSnapshot("r1", 2)) == "manual_rank:r1"
        assert overlay_key(HeadToHeadSnapshot("a", "b", "a")) == "tiebreaker:a:b"


# ---------------------------------------------------------------------------
# resolve_target
# ---------------------------------------------------------------------------

class TestResolveTarget:
    def test_speaker_result(self):
        assert resolve_target(_req("score_override", speaker_result_id="sr1")) == (
            "speaker_result", "sr1", "speaker:sr1"
        )

    def test_round_result(self):
        assert resolve_target(_req("forfeit", pairing_id="p1")) == (
            "round_result", "p1", "round_result:p1"
        )

    def test_bye_keyed_by_round(self):
        assert resolve_target(_req("bye_assigned", registration_id="r1", round_id="rd2")) == (
            "registration", "r1", "bye:r1:rd2"
        )

    def test_tiebreaker_pair_is_unordered(self):
        a = resolve_target(_req(
            "tiebreaker_override", higher_registration_id="r2", lower_registration_id="r1"
        ))
        b = resolve_target(_req(
            "tiebreaker_override", higher_registration_id="r1", lower_registration_id="r2"
        ))
        assert a == b == ("head_to_head", "r1:r2", "tiebreaker:r1:r2")

    def test_unknown_action(self):
        with pytest.raises(OverrideValidationError, match="unknown action"):
            resolve_target(_req("undo"))

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reason_required(self, reason):
        with pytest.raises(OverrideValidationError, match="'reason' is required"):
            resolve_target(_req("dq", registration_id="r1", reason=reason))

    def test_user_required(self):
        with pytest.raises(OverrideValidationError, match="'user_id' is required"):
            resolve_target(_req("dq", registration_id="r1", user_id=""))

    def test_target_required(self):
        with pytest.raises(OverrideValidationError, match="'pairing_id' is required"):
            resolve_target(_req("result_correction", winner_side="aff"))

    def test_tiebreaker_needs_distinct_registrations(self):
        with pytest.raises(OverrideValidationError, match="must differ"):
            resolve_target(_req(
                "tiebreaker_override", higher_registration_id="r1", lower_registration_id="r1"
            ))


# ---------------------------------------------------------------------------
# build_new_value
# ---------------------------------------------------------------------------

class TestBuildNewValue:
    def test_score_override_keeps_identity(self):
        new = build_new_value(
            _req("score_override", speaker_result_id="sr1", points_tenths=285), SPEAKER
        )
        assert new == SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 285)

    def test_score_override_needs_existing_result(self):
        with pytest.raises(OverrideValidationError, match="not found"):
            build_new_value(_req("score_override", speaker_result_id="sr1", points_tenths=285), None)

    def test_score_override_needs_points(self):
        with pytest.raises(OverrideValidationError, match="'points' is required"):
            build_new_value(_req("speaker_points_edit", speaker_result_id="sr1"), SPEAKER)

    def test_points_outside_bounds(self):
        with pytest.raises(OverrideValidationError, match="outside"):
            build_new_value(
                _req("score_override", speaker_result_id="sr1", points_tenths=1001),
                SPEAKER,
                default_rules(),
            )

    def test_forfeit_awards_other_side(self):
        new = build_new_value(_req("forfeit", pairing_id="p1", forfeiting_side="aff"), None)
        assert new == RoundResultSnapshot("p1", "neg", forfeit=True, dq=False, bye=False)

    def test_forfeit_needs_side(self):
        with pytest.raises(OverrideValidationError, match="forfeiting_side"):
            build_new_value(_req("forfeit", pairing_id="p1"), None)

    def test_result_correction(self):
        current = RoundResultSnapshot("p1", "aff", forfeit=True, dq=False, bye=False)
        new = build_new_value(_req("result_correction", pairing_id="p1", winner_side="neg"), current)
        assert new == RoundResultSnapshot("p1", "neg", forfeit=False, dq=False, bye=False)

    def test_result_correction_bad_side(self):
        with pytest.raises(OverrideValidationError, match="aff/neg"):
            build_new_value(_req("result_correction", pairing_id="p1", winner_side="gov"), None)

    def test_result_correction_without_result(self):
        with pytest.raises(OverrideValidationError, match="no recorded result to correct"):
            build_new_value(_req("result_correction", pairing_id="p1", winner_side="neg"), None)

    def test_dq_and_lift(self):
        on = build_new_value(_req("dq", registration_id="r1"), None)
        off = build_new_value(_req("dq", registration_id="r1", disqualified=False), on)
        assert on.disqualified is True
        assert off.disqualified is False

    def test_bye(self):
        new = build_new_value(_req("bye_assigned", registration_id="r1", round_id="rd2"), None)
        assert new == RegistrationSnapshot("r1", None, "rd2", True)

    def test_manual_rank_and_clear(self):
        assert build_new_value(_req("manual_rank", registration_id="r1", target_rank=2), None) == (
            ComputedStandingSnapshot("r1", 2)
        )
        assert build_new_value(_req("manual_rank", registration_id="r1"), None) == (
            ComputedStandingSnapshot("r1", None)
        )

    def test_manual_rank_must_be_positive(self):
        with pytest.raises(OverrideValidationError, match=">= 1"):
            build_new_value(_req("manual_rank", registration_id="r1", target_rank=0), None)

    def test_tiebreaker(self):
        new = build_new_value(
            _req("tiebreaker_override", higher_registration_id="r2", lower_registration_id="r1"),
            None,
        )
        assert new == HeadToHeadSnapshot("r1", "r2", "r2")

    def test_replay_yields_same_value(self):
        req = _req("score_override", speaker_result_id="sr1", points_tenths=290)
        once = build_new_value(req, SPEAKER)
        assert build_new_value(req, once) == once


# ---------------------------------------------------------------------------
# build_overlay
# ---------------------------------------------------------------------------

class TestBuildOverlay:
    def test_last_write_wins_by_created_at(self):
        first = _entry(2, SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 280), seconds=0)
        second = _entry(1, SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 290), seconds=5)
        overlay = build_overlay([second, first])
        assert overlay.speaker_points == {"sr1": 290}
        assert overlay.source("speaker:sr1") == "audit:1"

    def test_id_breaks_timestamp_ties(self):
        a = _entry(3, SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 280))
        b = _entry(4, SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 295))
        assert build_overlay([b, a]).speaker_points == {"sr1": 295}

    def test_replaying_an_entry_keeps_value(self):
        snap = SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 285)
        once = build_overlay([_entry(1, snap)])
        twice = build_overlay([_entry(1, snap), _entry(2, snap, seconds=1)])
        assert once.speaker_points == twice.speaker_points

    def test_families(self):
        overlay = build_overlay([
            _entry(1, RoundResultSnapshot("p1", "neg", True, False, False), action="forfeit"),
            _entry(2, RegistrationSnapshot("r1", True, None, None), action="dq"),
            _entry(3, RegistrationSnapshot("r2", None, "rd1", True), action="bye_assigned"),
            _entry(4, ComputedStandingSnapshot("r3", 1), action="manual_rank"),
            _entry(5, HeadToHeadSnapshot("r1", "r2", "r2"), action="tiebreaker_override"),
        ])
        assert overlay.round_results["p1"].winner_side == "neg"
        assert overlay.disqualified_ids() == frozenset({"r1"})
        assert overlay.granted_byes() == [("r2", "rd1")]
        assert overlay.manual_ranks == {"r3": 1}
        assert overlay.tiebreak_higher("r2", "r1") == "r2"
        assert overlay.tiebreak_higher("r1", "r3") is None

    def test_bye_and_dq_do_not_collide(self):
        overlay = build_overlay([
            _entry(1, RegistrationSnapshot("r1", True, None, None), action="dq"),
            _entry(2, RegistrationSnapshot("r1", None, "rd1", True), action="bye_assigned", seconds=1),
        ])
        assert overlay.disqualified_ids() == frozenset({"r1"})
        assert overlay.granted_byes() == [("r1", "rd1")]

    def test_conflicts_reported(self):
        overlay = build_overlay([
            _entry(1, SPEAKER),
            _entry(2, SPEAKER, seconds=1, conflicts_with=1),
        ])
        assert overlay.conflicts == (2,)

    def test_empty(self):
        overlay = build_overlay([])
        assert overlay.disqualified_ids() == frozenset()
        assert overlay.source("dq:r1") is None


# ---------------------------------------------------------------------------
# format_history
# ---------------------------------------------------------------------------

class TestFormatHistory:
    def test_empty(self):
        assert format_history([]) == "(no audit entries)"

    def test_line_per_entry(self):
        e = TabAuditEntry(
            id=7,
            tournament_id="t1",
            action="score_override",
            entity_type="speaker_result",
            entity_id="sr1",
            old_value=SPEAKER,
            new_value=SpeakerResultSnapshot("sr1", "p1", "r1", "aff", 285),
            reason="recount",
            user_id="tab_director",
            created_at=T0,
            conflicts_with_entry_id=6,
        )
        out = format_history([e])
        assert "#7" in out
        assert "27.5 pts -> 28.5 pts" in out
        assert "reason: recount" in out
        assert "CONFLICT with #6" in out
