"""Unit tests for debate_tab.team_matcher."""

from __future__ import annotations

import pytest

from debate_tab.tab_models import Registration
from debate_tab.tab_rules import default_rules
from debate_tab.team_matcher import (
    best_match,
    candidate_keys,
    confidence_for_distance,
    levenshtein,
    match_team,
)


def _reg(rid, display, p1=None, p2=None, withdrawn=False):
    return Registration(
        id=rid,
        tournament_id="t1",
        display_name=display,
        participant_name=p1,
        partner_name=p2,
        withdrawn=withdrawn,
    )


ROSTER = [
    _reg("r1", "Smith & Jones (Lincoln HS)", "Alex Smith", "Jordan Jones"),
    _reg("r2", "Lee/Patel (Kennedy HS)", "Dana Lee", "Priya Patel"),
    _reg("r3", "Nguyen & Okafor (Central)", "Bao Nguyen", "Chi Okafor"),
]


# ---------------------------------------------------------------------------
# levenshtein
# ---------------------------------------------------------------------------

class TestLevenshtein:
    @pytest.mark.parametrize("a,b,d", [
        ("", "", 0),
        ("abc", "", 3),
        ("", "abc", 3),
        ("kitten", "sitting", 3),
        ("flaw", "lawn", 2),
        ("smith jones", "smith jones", 0),
        ("smyth jones", "smith jones", 1),
    ])
    def test_distances(self, a, b, d):
        assert levenshtein(a, b) == d

    def test_symmetric(self):
        assert levenshtein("lee patel", "patel lee") == levenshtein("patel lee", "lee patel")


class TestConfidenceForDistance:
    def test_exact(self):
        assert confidence_for_distance(0, 10) == 1.0

    def test_floor_at_zero(self):
        assert confidence_for_distance(15, 10) == 0.0

    def test_empty_query(self):
        assert confidence_for_distance(0, 0) == 0.0

    def test_monotonic_in_distance(self):
        scores = [confidence_for_distance(d, 12) for d in range(0, 15)]
        assert scores == sorted(scores, reverse=True)


# ---------------------------------------------------------------------------
# candidate_keys
# ---------------------------------------------------------------------------

class TestCandidateKeys:
    def test_two_person_team(self):
        keys = candidate_keys(ROSTER[0])
        assert "smith jones" in keys
        assert "jones smith" in keys
        assert "alex smith jordan jones" in keys
        assert "jordan jones alex smith" in keys

    def test_single_person(self):
        keys = candidate_keys(_reg("r9", "Ana Ruiz (Westside)", "Ana Ruiz"))
        assert "ana ruiz" in keys
        assert "ruiz" in keys

    def test_display_name_only(self):
        assert candidate_keys(_reg("r9", "Kim/Park")) == ["kim park", "park kim"]


# ---------------------------------------------------------------------------
# match_team
# ---------------------------------------------------------------------------

class TestMatchTeam:
    def test_slash_query_matches_ampersand_roster(self):
        m = best_match("Smith/Jones", ROSTER)
        assert m is not None
        assert m.registration_id == "r1"
        assert m.confidence >= 0.80

    def test_ampersand_query_matches_slash_roster(self):
        m = best_match("Lee & Patel", ROSTER)
        assert m is not None
        assert m.registration_id == "r2"
        assert m.confidence >= 0.80

    def test_reversed_member_order_is_exact(self):
        m = best_match("Jones / Smith", ROSTER)
        assert m.registration_id == "r1"
        assert m.band == "exact"

    def test_typo_still_good(self):
        m = best_match("Smyth/Jones", ROSTER)
        assert m.registration_id == "r1"
        assert m.band == "good"
        assert m.distance == 1

    def test_accents_and_case_ignored(self):
        m = best_match("NGUYÊN & OKAFOR", ROSTER)
        assert m.registration_id == "r3"
        assert m.band == "exact"

    def test_unknown_team_is_no_match(self):
        assert match_team("Zhang/Wu", ROSTER) == []

    def test_blank_query(self):
        assert match_team("  ", ROSTER) == []

    def test_withdrawn_registrations_skipped(self):
        roster = [_reg("w1", "Smith & Jones", withdrawn=True)]
        assert match_team("Smith/Jones", roster) == []

    def test_best_first_then_id(self):
        roster = [
            _reg("b", "Smith & Jones"),
            _reg("a", "Smith & Jones"),
            _reg("c", "Smith & Jonas"),
        ]
        ids = [m.registration_id for m in match_team("Smith/Jones", roster)]
        assert ids == ["a", "b", "c"]

    def test_more_edits_never_score_higher(self):
        rules = default_rules()
        roster = [
            _reg("e0", "Smith & Jones"),
            _reg("e1", "Smith & Jonez"),
            _reg("e2", "Smitt & Jonez"),
            _reg("e3", "Smitt & Jopez"),
        ]
        matches = {m.registration_id: m for m in match_team("Smith/Jones", roster, rules)}
        ordered = [matches[r] for r in ("e0", "e1", "e2", "e3")]
        assert [m.distance for m in ordered] == [0, 1, 2, 3]
        confidences = [m.confidence for m in ordered]
        assert confidences == sorted(confidences, reverse=True)
