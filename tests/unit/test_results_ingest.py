"""Unit tests for debate_tab.results_ingest pure functions."""

from __future__ import annotations

import pytest

from debate_tab.results_ingest import (
    IngestCounters,
    SpeakerScore,
    build_ingest_report,
    normalize_ballot,
)
from debate_tab.shared import ResultValidationError
from debate_tab.tab_models import Pairing, RoundResult
from debate_tab.tab_rules import TabRules

PAIRING = Pairing(id="p1", round_id="rd1", aff_registration_id="ra", neg_registration_id="rn")
BYE = Pairing(id="p2", round_id="rd1", aff_registration_id="ra", neg_registration_id=None)
RULES = TabRules(
    version="test",
    confidence_bands={"exact": 0.95, "good": 0.80, "low": 0.50},
    speaker_points_min=20.0,
    speaker_points_max=30.0,
)


def _row(**kw):
    base = {"pairing_id": "p1", "winner_side": "aff", "forfeit": "", "dq": "",
            "aff_points": "", "neg_points": ""}
    base.update(kw)
    return base


class TestNormalizeBallot:
    def test_decided_round_with_points(self):
        result, scores = normalize_ballot(
            _row(winner_side=" AFF ", aff_points="28.5", neg_points="27"), PAIRING, RULES
        )
        assert result == RoundResult("p1", "aff", forfeit=False, dq=False, bye=False)
        assert scores == [SpeakerScore("ra", "aff", 285), SpeakerScore("rn", "neg", 270)]

    def test_points_optional(self):
        _, scores = normalize_ballot(_row(winner_side="neg"), PAIRING, RULES)
        assert scores == []

    def test_forfeit(self):
        result, _ = normalize_ballot(_row(winner_side="neg", forfeit="yes"), PAIRING, RULES)
        assert result.forfeit is True
        assert result.winner_side == "neg"

    def test_double_loss(self):
        result, _ = normalize_ballot(_row(winner_side="", dq="1"), PAIRING, RULES)
        assert result.winner_side is None
        assert result.dq is True

    def test_missing_winner(self):
        with pytest.raises(ResultValidationError, match="winner_side is required"):
            normalize_ballot(_row(winner_side=""), PAIRING, RULES)

    def test_bad_winner(self):
        with pytest.raises(ResultValidationError, match="not aff/neg"):
            normalize_ballot(_row(winner_side="gov"), PAIRING, RULES)

    def test_forfeit_and_dq_exclusive(self):
        with pytest.raises(ResultValidationError, match="mutually exclusive"):
            normalize_ballot(_row(forfeit="y", dq="y"), PAIRING, RULES)

    def test_unreadable_flag(self):
        with pytest.raises(ResultValidationError, match="unreadable"):
            normalize_ballot(_row(forfeit="maybe"), PAIRING, RULES)

    @pytest.mark.parametrize("points", ["30.1", "19.9"])
    def test_points_out_of_range(self, points):
        with pytest.raises(ResultValidationError, match="outside"):
            normalize_ballot(_row(aff_points=points), PAIRING, RULES)

    @pytest.mark.parametrize("points", ["28.25", "abc", "NaN"])
    def test_points_not_in_tenths(self, points):
        with pytest.raises(ResultValidationError, match="not a score in tenths"):
            normalize_ballot(_row(aff_points=points), PAIRING, RULES)

    def test_row_number_in_message(self):
        with pytest.raises(ResultValidationError, match="row 7 pairing p1"):
            normalize_ballot(_row(winner_side=""), PAIRING, RULES, row_number=7)

    def test_bye_accepts_blank_or_aff(self):
        for winner in ("", "aff"):
            result, scores = normalize_ballot(_row(pairing_id="p2", winner_side=winner), BYE, RULES)
            assert result == RoundResult("p2", "aff", bye=True)
            assert scores == []

    def test_bye_rejects_neg_win(self):
        with pytest.raises(ResultValidationError, match="bye pairing"):
            normalize_ballot(_row(pairing_id="p2", winner_side="neg"), BYE, RULES)

    def test_bye_rejects_points(self):
        with pytest.raises(ResultValidationError, match="no speaker points"):
            normalize_ballot(_row(pairing_id="p2", aff_points="28"), BYE, RULES)


class TestIngestReport:
    def test_counts_and_warnings(self):
        ctrs = IngestCounters(rows_read=3, results_inserted=2, rows_rejected=1,
                              warnings=["row 4: bad"])
        text = build_ingest_report(ctrs, dry_run=True)
        assert "DRY RUN" in text
        assert "results inserted        : 2" in text
        assert "! row 4: bad" in text

    def test_to_dict_caps_warnings(self):
        ctrs = IngestCounters(warnings=[f"w{i}" for i in range(80)])
        assert len(ctrs.to_dict()["warnings"]) == 50
