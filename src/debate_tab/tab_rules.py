"""debate_tab.tab_rules

YAML-based configuration for the tabulation core.

Responsibilities:
  - Load and validate YAML rule files from config/tab_rules/*.yml
  - Map a match confidence onto an operator-facing band
  - Carry the disqualification policy, speaker-point bounds and
    recompute debounce/staleness windows
  - Hash YAML content for traceability

Usage:
    from pathlib import Path
    from debate_tab.tab_rules import load_tab_rules

    rules = load_tab_rules(Path("config/tab_rules/default.yml"))
    rules.band_for_confidence(0.83)   # -> "good"
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULES_PATH = (
    Path(__file__).resolve().parent.parent.parent / "config" / "tab_rules" / "default.yml"
)

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "confidence_bands",
    "dq_policy",
    "speaker_points",
    "recompute",
})

REQUIRED_BAND_KEYS = frozenset({"exact", "good", "low"})

# zero_out:        the DQ'd registration loses every round it played with zero
#                  speaks; opponents keep the result they actually earned.
# award_opponents: as zero_out, and every opponent who lost to the DQ'd
#                  registration is credited with the win instead.
VALID_DQ_POLICIES = ("zero_out", "award_opponents")

BANDS = ("exact", "good", "low", "no_match")
AUTO_SELECT_BANDS = frozenset({"exact", "good"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TabRulesValidationError(ValueError):
    """Raised when a YAML rule file fails schema validation."""


# ---------------------------------------------------------------------------
# TabRules dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TabRules:
    """Parsed, validated tabulation configuration."""

    version: str
    confidence_bands: dict[str, float]
    dq_policy: str = "zero_out"
    speaker_points_min: float = 0.0
    speaker_points_max: float = 100.0
    debounce_seconds: float = 5.0
    staleness_seconds: float = 30.0
    yaml_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    @property
    def threshold_exact(self) -> float:
        return float(self.confidence_bands["exact"])

    @property
    def threshold_good(self) -> float:
        return float(self.confidence_bands["good"])

    @property
    def threshold_low(self) -> float:
        return float(self.confidence_bands["low"])

    @property
    def speaker_points_min_tenths(self) -> int:
        return round(self.speaker_points_min * 10)

    @property
    def speaker_points_max_tenths(self) -> int:
        return round(self.speaker_points_max * 10)

    def band_for_confidence(self, confidence: float | None) -> str:
        """Return exact / good / low / no_match for a numeric confidence."""
        if confidence is None or confidence < self.threshold_low:
            return "no_match"
        if confidence >= self.threshold_exact:
            return "exact"
        if confidence >= self.threshold_good:
            return "good"
        return "low"


def default_rules() -> TabRules:
    """Rules matching config/tab_rules/default.yml without touching disk."""
    return TabRules(
        version="v1",
        confidence_bands={"exact": 0.95, "good": 0.80, "low": 0.50},
    )


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_tab_rules(yaml_path: Path | None = None) -> TabRules:
    """Load, validate, and return TabRules from a YAML file.

    Args:
        yaml_path: Path to the YAML file; defaults to the bundled
            config/tab_rules/default.yml.

    Raises:
        TabRulesValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_RULES_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_tab_rules(data)
    sp = data["speaker_points"]
    rc = data["recompute"]
    return TabRules(
        version=str(data["version"]),
        confidence_bands={k: float(v) for k, v in data["confidence_bands"].items()},
        dq_policy=str(data["dq_policy"]),
        speaker_points_min=float(sp["min"]),
        speaker_points_max=float(sp["max"]),
        debounce_seconds=float(rc["debounce_seconds"]),
        staleness_seconds=float(rc["staleness_seconds"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        raw_yaml=raw,
    )


def _as_float(label: str, val: Any) -> float:
    try:
        return float(val)
    except (TypeError, ValueError):
        raise TabRulesValidationError(f"'{label}' value '{val}' is not numeric.")


def validate_tab_rules(data: dict[str, Any]) -> None:
    """Raise TabRulesValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - confidence bands in [0, 1] with low <= good <= exact
      - dq_policy is one of the allowed values
      - speaker point bounds min < max, both >= 0
      - recompute windows >= 0
    """
    if not isinstance(data, dict):
        raise TabRulesValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise TabRulesValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    bands = data.get("confidence_bands") or {}
    if not isinstance(bands, dict):
        raise TabRulesValidationError("'confidence_bands' must be a mapping.")
    missing_bands = REQUIRED_BAND_KEYS - set(bands.keys())
    if missing_bands:
        raise TabRulesValidationError(f"Missing confidence band keys: {sorted(missing_bands)}")
    for key, val in bands.items():
        fval = _as_float(f"confidence_bands.{key}", val)
        if not (0.0 <= fval <= 1.0):
            raise TabRulesValidationError(
                f"Confidence band '{key}' value {fval} must be in [0.0, 1.0]."
            )
    low, good, exact = float(bands["low"]), float(bands["good"]), float(bands["exact"])
    if low > good:
        raise TabRulesValidationError(f"'low' band ({low}) must be <= 'good' ({good}).")
    if good > exact:
        raise TabRulesValidationError(f"'good' band ({good}) must be <= 'exact' ({exact}).")

    policy = data.get("dq_policy")
    if policy not in VALID_DQ_POLICIES:
        raise TabRulesValidationError(
            f"Invalid dq_policy '{policy}'. Must be one of {list(VALID_DQ_POLICIES)}."
        )

    sp = data.get("speaker_points") or {}
    if not isinstance(sp, dict) or not {"min", "max"} <= set(sp.keys()):
        raise TabRulesValidationError("'speaker_points' must define 'min' and 'max'.")
    sp_min = _as_float("speaker_points.min", sp["min"])
    sp_max = _as_float("speaker_points.max", sp["max"])
    if sp_min < 0 or sp_min >= sp_max:
        raise TabRulesValidationError(
            f"speaker_points bounds must satisfy 0 <= min < max (got {sp_min}, {sp_max})."
        )

    rc = data.get("recompute") or {}
    if not isinstance(rc, dict):
        raise TabRulesValidationError("'recompute' must be a mapping.")
    for key in ("debounce_seconds", "staleness_seconds"):
        if key not in rc:
            raise TabRulesValidationError(f"Missing recompute key: '{key}'")
        if _as_float(f"recompute.{key}", rc[key]) < 0:
            raise TabRulesValidationError(f"recompute.{key} must be >= 0.")
