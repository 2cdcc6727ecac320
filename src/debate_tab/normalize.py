"""Normalization functions for tabulation inputs.

All functions accept str | None and return the appropriate type or None.
Used by ballot ingestion, the legacy pairing import and the team matcher.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation

_TRUE_TOKENS = frozenset({"1", "true", "t", "yes", "y", "x"})
_FALSE_TOKENS = frozenset({"0", "false", "f", "no", "n", ""})

# Team separators in human-typed pairing sheets: "Smith/Jones", "Lee & Patel",
# "Kim + Park", "Cho and Diaz".
_TEAM_SEPARATOR_RE = re.compile(r"\s*(?:/|&|\+|\band\b)\s*", re.IGNORECASE)
_PARENTHETICAL_RE = re.compile(r"\([^)]*\)|\[[^\]]*\]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (for roster matching)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, drop accents, remove punctuation except spaces, collapse spaces."""
    v = trim(value)
    if v is None:
        return None
    # Decompose unicode (e.g. accented chars) then drop combining marks
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: team names
# ---------------------------------------------------------------------------

def strip_parenthetical(value: str | None) -> str | None:
    """Remove '(Lincoln HS)' / '[Kennedy]' style school suffixes."""
    v = trim(value)
    if v is None:
        return None
    return normalize_space(_PARENTHETICAL_RE.sub(" ", v))


def split_team_members(value: str | None) -> list[str]:
    """Split a team label into its member tokens, school suffix removed.

    "Smith/Jones (Lincoln HS)" → ["smith", "jones"]
    "Lee & Patel"              → ["lee", "patel"]
    "Ana Ruiz"                 → ["ana ruiz"]
    """
    v = strip_parenthetical(value)
    if v is None:
        return []
    parts = []
    for raw in _TEAM_SEPARATOR_RE.split(v):
        norm = normalize_name(raw)
        if norm:
            parts.append(norm)
    return parts


def normalize_team_name(value: str | None) -> str | None:
    """Canonical comparison form of a team label; members joined by one space."""
    parts = split_team_members(value)
    return " ".join(parts) if parts else None


def surname(full_name: str | None) -> str | None:
    """Return the normalized last token of a person's name.

    "Jones, Alex" is treated as last-name-first.
    """
    v = normalize_space(full_name)
    if v is None:
        return None
    if "," in v:
        return normalize_name(v.split(",", 1)[0])
    norm = normalize_name(v)
    if norm is None:
        return None
    return norm.split(" ")[-1]


# ---------------------------------------------------------------------------
# Rule 5: numeric / flag parsing
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number from a string, returning None on failure."""
    v = trim(value)
    if v is None:
        return None
    try:
        return Decimal(v)
    except InvalidOperation:
        return None


def parse_speaker_points(value: str | None) -> int | None:
    """Parse a speaker score into integer tenths of a point.

    "28.5" → 285, "29" → 290.  Scores finer than a tenth, non-finite values
    and unparseable text return None.
    """
    d = parse_numeric(value)
    if d is None or not d.is_finite():
        return None
    tenths = d * 10
    if tenths != tenths.to_integral_value():
        return None
    return int(tenths)


def tenths_to_decimal(tenths: int) -> Decimal:
    """Integer tenths back to a one-place Decimal for display."""
    return (Decimal(tenths) / 10).quantize(Decimal("0.1"))


def parse_bool(value: str | None) -> bool | None:
    """Parse a CSV flag column.  Blank → False; unknown token → None."""
    v = (value or "").strip().lower()
    if v in _TRUE_TOKENS:
        return True
    if v in _FALSE_TOKENS:
        return False
    return None


def parse_int(value: str | None) -> int | None:
    v = trim(value)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        return None
