"""debate_tab.team_matcher

Fuzzy matching of human-typed team names against the roster.

A pure function of (query, roster): no caching, no database access.  Every
registration contributes several comparison keys (display name in both
member orders, surname pair in both orders, full names in both orders);
the query's confidence against a registration is derived from its smallest
Levenshtein distance to any of those keys:

    confidence = max(0, 1 - distance / len(query))

For a fixed query the denominator is constant, so a smaller edit distance
never scores lower than a larger one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from debate_tab.normalize import (
    normalize_name,
    normalize_team_name,
    split_team_members,
    surname,
)
from debate_tab.tab_models import Registration
from debate_tab.tab_rules import TabRules, default_rules


@dataclass(frozen=True)
class TeamMatch:
    registration_id: str
    display_name: str
    confidence: float
    band: str
    matched_key: str
    distance: int


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert / delete / substitute, unit cost)."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def confidence_for_distance(distance: int, query_length: int) -> float:
    if query_length <= 0:
        return 0.0
    return round(max(0.0, 1.0 - distance / query_length), 4)


def candidate_keys(reg: Registration) -> list[str]:
    """Normalized strings a sheet might use to name this registration."""
    keys: set[str] = set()
    members = split_team_members(reg.display_name)
    if members:
        keys.add(" ".join(members))
        keys.add(" ".join(reversed(members)))

    people = [n for n in (reg.participant_name, reg.partner_name) if normalize_name(n)]
    if len(people) == 2:
        s1, s2 = surname(people[0]), surname(people[1])
        if s1 and s2:
            keys.add(f"{s1} {s2}")
            keys.add(f"{s2} {s1}")
        f1 = normalize_team_name(people[0])
        f2 = normalize_team_name(people[1])
        if f1 and f2:
            keys.add(f"{f1} {f2}")
            keys.add(f"{f2} {f1}")
    elif len(people) == 1:
        full = normalize_team_name(people[0])
        if full:
            keys.add(full)
        last = surname(people[0])
        if last:
            keys.add(last)
    return sorted(keys)


def match_team(
    name: str | None,
    roster: Iterable[Registration],
    rules: TabRules | None = None,
) -> list[TeamMatch]:
    """Rank roster candidates for ``name``, best first.

    Withdrawn registrations and candidates below the configured low floor
    are dropped; an empty list means "no match".  Ties are ordered by
    registration id.
    """
    rules = rules or default_rules()
    query = normalize_team_name(name)
    if query is None:
        return []

    matches = []
    for reg in roster:
        if reg.withdrawn:
            continue
        best: tuple[int, str] | None = None
        for key in candidate_keys(reg):
            d = levenshtein(query, key)
            if best is None or (d, key) < best:
                best = (d, key)
        if best is None:
            continue
        confidence = confidence_for_distance(best[0], len(query))
        band = rules.band_for_confidence(confidence)
        if band == "no_match":
            continue
        matches.append(TeamMatch(
            registration_id=reg.id,
            display_name=reg.display_name,
            confidence=confidence,
            band=band,
            matched_key=best[1],
            distance=best[0],
        ))
    matches.sort(key=lambda m: (-m.confidence, m.registration_id))
    return matches


def best_match(
    name: str | None,
    roster: Iterable[Registration],
    rules: TabRules | None = None,
) -> TeamMatch | None:
    matches = match_team(name, roster, rules)
    return matches[0] if matches else None
