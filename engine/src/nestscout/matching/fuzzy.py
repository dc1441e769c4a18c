"""Fuzzy name matching against the roster of already-known devices.

Names are reduced to case-folded alphanumerics before comparison so
"Living Room Light", "living-room_light" and "LivingRoomLight" compare as
identical.
"""

from __future__ import annotations

from typing import Iterable


def normalize_name(name: str | None) -> str:
    """Case-fold and strip everything that is not a letter or digit."""
    if not name:
        return ""
    return "".join(ch for ch in name.casefold() if ch.isalnum())


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance using two rolling DP rows."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    curr = [0] * (len(b) + 1)

    for i in range(1, len(a) + 1):
        curr[0] = i
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr[j] = min(
                prev[j] + 1,         # deletion
                curr[j - 1] + 1,     # insertion
                prev[j - 1] + cost,  # substitution
            )
        prev, curr = curr, prev

    return prev[len(b)]


def similarity(a: str | None, b: str | None) -> float:
    """Normalized edit-distance similarity in [0.0, 1.0].

    Both names are normalized first. Two names that both reduce to the
    empty string are a degenerate non-match and score 0.0.
    """
    norm_a = normalize_name(a)
    norm_b = normalize_name(b)
    longest = max(len(norm_a), len(norm_b))
    if longest == 0:
        return 0.0
    return 1.0 - (edit_distance(norm_a, norm_b) / longest)


def best_match(
    name: str | None, roster: Iterable[str]
) -> tuple[str | None, float]:
    """Return the roster entry most similar to *name* and its similarity.

    Returns ``(None, 0.0)`` for an empty roster or an empty name. Ties keep
    the earliest roster entry.
    """
    best_name: str | None = None
    best_score = 0.0
    if not normalize_name(name):
        return (None, 0.0)
    for candidate in roster:
        score = similarity(name, candidate)
        if score > best_score:
            best_name, best_score = candidate, score
            if score == 1.0:
                break
    return (best_name, best_score)
