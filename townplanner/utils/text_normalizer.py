"""Field-name normalization and fuzzy matching helpers.

Metadata field names arrive from the model in many spellings
("Report Date", "report-date", "DateOfReport").  The registry keys every
definition by :func:`normalize_field_name` and uses rapidfuzz to spot
near-duplicates, so the catalogue does not fill up with variants of the
same field.
"""

from __future__ import annotations

import re
import unicodedata

from rapidfuzz import fuzz, process

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD = re.compile(r"[^a-z0-9]+")


def normalize_field_name(name: str) -> str:
    """Return the canonical snake_case key for a field name.

    >>> normalize_field_name("Report Issued-Date")
    'report_issued_date'
    >>> normalize_field_name("DateOfReport")
    'date_of_report'
    """
    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    )
    split = _CAMEL_BOUNDARY.sub("_", ascii_name.strip())
    return _NON_WORD.sub("_", split.lower()).strip("_")


def fuzzy_match(
    query: str,
    candidates: list[str],
    threshold: float = 0.8,
) -> tuple[str, float] | None:
    """Find the best fuzzy match for a query among candidates.

    Uses rapidfuzz ``token_sort_ratio`` so word-order differences
    ("date report" vs "report date") still match.

    Args:
        query: The string to match.
        candidates: List of candidate strings to match against.
        threshold: Minimum similarity score (0.0--1.0) to accept a match.

    Returns:
        A (best_match, score) tuple if a match meets the threshold, else None.
    """
    if not candidates:
        return None

    result = process.extractOne(
        query,
        candidates,
        scorer=fuzz.token_sort_ratio,
        score_cutoff=threshold * 100,
    )

    if result is None:
        return None

    match_str, score, _ = result
    return (match_str, score / 100.0)


def find_near_duplicate(
    name: str,
    existing: list[str],
    threshold: float = 0.85,
) -> str | None:
    """Return the existing normalized name that *name* duplicates, if any.

    Both sides are compared in normalized form.  An exact match wins, then
    a substring relation in either direction ("address" vs
    "site_address"), then a fuzzy token match above *threshold*.
    """
    key = normalize_field_name(name)
    if not key or not existing:
        return None
    if key in existing:
        return key

    substring_hits = [
        candidate for candidate in existing
        if len(candidate) >= 4 and len(key) >= 4
        and (candidate in key or key in candidate)
    ]
    if substring_hits:
        # Closest length first so "date" does not swallow "report_issued_date".
        substring_hits.sort(key=lambda c: (abs(len(c) - len(key)), c))
        return substring_hits[0]

    spaced = {candidate.replace("_", " "): candidate for candidate in existing}
    match = fuzzy_match(key.replace("_", " "), list(spaced), threshold=threshold)
    if match is None:
        return None
    return spaced[match[0]]


def value_in_text(value: str, text: str, threshold: float = 0.9) -> float:
    """Score (0.0--1.0) how well *value* is evidenced inside *text*.

    Exact case-insensitive containment scores 1.0; otherwise rapidfuzz
    ``partial_ratio`` is used and scores below *threshold* collapse to 0.0.
    """
    needle = value.strip().lower()
    if not needle or not text:
        return 0.0
    haystack = text.lower()
    if needle in haystack:
        return 1.0
    if len(needle) < 4:
        return 0.0
    score = fuzz.partial_ratio(needle, haystack) / 100.0
    return score if score >= threshold else 0.0


def word_count(text: str) -> int:
    return len(text.split())
