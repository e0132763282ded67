from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

logger = logging.getLogger(__name__)

MAX_EDIT_DISTANCE = 3
MIN_SUBSTRING_LENGTH = 5


@dataclass
class Reconciliation:
    """Outcome of matching loaded aliases against the available list."""

    match: str | None = None
    rule: str | None = None
    available: list[str] = field(default_factory=list)


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def find_exact(alias: str, candidates: Sequence[str]) -> str | None:
    key = alias.lower()
    for candidate in candidates:
        if candidate.lower() == key:
            return candidate
    return None


def merge_aliases(*groups: Sequence[str]) -> list[str]:
    """Union in first-seen order, case-insensitive."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for alias in group:
            if not alias or alias.lower() in seen:
                continue
            seen.add(alias.lower())
            merged.append(alias)
    return merged


def _substring(loaded: Sequence[str], pool: Sequence[str], min_len: int) -> str | None:
    for name in loaded:
        low = name.lower()
        for candidate in pool:
            cand = candidate.lower()
            if min(len(low), len(cand)) <= min_len:
                continue
            if low in cand or cand in low:
                return candidate
    return None


def _affix(loaded: Sequence[str], pool: Sequence[str]) -> str | None:
    for name in loaded:
        low = name.lower()
        for candidate in pool:
            cand = candidate.lower()
            if cand.startswith(low) or low.startswith(cand) or cand.endswith(low) or low.endswith(cand):
                return candidate
    return None


def _nearest(loaded: Sequence[str], pool: Sequence[str], max_distance: int) -> str | None:
    best: tuple[int, str] | None = None
    for name in loaded:
        for candidate in pool:
            distance = levenshtein(name.lower(), candidate.lower())
            if best is None or distance < best[0]:
                best = (distance, candidate)
    if best is not None and best[0] <= max_distance:
        return best[1]
    return None


def reconcile(
    available: Sequence[str],
    loaded: Sequence[str],
    max_edit_distance: int = MAX_EDIT_DISTANCE,
    min_substring_length: int = MIN_SUBSTRING_LENGTH,
    allow_injection: bool = True,
) -> Reconciliation:
    """
    Pick the available alias that corresponds to a loaded one.

    First hit wins: exact (case-insensitive), substring containment when the
    shorter side is longer than `min_substring_length`, prefix/suffix, then the
    closest pair by edit distance. A lone loaded alias that none of these place
    is taken as-is and appended to `result.available`.
    """
    pool = list(available)
    result = Reconciliation(available=pool)
    if not loaded:
        return result

    for name in loaded:
        hit = find_exact(name, pool)
        if hit is not None:
            result.match, result.rule = hit, "exact"
            return result

    steps = (
        ("substring", lambda: _substring(loaded, pool, min_substring_length)),
        ("affix", lambda: _affix(loaded, pool)),
        ("distance", lambda: _nearest(loaded, pool, max_edit_distance)),
    )
    for rule, step in steps:
        hit = step()
        if hit is not None:
            result.match, result.rule = hit, rule
            return result

    if allow_injection and len(loaded) == 1:
        pool.append(loaded[0])
        result.match, result.rule = loaded[0], "injected"
        return result

    logger.debug("no alias match for loaded=%s", list(loaded))
    return result


def match_alias(
    requested: str,
    reported: Sequence[str],
    max_edit_distance: int = MAX_EDIT_DISTANCE,
    min_substring_length: int = MIN_SUBSTRING_LENGTH,
) -> str | None:
    """Which entry of a loaded-model report stands for `requested`."""
    if not requested or not reported:
        return None
    found = reconcile(
        reported,
        [requested],
        max_edit_distance=max_edit_distance,
        min_substring_length=min_substring_length,
        allow_injection=False,
    )
    return found.match
