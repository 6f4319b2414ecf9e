"""Numeric dotted-version comparison"""

import re
from itertools import zip_longest
from typing import Tuple

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")


def version_tuple(version: str) -> Tuple[int, ...]:
    """
    Split a dotted version into integer segments

    Segments without leading digits count as 0, so "1.2-beta" reads as (1, 2).
    """
    parts = []
    for segment in (version or "").strip().split("."):
        match = _LEADING_DIGITS.match(segment)
        parts.append(int(match.group(1)) if match else 0)
    return tuple(parts)


def compare_versions(left: str, right: str) -> int:
    """
    Compare two versions segment by segment

    Missing trailing segments are treated as 0 ("1.0" == "1.0.0").

    Returns:
        -1 if left < right, 0 if equal, 1 if left > right
    """
    for a, b in zip_longest(version_tuple(left), version_tuple(right), fillvalue=0):
        if a != b:
            return -1 if a < b else 1
    return 0


def is_newer(candidate: str, current: str) -> bool:
    return compare_versions(candidate, current) > 0
