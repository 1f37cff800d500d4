"""
String & geo similarity utilities.

Pure functions with no I/O: name normalization, Jaro-Winkler similarity,
great-circle distance and slug generation.
"""

import math
import re
from typing import Optional

EARTH_RADIUS_KM = 6371.0
WINKLER_PREFIX_LIMIT = 4
WINKLER_PREFIX_WEIGHT = 0.1

_NON_NAME_CHARS = re.compile(r"[^a-z0-9\s]")
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


def normalize_name(name: Optional[str]) -> str:
    """
    Lowercase, drop everything outside [a-z0-9 whitespace], collapse whitespace.

    Example: "Hilton  Garden Inn (Times Sq.)" -> "hilton garden inn times sq"
    """
    if not isinstance(name, str):
        return ""
    text = _NON_NAME_CHARS.sub("", name.lower())
    return _WHITESPACE.sub(" ", text).strip()


def jaro_similarity(s1: str, s2: str) -> float:
    """Standard Jaro similarity in [0, 1]."""
    if s1 == s2:
        return 1.0
    len1, len2 = len(s1), len(s2)
    if len1 == 0 or len2 == 0:
        return 0.0

    # The greedy scan depends on operand order; fix it so the score is symmetric
    if (len1, s1) > (len2, s2):
        s1, s2 = s2, s1
        len1, len2 = len2, len1

    match_window = max(0, max(len1, len2) // 2 - 1)
    s1_matches = [False] * len1
    s2_matches = [False] * len2

    matches = 0
    for i in range(len1):
        start = max(0, i - match_window)
        end = min(i + match_window + 1, len2)
        for j in range(start, end):
            if s2_matches[j] or s1[i] != s2[j]:
                continue
            s1_matches[i] = True
            s2_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(len1):
        if not s1_matches[i]:
            continue
        while not s2_matches[k]:
            k += 1
        if s1[i] != s2[k]:
            transpositions += 1
        k += 1

    return (
        matches / len1
        + matches / len2
        + (matches - transpositions / 2) / matches
    ) / 3


def common_prefix_length(s1: str, s2: str, limit: int = WINKLER_PREFIX_LIMIT) -> int:
    n = min(len(s1), len(s2), limit)
    for i in range(n):
        if s1[i] != s2[i]:
            return i
    return n


def jaro_winkler(s1: str, s2: str) -> float:
    """
    Jaro-Winkler similarity in [0, 1].

    Jaro score boosted by up to 4 leading common characters at 0.1 each:
    ``jaro + prefix * 0.1 * (1 - jaro)``. Identical strings score 1.0,
    strings with no matching characters score 0.0.
    """
    jaro = jaro_similarity(s1, s2)
    if jaro == 0.0 or jaro == 1.0:
        return jaro
    prefix = common_prefix_length(s1, s2)
    return min(1.0, jaro + prefix * WINKLER_PREFIX_WEIGHT * (1 - jaro))


def name_similarity(name1: str, name2: str) -> float:
    """
    Jaro-Winkler on normalized names; exact normalized match is 1.0.

    A name that normalizes to nothing (e.g. written only in non-Latin
    script) carries no evidence and scores 0.0 against anything.
    """
    n1 = normalize_name(name1)
    n2 = normalize_name(name2)
    if not n1 or not n2:
        return 0.0
    if n1 == n2:
        return 1.0
    return jaro_winkler(n1, n2)


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def slugify(name: str, city: Optional[str] = None, max_length: int = 100) -> str:
    """
    URL-safe slug from hotel name and city.

    Example: ("Marriott Marquis", "New York") -> "marriott-marquis-new-york"
    """
    combined = f"{name} {city}" if city else name
    slug = _NON_SLUG_CHARS.sub("", (combined or "").lower())
    slug = _WHITESPACE.sub("-", slug.strip())
    slug = _HYPHENS.sub("-", slug).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "hotel"


def with_suffix(base_slug: str, attempt: int) -> str:
    """Slug for the given attempt: base, then base-2, base-3, ..."""
    return base_slug if attempt <= 1 else f"{base_slug}-{attempt}"
