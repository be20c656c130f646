"""
String Similarity.

Levenshtein ratio used by the fuzzy description strategy.
"""

import re


def normalize_text(value: str) -> str:
    """Lowercase, alphanumerics only, single spaces."""
    if not value:
        return ''
    return ' '.join(re.findall(r'[a-z0-9]+', str(value).lower()))


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost
            ))
        previous = current
    return previous[-1]


def string_similarity(s1: str, s2: str) -> float:
    """
    Calculate similarity between two strings using Levenshtein ratio.

    Returns:
        Similarity score between 0 and 1.
    """
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    return 1.0 - levenshtein_distance(s1, s2) / max(len(s1), len(s2))


def description_similarity(a: str, b: str) -> float:
    """
    Similarity of two item descriptions.

    Best of the plain ratio and the ratio over alphabetically sorted
    words, so "Large Widget" and "Widget, Large" score 1.0.
    """
    na, nb = normalize_text(a), normalize_text(b)
    if not na or not nb:
        return 0.0
    plain = string_similarity(na, nb)
    sorted_a = ' '.join(sorted(na.split()))
    sorted_b = ' '.join(sorted(nb.split()))
    return max(plain, string_similarity(sorted_a, sorted_b))
