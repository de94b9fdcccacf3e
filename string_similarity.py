"""
Normalized Levenshtein similarity used to compare artist and track names
across scrobbling services
"""
import Levenshtein


def levenshtein_distance(s1: str, s2: str) -> int:
    """Minimum number of single-character insertions, deletions or substitutions"""
    return Levenshtein.distance(s1, s2)


def similarity(s1: str, s2: str) -> float:
    """Similarity in [0.0, 1.0]: 1 - distance / longest length"""
    if not s1 and not s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    return 1.0 - (distance / max(len(s1), len(s2)))
