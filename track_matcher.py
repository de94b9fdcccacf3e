"""
Match a listen from the primary service against another service's history

Services disagree on exact scrobble timestamps (client vs server clocks,
queueing) but rarely by more than two minutes, while artist/title spelling
differs often. Matching therefore gates on timestamp first and only then
compares names.
"""
import logging
from typing import Iterable, Optional

from listen_models import Listen
from string_similarity import similarity

logger = logging.getLogger(__name__)

TIMESTAMP_WINDOW_SECONDS = 120
EXACT_MATCH_SECONDS = 5
DEFAULT_MATCH_THRESHOLD = 0.80


def normalize(text: str) -> str:
    return text.strip().casefold()


def timestamps_match(ts1: Optional[int], ts2: Optional[int]) -> bool:
    if ts1 is None and ts2 is None:
        return True
    if ts1 is None or ts2 is None:
        return False
    return abs(ts1 - ts2) < TIMESTAMP_WINDOW_SECONDS


def match_score(listen: Listen, candidate: Listen) -> float:
    """Mean of artist and track name similarity"""
    artist_score = similarity(normalize(listen.artist), normalize(candidate.artist))
    track_score = similarity(normalize(listen.name), normalize(candidate.name))
    return (artist_score + track_score) / 2


def find_best_match(listen: Listen, candidates: Iterable[Listen], service_name: str = "",
                    threshold: float = DEFAULT_MATCH_THRESHOLD) -> Optional[Listen]:
    """Best candidate within the timestamp window scoring at least threshold, or None"""
    best_match = None
    best_score = 0.0
    checked = 0
    skipped_timestamp = 0
    skipped_similarity = 0

    for candidate in candidates:
        checked += 1

        if not timestamps_match(listen.date, candidate.date):
            skipped_timestamp += 1
            continue

        delta = abs((listen.date or 0) - (candidate.date or 0))
        if delta <= EXACT_MATCH_SECONDS:
            logger.debug(f"Exact match in {service_name}: '{candidate.artist} - {candidate.name}' (TS delta {delta}s)")
            return candidate

        score = match_score(listen, candidate)
        if score < threshold:
            skipped_similarity += 1
            continue
        # Strictly greater keeps the first of equally scored candidates
        if score > best_score:
            best_score = score
            best_match = candidate

    if best_match is None:
        logger.debug(
            f"No match in {service_name} for '{listen.artist} - {listen.name}' "
            f"({checked} checked, {skipped_timestamp} outside window, {skipped_similarity} below threshold)"
        )
    return best_match
