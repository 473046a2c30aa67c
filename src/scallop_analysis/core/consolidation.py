"""Merge, de-duplicate and rank candidates from all proposal methods."""

import logging
from typing import List, Sequence, Tuple

from ..models import Candidate

logger = logging.getLogger(__name__)

# Centers closer than this fraction of the smaller radius may be duplicates
CENTER_FACTOR = 0.5
# ...provided the larger radius is less than this multiple of the smaller
RADIUS_RATIO = 1.5


def is_duplicate(a: Candidate, b: Candidate) -> bool:
    """Return True if two candidates describe the same object."""
    small = min(a.radius, b.radius)
    large = max(a.radius, b.radius)
    if small <= 0:
        return False
    if large / small >= RADIUS_RATIO:
        return False
    return a.distance_to(b) < CENTER_FACTOR * small


def _absorb(keeper: Candidate, other: Candidate) -> None:
    """Fold another method's evidence into the retained representative."""
    for method, score in other.scores.items():
        keeper.scores[method] = max(score, keeper.scores.get(method, 0.0))


def prioritize_candidates(
    *candidate_sets: Sequence[Candidate],
) -> Tuple[List[Candidate], List[Candidate]]:
    """
    Merge candidate sets into one de-duplicated collection.

    Candidates are visited in priority order (combined confidence, then
    method agreement, then radius); each is either accepted or folded into
    an already accepted duplicate, so the strongest member of every
    duplicate cluster is the one retained.

    Args:
        *candidate_sets: One list per proposal method

    Returns:
        Tuple of (unordered merged list, priority-ordered list). Both contain
        the same candidate objects.
    """
    pool = [cd for cds in candidate_sets for cd in cds]
    pool.sort(key=lambda cd: cd.priority_key(), reverse=True)

    accepted: List[Candidate] = []
    for cd in pool:
        for keeper in accepted:
            if is_duplicate(keeper, cd):
                _absorb(keeper, cd)
                break
        else:
            accepted.append(cd)

    ordered = sorted(accepted, key=lambda cd: cd.priority_key(), reverse=True)

    logger.debug(
        "Consolidated %d proposals into %d candidates",
        len(pool),
        len(accepted),
    )
    return accepted, ordered
