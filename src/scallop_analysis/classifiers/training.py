"""Ground-truth matching and training sample selection."""

from typing import List, Optional, Tuple

import numpy as np

from ..models import Candidate, Category

# A proposal matches a ground-truth object when its center is within this
# fraction of the object's radius...
MATCH_CENTER_FACTOR = 0.5
# ...and the radii differ by less than this ratio
MATCH_RADIUS_RATIO = 1.5


def matches_ground_truth(cd: Candidate, gt: Candidate) -> bool:
    small = min(cd.radius, gt.radius)
    large = max(cd.radius, gt.radius)
    if small <= 0 or large / small >= MATCH_RADIUS_RATIO:
        return False
    return cd.distance_to(gt) < MATCH_CENTER_FACTOR * gt.radius


def split_negatives(
    candidates: List[Candidate],
    ground_truth: List[Candidate],
) -> List[Candidate]:
    """Candidates that do not correspond to any ground-truth object."""
    return [
        cd for cd in candidates
        if not any(matches_ground_truth(cd, gt) for gt in ground_truth)
    ]


def select_training_candidates(
    candidates: List[Candidate],
    ground_truth: List[Candidate],
    keep_fraction: float,
    rng: Optional[np.random.Generator] = None,
) -> List[Tuple[Candidate, Category]]:
    """
    Pick the labeled candidates a training run extracts samples from.

    Every ground-truth object is kept with its own label. Eligible
    negatives (proposals matching no ground truth) are each kept with
    probability ``keep_fraction`` and labeled OTHER, so 1.0 keeps all of
    them and 0.0 keeps none.

    Args:
        candidates: Proposals for the image
        ground_truth: Ground-truth candidates (labels set)
        keep_fraction: Fraction of negatives to keep, in [0, 1]
        rng: Random generator; a fresh unseeded one is used if omitted

    Returns:
        List of (candidate, category) pairs, ground truth first
    """
    rng = rng if rng is not None else np.random.default_rng()

    selected = [(gt, gt.label or Category.OTHER) for gt in ground_truth]
    for cd in split_negatives(candidates, ground_truth):
        if rng.random() < keep_fraction:
            selected.append((cd, Category.OTHER))
    return selected
