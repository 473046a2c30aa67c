"""Post-filtering of positively classified candidates."""

from typing import List

from ..models import Candidate, Category, Detection

# Slack on the outer radius when testing containment
CONTAINMENT_SLACK = 1.1


def is_inside(inner: Candidate, outer: Candidate) -> bool:
    """Return True if ``inner`` lies wholly within ``outer``."""
    if inner.radius > outer.radius:
        return False
    return inner.distance_to(outer) + inner.radius <= CONTAINMENT_SLACK * outer.radius


def remove_inside_points(candidates: List[Candidate]) -> List[Candidate]:
    """
    Drop positives contained in another positive, keeping the larger one.

    Candidates are visited largest first so that chains of nested regions
    collapse onto the outermost.
    """
    ordered = sorted(candidates, key=lambda cd: cd.radius, reverse=True)
    kept: List[Candidate] = []
    for cd in ordered:
        if any(is_inside(cd, outer) for outer in kept):
            continue
        kept.append(cd)
    return kept


def resolve_category(cd: Candidate) -> Category:
    """Final category: the highest scoring class, else the assigned label."""
    if cd.class_scores:
        return max(cd.class_scores.items(), key=lambda item: item[1])[0]
    if cd.label is not None:
        return cd.label
    return Category.OTHER


def interpolate_results(
    candidates: List[Candidate],
    resize_factor: float = 1.0,
) -> List[Detection]:
    """
    Convert positive candidates to detections in original-image pixels.

    Args:
        candidates: Positively classified candidates (resized-image coordinates)
        resize_factor: Scale applied before detection; geometry is divided by it

    Returns:
        List of Detection in original-image coordinates
    """
    inverse = 1.0 / resize_factor if resize_factor else 1.0
    detections = []
    for cd in candidates:
        det = Detection(
            category=resolve_category(cd),
            r=cd.r,
            c=cd.c,
            angle=cd.angle,
            major=cd.major,
            minor=cd.minor,
            class_scores=dict(cd.class_scores),
        )
        detections.append(det.scaled(inverse))
    return detections
