"""Candidate proposal generators.

Four independent methods scan the prepared image for circular or elliptical
regions. Each returns an unordered list of candidates; an empty list is a
valid result.
"""

import math
from typing import List, Optional

import numpy as np
from scipy import ndimage
from skimage import filters, measure
from skimage.feature import blob_doh, blob_dog, match_template, peak_local_max
from skimage.transform import hough_circle, hough_circle_peaks

from ..models import Candidate, ProposalMethod
from .color import ColorResults
from .preprocessing import GradientChain

# Smallest batch for which "auto" picks the cheaper color-blob detector
AUTO_POLICY_MIN_BATCH = 5


def detect_salient_blobs(
    color: ColorResults,
    min_radius: float,
    max_radius: float,
    threshold: float = 0.05,
) -> List[Candidate]:
    """
    Difference of Gaussian blob detection over the saliency map.

    Better suited to small batches and to classifiers that are not aimed at
    scallops.

    Args:
        color: Color classification results
        min_radius: Minimum radius in pixels
        max_radius: Maximum radius in pixels
        threshold: DoG response threshold

    Returns:
        List of candidates, score = saliency at the blob center
    """
    saliency = color.saliency
    min_sigma = max(0.5, 0.8 * min_radius / math.sqrt(2))
    max_sigma = max(min_sigma + 0.5, 1.2 * max_radius / math.sqrt(2))

    blobs = blob_dog(
        saliency,
        min_sigma=min_sigma,
        max_sigma=max_sigma,
        threshold=threshold,
        overlap=0.5,
    )

    candidates = []
    for y, x, sigma in blobs:
        score = saliency[int(y), int(x)]
        candidates.append(
            Candidate.circle(y, x, math.sqrt(2) * sigma, ProposalMethod.SALIENT_BLOB, score)
        )
    return candidates


def detect_colored_blobs(
    color: ColorResults,
    min_radius: float,
    max_radius: float,
    threshold: float = 0.005,
) -> List[Candidate]:
    """
    Determinant of Hessian blob detection over the organism color map.

    Cheaper than the saliency detector; favoured for large batches.
    """
    organism = color.organism_map
    min_sigma = max(1.0, 0.8 * min_radius)
    max_sigma = max(min_sigma + 1.0, 1.2 * max_radius)

    blobs = blob_doh(
        organism,
        min_sigma=min_sigma,
        max_sigma=max_sigma,
        num_sigma=8,
        threshold=threshold,
        overlap=0.5,
    )

    candidates = []
    for y, x, sigma in blobs:
        score = organism[int(y), int(x)]
        candidates.append(
            Candidate.circle(y, x, sigma, ProposalMethod.COLOR_BLOB, score)
        )
    return candidates


def use_salient_detector(
    policy: str,
    batch_size: Optional[int],
    detects_organism: bool,
) -> bool:
    """
    Decide which blob detector a whole run uses.

    A ``batch_size`` of None means an open-ended stream of frames.
    """
    if policy == "salient":
        return True
    if policy == "colored":
        return False
    if not detects_organism:
        return True
    return batch_size is not None and batch_size < AUTO_POLICY_MIN_BATCH


def _odd(value: float) -> int:
    n = max(3, int(value))
    return n if n % 2 == 1 else n + 1


def detect_adaptive_regions(
    color: ColorResults,
    min_radius: float,
    floor: float = 0.2,
    offset: float = 0.02,
) -> List[Candidate]:
    """
    Local-threshold segmentation of the saliency map.

    The block size is tuned to the minimum expected radius. Pixels must also
    exceed a global saliency floor, so flat backgrounds produce nothing.

    Args:
        color: Color classification results
        min_radius: Minimum radius in pixels
        floor: Global saliency floor
        offset: Subtracted from the local mean before thresholding

    Returns:
        List of elliptical candidates, score = mean saliency x solidity
    """
    saliency = color.saliency
    block_size = _odd(8 * min_radius + 1)
    local = filters.threshold_local(saliency, block_size=block_size, offset=offset)
    binary = (saliency > local) & (saliency > floor)

    min_area = max(4, int(0.25 * math.pi * min_radius ** 2))
    binary = ndimage.binary_fill_holes(binary)

    labels = measure.label(binary)
    candidates = []
    for prop in measure.regionprops(labels, intensity_image=saliency):
        if prop.area < min_area:
            continue
        major = prop.axis_major_length / 2.0
        minor = prop.axis_minor_length / 2.0
        if major <= 0 or minor <= 0:
            continue
        cy, cx = prop.centroid
        score = float(prop.intensity_mean) * float(prop.solidity)
        candidates.append(
            Candidate(
                r=float(cy),
                c=float(cx),
                major=float(major),
                minor=float(minor),
                angle=-math.degrees(prop.orientation),
                scores={ProposalMethod.ADAPTIVE: score},
            )
        )
    return candidates


def double_donut_template(radius: float) -> np.ndarray:
    """
    Template for a shell silhouette in gradient space.

    A positive rim annulus at ``radius`` and a negative inner annulus for
    the smooth shell interior.
    """
    half = int(math.ceil(1.3 * radius)) + 1
    yy, xx = np.mgrid[-half:half + 1, -half:half + 1]
    dist = np.sqrt(yy ** 2 + xx ** 2)

    template = np.zeros(dist.shape, dtype=np.float64)
    rim = (dist >= 0.85 * radius) & (dist <= 1.15 * radius)
    inner = (dist >= 0.3 * radius) & (dist <= 0.7 * radius)
    template[rim] = 1.0
    template[inner] = -0.5
    return template


def template_radii(min_radius: float, max_radius: float, max_scales: int = 6) -> np.ndarray:
    """Geometrically spaced radii covering the search range."""
    if max_radius <= min_radius * 1.05:
        return np.array([min_radius])
    n = int(min(max_scales, max(2, math.ceil(math.log(max_radius / min_radius) / math.log(1.25)) + 1)))
    return np.geomspace(min_radius, max_radius, n)


def find_template_candidates(
    gradients: GradientChain,
    min_radius: float,
    max_radius: float,
    mask: Optional[np.ndarray] = None,
    threshold: float = 0.35,
) -> List[Candidate]:
    """
    Double-donut template matching over the combined gradient map.

    Normalized cross-correlation is computed per scale; the best scale per
    pixel is kept and local maxima above ``threshold`` become candidates.

    Args:
        gradients: Gradient chain
        min_radius: Minimum radius in pixels
        max_radius: Maximum radius in pixels
        mask: Optional exclusion mask; zero pixels never produce candidates
        threshold: Minimum correlation score

    Returns:
        List of circular candidates, score = correlation
    """
    grad = gradients.combined
    h, w = grad.shape

    best_score = np.full((h, w), -1.0)
    best_radius = np.zeros((h, w))

    for radius in template_radii(min_radius, max_radius):
        template = double_donut_template(radius)
        if template.shape[0] > h or template.shape[1] > w:
            continue
        response = np.nan_to_num(match_template(grad, template, pad_input=True))
        better = response > best_score
        best_score[better] = response[better]
        best_radius[better] = radius

    if not np.any(best_radius > 0):
        return []

    peaks = peak_local_max(
        best_score,
        min_distance=max(1, int(min_radius)),
        threshold_abs=threshold,
        exclude_border=False,
    )

    candidates = []
    for y, x in peaks:
        if mask is not None and not mask[y, x]:
            continue
        candidates.append(
            Candidate.circle(y, x, best_radius[y, x], ProposalMethod.TEMPLATE, best_score[y, x])
        )
    return candidates


def find_edge_candidates(
    gradients: GradientChain,
    min_radius: float,
    max_radius: float,
    threshold: float = 0.35,
    max_peaks: int = 200,
) -> List[Candidate]:
    """
    Circular Hough transform over the stable edge map.

    Args:
        gradients: Gradient chain
        min_radius: Minimum radius in pixels
        max_radius: Maximum radius in pixels
        threshold: Minimum fraction of the circle perimeter supported by edges
        max_peaks: Upper bound on returned candidates

    Returns:
        List of circular candidates, score = perimeter support
    """
    edges = gradients.stable_edges
    if not edges.any():
        return []

    lo = max(1, int(math.floor(min_radius)))
    hi = max(lo + 1, int(math.ceil(max_radius)))
    step = max(1, (hi - lo) // 24)
    radii = np.arange(lo, hi + 1, step)

    hspaces = hough_circle(edges, radii, normalize=True)
    spacing = max(1, int(min_radius))
    accums, cx, cy, found = hough_circle_peaks(
        hspaces,
        radii,
        min_xdistance=spacing,
        min_ydistance=spacing,
        threshold=threshold,
        total_num_peaks=max_peaks,
    )

    return [
        Candidate.circle(y, x, r, ProposalMethod.EDGE, min(1.0, score))
        for score, x, y, r in zip(accums, cx, cy, found)
    ]


def filter_candidates(
    candidates: List[Candidate],
    min_radius: float,
    max_radius: float,
) -> List[Candidate]:
    """Keep candidates whose radius lies within [min_radius, max_radius]."""
    return [cd for cd in candidates if min_radius <= cd.radius <= max_radius]


def remove_border_candidates(
    candidates: List[Candidate],
    image_shape,
) -> List[Candidate]:
    """Drop candidates whose circle extends past the image border."""
    h, w = image_shape[:2]
    return [
        cd for cd in candidates
        if cd.r - cd.radius >= 0
        and cd.c - cd.radius >= 0
        and cd.r + cd.radius < h
        and cd.c + cd.radius < w
    ]
