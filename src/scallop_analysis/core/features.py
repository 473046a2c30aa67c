"""Feature extraction around candidate regions.

Stages run in a fixed order and each writes its own slice of the
candidate's feature vector:

1. edge search (true boundary estimate)
2. HoG over grayscale, then HoG over the saliency map
3. size
4. color (quadrant partition + color classification outputs)
5. Gabor texture

Later stages read the boundary and quadrant partition set by earlier ones.
A stage whose window does not fit inside the image leaves its slice at
zero for that candidate.
"""

import math
from collections import OrderedDict
from typing import List, Optional, Tuple

import numpy as np
from scipy import ndimage
from skimage import feature, filters, transform

from ..models import Candidate, ImageProperties
from .color import COLOR_FILTERS
from .preprocessing import PreparedImage

# Edge search
EDGE_RAYS = 32
EXPENSIVE_EDGE_RAYS = 64
RAY_RANGE = (0.5, 1.5)
MIN_EDGE_STRENGTH = 0.1

# HoG
HOG_WINDOW = 24
HOG_ORIENTATIONS = 9
HOG_CELL = 8
HOG_BLOCK = 2
HOG_SCALE = 1.5

# Size: with no metadata, pixel sizes are scaled to be comparable to meters
NO_METADATA_SIZE_ADJ = 0.0008

# Color
RING_RANGE = (1.1, 1.4)

# Gabor
GABOR_WINDOW = 32
GABOR_SCALE = 1.2
GABOR_ORIENTATIONS = 4
GABOR_FREQUENCIES = (0.1, 0.25)


def _hog_length() -> int:
    cells = HOG_WINDOW // HOG_CELL
    blocks = cells - HOG_BLOCK + 1
    return blocks * blocks * HOG_BLOCK * HOG_BLOCK * HOG_ORIENTATIONS


FEATURE_SIZES = OrderedDict(
    [
        ("edge", 6),
        ("hog_gray", _hog_length()),
        ("hog_saliency", _hog_length()),
        ("size", 4),
        ("color", 4 * 3 + 6 + 3 + 1 + len(COLOR_FILTERS) + 2),
        ("gabor", GABOR_ORIENTATIONS * len(GABOR_FREQUENCIES) * 2),
    ]
)


def _build_layout():
    layout = OrderedDict()
    start = 0
    for name, size in FEATURE_SIZES.items():
        layout[name] = slice(start, start + size)
        start += size
    return layout, start


FEATURE_LAYOUT, FEATURE_LENGTH = _build_layout()


def initialize_candidate_stats(candidates: List[Candidate]) -> None:
    """Give every candidate a zeroed feature vector of FEATURE_LENGTH."""
    for cd in candidates:
        cd.features = np.zeros(FEATURE_LENGTH, dtype=np.float64)


def _write(cd: Candidate, stage: str, values) -> None:
    cd.features[FEATURE_LAYOUT[stage]] = np.asarray(values, dtype=np.float64)


def _window(
    shape: Tuple[int, int],
    r: float,
    c: float,
    half: float,
) -> Optional[Tuple[slice, slice]]:
    """Square window around (r, c), or None if it leaves the image."""
    h, w = shape[:2]
    half = int(math.ceil(half))
    r0, r1 = int(round(r)) - half, int(round(r)) + half + 1
    c0, c1 = int(round(c)) - half, int(round(c)) + half + 1
    if half < 1 or r0 < 0 or c0 < 0 or r1 > h or c1 > w:
        return None
    return slice(r0, r1), slice(c0, c1)


def _geometry(cd: Candidate) -> Tuple[float, float, float, float, float]:
    if cd.boundary is not None:
        return cd.boundary
    return cd.r, cd.c, cd.major, cd.minor, cd.angle


def _ellipse_radius(
    rows: np.ndarray,
    cols: np.ndarray,
    geometry: Tuple[float, float, float, float, float],
) -> np.ndarray:
    """Normalized elliptical radius (1.0 on the boundary) at each point."""
    r, c, major, minor, angle = geometry
    theta = math.radians(angle)
    dr = rows - r
    dc = cols - c
    u = dr * math.cos(theta) + dc * math.sin(theta)
    v = -dr * math.sin(theta) + dc * math.cos(theta)
    return np.sqrt((u / max(major, 1e-6)) ** 2 + (v / max(minor, 1e-6)) ** 2)


# -----------------------------
# Stage 1: edge search
# -----------------------------

def _fit_boundary(points: np.ndarray) -> Tuple[float, float, float, float, float]:
    """Ellipse (r, c, major, minor, angle) from the second moments of boundary points."""
    center = points.mean(axis=0)
    cov = np.cov((points - center).T)
    evals, evecs = np.linalg.eigh(cov)
    evals = np.clip(evals, 1e-6, None)
    major = math.sqrt(2.0 * evals[1])
    minor = math.sqrt(2.0 * evals[0])
    vr, vc = evecs[:, 1]
    angle = math.degrees(math.atan2(vc, vr))
    return float(center[0]), float(center[1]), major, minor, angle


def _search_rays(
    gradient: np.ndarray,
    cd: Candidate,
    n_rays: int,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Strongest gradient point along each radial ray, with its strength."""
    if _window(gradient.shape, cd.r, cd.c, RAY_RANGE[1] * cd.radius + 1) is None:
        return None

    angles = np.linspace(0.0, 2.0 * math.pi, n_rays, endpoint=False)
    steps = np.arange(RAY_RANGE[0] * cd.radius, RAY_RANGE[1] * cd.radius, 0.5)
    if len(steps) == 0:
        return None

    rows = cd.r + np.outer(np.cos(angles), steps)
    cols = cd.c + np.outer(np.sin(angles), steps)
    samples = ndimage.map_coordinates(gradient, [rows.ravel(), cols.ravel()], order=1)
    samples = samples.reshape(rows.shape)

    best = np.argmax(samples, axis=1)
    idx = np.arange(n_rays)
    points = np.stack([rows[idx, best], cols[idx, best]], axis=1)
    strengths = samples[idx, best]
    return points, strengths


def edge_search(
    prepared: PreparedImage,
    candidates: List[Candidate],
    n_rays: int = EDGE_RAYS,
) -> None:
    """
    Estimate each candidate's true boundary from radial gradient maxima.

    Sets ``candidate.boundary`` when at least half of the rays find an edge.
    """
    gradient = prepared.gradients.combined

    for cd in candidates:
        found = _search_rays(gradient, cd, n_rays)
        if found is None:
            continue
        points, strengths = found

        valid = strengths > MIN_EDGE_STRENGTH
        valid_fraction = float(valid.mean())
        if valid.sum() >= 5:
            boundary = _fit_boundary(points[valid])
        else:
            boundary = (cd.r, cd.c, cd.major, cd.minor, cd.angle)

        rho = _ellipse_radius(points[:, 0], points[:, 1], boundary)
        residual = float(np.std(rho))

        if valid_fraction >= 0.5:
            cd.boundary = boundary

        if cd.features is not None:
            _write(cd, "edge", [
                boundary[2] / max(cd.radius, 1e-6),
                boundary[3] / max(boundary[2], 1e-6),
                float(strengths.mean()),
                float(strengths.std()),
                residual,
                valid_fraction,
            ])


def expensive_edge_search(
    prepared: PreparedImage,
    candidates: List[Candidate],
    min_radius: float,
    max_radius: float,
) -> None:
    """
    Refine geometry of positively classified candidates.

    A denser ray search replaces a candidate's geometry with its boundary
    estimate, provided the refined radius stays within the search range.
    """
    edge_search(prepared, candidates, n_rays=EXPENSIVE_EDGE_RAYS)
    for cd in candidates:
        if cd.boundary is None:
            continue
        r, c, major, minor, angle = cd.boundary
        if min_radius <= major <= max_radius:
            cd.r, cd.c, cd.major, cd.minor, cd.angle = r, c, major, minor, angle


# -----------------------------
# Stage 2: HoG
# -----------------------------

class HoGFeatureGenerator:
    """Unoriented HoG descriptor over a radius-normalized window."""

    def __init__(self, image: np.ndarray, stage: str):
        if stage not in ("hog_gray", "hog_saliency"):
            raise ValueError(f"Unknown HoG stage: {stage}")
        self.image = image
        self.stage = stage

    def descriptor(self, cd: Candidate) -> Optional[np.ndarray]:
        win = _window(self.image.shape, cd.r, cd.c, HOG_SCALE * cd.radius)
        if win is None:
            return None
        patch = transform.resize(
            self.image[win], (HOG_WINDOW, HOG_WINDOW), anti_aliasing=True
        )
        return feature.hog(
            patch,
            orientations=HOG_ORIENTATIONS,
            pixels_per_cell=(HOG_CELL, HOG_CELL),
            cells_per_block=(HOG_BLOCK, HOG_BLOCK),
            feature_vector=True,
        )

    def generate(self, candidates: List[Candidate]) -> None:
        for cd in candidates:
            desc = self.descriptor(cd)
            if desc is not None:
                _write(cd, self.stage, desc)


# -----------------------------
# Stage 3: size
# -----------------------------

def calculate_size_features(
    cd: Candidate,
    props: ImageProperties,
    resize_factor: float,
    max_radius: float,
) -> None:
    """Physical size of the boundary estimate."""
    _, _, major, minor, _ = _geometry(cd)
    size_adj = 1.0 if props.has_metadata else NO_METADATA_SIZE_ADJ
    scale = props.avg_pixel_size_m * size_adj / (resize_factor or 1.0)

    major_m = major * scale
    minor_m = minor * scale
    _write(cd, "size", [
        major_m,
        minor_m,
        math.pi * major_m * minor_m,
        major / max(max_radius, 1e-6),
    ])


# -----------------------------
# Stage 4: color
# -----------------------------

def create_color_quadrants(gray: np.ndarray, candidates: List[Candidate]) -> None:
    """
    Orient a four-way partition of each candidate on its brightest side.

    The partition angle is the direction from the center to the
    intensity-weighted centroid of the inner region.
    """
    for cd in candidates:
        geometry = _geometry(cd)
        win = _window(gray.shape, geometry[0], geometry[1], RING_RANGE[1] * geometry[2])
        if win is None:
            continue
        rows, cols = np.mgrid[win[0], win[1]]
        inside = _ellipse_radius(rows, cols, geometry) <= 1.0
        weights = gray[win][inside]
        if weights.sum() <= 1e-10:
            cd.quadrant_angle = 0.0
            continue
        dr = float(np.sum((rows[inside] - geometry[0]) * weights) / weights.sum())
        dc = float(np.sum((cols[inside] - geometry[1]) * weights) / weights.sum())
        cd.quadrant_angle = math.atan2(dc, dr)


def calculate_color_features(prepared: PreparedImage, cd: Candidate) -> None:
    """Lab statistics per quadrant, inside and ring, plus color map responses."""
    if cd.quadrant_angle is None:
        return
    geometry = _geometry(cd)
    win = _window(prepared.shape, geometry[0], geometry[1], RING_RANGE[1] * geometry[2])
    if win is None:
        return

    rows, cols = np.mgrid[win[0], win[1]]
    rho = _ellipse_radius(rows, cols, geometry)
    inside = rho <= 1.0
    ring = (rho > RING_RANGE[0]) & (rho <= RING_RANGE[1])
    if not inside.any() or not ring.any():
        return

    lab = prepared.lab[win] / 100.0
    phi = np.arctan2(cols - geometry[1], rows - geometry[0]) - cd.quadrant_angle
    quadrant = (np.mod(phi, 2.0 * math.pi) // (math.pi / 2.0)).astype(int)

    values = []
    for q in range(4):
        sel = inside & (quadrant == q)
        values.extend(lab[sel].mean(axis=0) if sel.any() else [0.0, 0.0, 0.0])

    inner = lab[inside]
    outer = lab[ring]
    values.extend(inner.mean(axis=0))
    values.extend(inner.std(axis=0))
    values.extend(outer.mean(axis=0))
    values.append(float(inner[:, 0].mean() - outer[:, 0].mean()))

    for name in COLOR_FILTERS:
        values.append(float(prepared.color.class_maps[name][win][inside].mean()))

    saliency = prepared.color.saliency[win]
    values.append(float(saliency[inside].mean()))
    values.append(float(saliency[ring].mean()))

    _write(cd, "color", values)


# -----------------------------
# Stage 5: Gabor
# -----------------------------

def calculate_gabor_features(gray: np.ndarray, candidates: List[Candidate]) -> None:
    """Mean and std of Gabor magnitude over a bank of orientations and frequencies."""
    thetas = np.linspace(0.0, math.pi, GABOR_ORIENTATIONS, endpoint=False)

    for cd in candidates:
        win = _window(gray.shape, cd.r, cd.c, GABOR_SCALE * cd.radius)
        if win is None:
            continue
        patch = transform.resize(gray[win], (GABOR_WINDOW, GABOR_WINDOW), anti_aliasing=True)

        values = []
        for frequency in GABOR_FREQUENCIES:
            for theta in thetas:
                real, imag = filters.gabor(patch, frequency=frequency, theta=theta)
                magnitude = np.hypot(real, imag)
                values.append(float(magnitude.mean()))
                values.append(float(magnitude.std()))
        _write(cd, "gabor", values)


def extract_features(
    prepared: PreparedImage,
    candidates: List[Candidate],
    props: ImageProperties,
    resize_factor: float,
    max_radius: float,
) -> None:
    """
    Main entry point for feature extraction.

    Args:
        prepared: Prepared image representations
        candidates: Candidates to describe; feature vectors are set in place
        props: Geometry of the image
        resize_factor: Scale applied to the image before detection
        max_radius: Maximum search radius in (resized) pixels
    """
    initialize_candidate_stats(candidates)

    edge_search(prepared, candidates)

    HoGFeatureGenerator(prepared.gray32, "hog_gray").generate(candidates)
    HoGFeatureGenerator(prepared.color.saliency, "hog_saliency").generate(candidates)

    for cd in candidates:
        calculate_size_features(cd, props, resize_factor, max_radius)

    create_color_quadrants(prepared.gray32, candidates)
    for cd in candidates:
        calculate_color_features(prepared, cd)

    calculate_gabor_features(prepared.gray32, candidates)
