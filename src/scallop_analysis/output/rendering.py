"""Overlay rendering for proposal and detection image dumps."""

import math
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, ImageDraw
from skimage.util import img_as_ubyte

from ..models import Candidate, Category, Detection

# Overlay colors (RGB tuples)
COLORS = {
    Category.BROWN_SCALLOP: (255, 140, 0),     # Orange
    Category.WHITE_SCALLOP: (255, 255, 255),   # White
    Category.BURIED_SCALLOP: (255, 255, 0),    # Yellow
    Category.SAND_DOLLAR: (0, 255, 255),       # Cyan
    Category.OTHER: (255, 0, 255),             # Magenta
    "candidate": (0, 255, 0),                  # Green
}


def output_name(name: str, suffix: str) -> str:
    """Relative path for an image dump, e.g. ``dive3/frame01_detections.png``."""
    path = Path(name)
    return str(path.with_name(f"{path.stem}_{suffix}.png"))


def ellipse_points(
    r: float,
    c: float,
    major: float,
    minor: float,
    angle: float,
    n: int = 48,
) -> List[Tuple[float, float]]:
    """Polygon approximating an ellipse, as (x, y) pairs for PIL."""
    theta = math.radians(angle)
    points = []
    for t in np.linspace(0.0, 2.0 * math.pi, n, endpoint=False):
        u = major * math.cos(t)
        v = minor * math.sin(t)
        row = r + u * math.cos(theta) - v * math.sin(theta)
        col = c + u * math.sin(theta) + v * math.cos(theta)
        points.append((col, row))
    return points


def _to_rgb8(image: np.ndarray) -> np.ndarray:
    if image.dtype != np.uint8:
        image = img_as_ubyte(np.clip(image, 0.0, 1.0))
    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)
    return image[..., :3]


def render_overlay(
    image: np.ndarray,
    candidates: Optional[Sequence[Candidate]] = None,
    detections: Optional[Sequence[Detection]] = None,
) -> Image.Image:
    """Draw candidate and detection outlines over an image."""
    img = Image.fromarray(_to_rgb8(image)).convert("RGB")
    draw = ImageDraw.Draw(img)

    for cd in candidates or ():
        draw.polygon(
            ellipse_points(cd.r, cd.c, cd.major, cd.minor, cd.angle),
            outline=COLORS["candidate"],
        )

    for det in detections or ():
        color = COLORS.get(det.category, COLORS[Category.OTHER])
        draw.polygon(
            ellipse_points(det.r, det.c, det.major, det.minor, det.angle),
            outline=color,
            width=2,
        )
        draw.text((det.c + det.major, det.r - det.major), det.category.value, fill=color)

    return img


def save_overlay(
    path: Union[str, Path],
    image: np.ndarray,
    candidates: Optional[Sequence[Candidate]] = None,
    detections: Optional[Sequence[Detection]] = None,
) -> Path:
    """Render an overlay and write it as PNG."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    render_overlay(image, candidates, detections).save(path)
    return path
