"""Data models for scallop detection."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import numpy as np


class Category(str, Enum):
    """Final output categories for a detection."""

    BROWN_SCALLOP = "brown_scallop"
    WHITE_SCALLOP = "white_scallop"
    BURIED_SCALLOP = "buried_scallop"
    SAND_DOLLAR = "sand_dollar"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "Category":
        """Parse a category name, case-insensitive. Unknown names map to OTHER."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER

    @property
    def is_scallop(self) -> bool:
        return self in (
            Category.BROWN_SCALLOP,
            Category.WHITE_SCALLOP,
            Category.BURIED_SCALLOP,
        )


class ProposalMethod(str, Enum):
    """Candidate generator that proposed a region."""

    SALIENT_BLOB = "salient_blob"
    COLOR_BLOB = "color_blob"
    ADAPTIVE = "adaptive"
    TEMPLATE = "template"
    EDGE = "edge"
    GROUND_TRUTH = "ground_truth"


@dataclass
class ImageProperties:
    """Physical scale of one image. Read-only after creation."""

    avg_pixel_size_m: float
    img_width_m: float
    img_height_m: float
    has_metadata: bool

    def m_to_px(self, meters: float) -> float:
        """Convert meters (or pixels when no metadata) to pixels."""
        return meters / self.avg_pixel_size_m

    @property
    def area_m2(self) -> float:
        return self.img_width_m * self.img_height_m


@dataclass(eq=False)
class Candidate:
    """An unclassified region of interest.

    Geometry is in the pixel coordinates of the image being processed
    (which may be a resized copy of the input). ``major`` and ``minor`` are
    semi-axis lengths; ``angle`` is the major axis orientation in degrees.
    Candidates compare by identity.
    """

    r: float
    c: float
    major: float
    minor: float
    angle: float = 0.0
    scores: Dict[ProposalMethod, float] = field(default_factory=dict)
    features: Optional[np.ndarray] = None
    label: Optional[Category] = None
    class_scores: Dict[Category, float] = field(default_factory=dict)

    # Boundary estimate from the edge search stage: (r, c, major, minor, angle)
    boundary: Optional[Tuple[float, float, float, float, float]] = None
    # Rotation (radians) of the color quadrant partition
    quadrant_angle: Optional[float] = None

    @classmethod
    def circle(
        cls,
        r: float,
        c: float,
        radius: float,
        method: ProposalMethod,
        score: float,
    ) -> "Candidate":
        """Create a circular candidate proposed by a single method."""
        return cls(
            r=float(r),
            c=float(c),
            major=float(radius),
            minor=float(radius),
            scores={method: float(score)},
        )

    @property
    def radius(self) -> float:
        return self.major

    @property
    def methods(self) -> Set[ProposalMethod]:
        return set(self.scores)

    @property
    def method_count(self) -> int:
        return len(self.scores)

    @property
    def confidence(self) -> float:
        """Combined confidence over all contributing methods (noisy-or)."""
        miss = 1.0
        for score in self.scores.values():
            miss *= 1.0 - min(1.0, max(0.0, score))
        return 1.0 - miss

    def distance_to(self, other: "Candidate") -> float:
        return math.hypot(self.r - other.r, self.c - other.c)

    def priority_key(self) -> Tuple[float, int, float]:
        """Sort key, higher is more important."""
        return (self.confidence, self.method_count, self.radius)


@dataclass
class Detection:
    """A positively classified candidate in original-image pixel coordinates."""

    category: Category
    r: float
    c: float
    angle: float
    major: float
    minor: float
    class_scores: Dict[Category, float] = field(default_factory=dict)

    @property
    def radius(self) -> float:
        return self.major

    def scaled(self, factor: float) -> "Detection":
        """Return a copy with geometry multiplied by ``factor``."""
        return Detection(
            category=self.category,
            r=self.r * factor,
            c=self.c * factor,
            angle=self.angle,
            major=self.major * factor,
            minor=self.minor * factor,
            class_scores=dict(self.class_scores),
        )

    def to_record(self) -> List:
        """Flat record for the detection list: category, row, col, angle, major, minor."""
        return [
            self.category.value,
            round(self.r, 2),
            round(self.c, 2),
            round(self.angle, 2),
            round(self.major, 2),
            round(self.minor, 2),
        ]


@dataclass
class GroundTruthEntry:
    """A labeled object from a ground-truth annotation file."""

    name: str
    category: Category
    r: float
    c: float
    major: float
    minor: float
    angle: float = 0.0

    def to_candidate(self, resize_factor: float = 1.0) -> Candidate:
        """Convert to a candidate in resized-image coordinates."""
        return Candidate(
            r=self.r * resize_factor,
            c=self.c * resize_factor,
            major=self.major * resize_factor,
            minor=self.minor * resize_factor,
            angle=self.angle,
            scores={ProposalMethod.GROUND_TRUTH: 1.0},
            label=self.category,
        )


@dataclass(eq=False)
class TrainingSample:
    """A labeled feature vector or image chip extracted in training mode."""

    source: str
    category: Category
    features: Optional[np.ndarray] = None
    chip: Optional[np.ndarray] = None


@dataclass
class ThreadStatistics:
    """Running statistics private to one worker thread."""

    processed: int = 0
    candidates: int = 0
    surveyed_area: float = 0.0
    detections: Dict[Category, int] = field(
        default_factory=lambda: {cat: 0 for cat in Category}
    )

    def update(
        self,
        detections: List[Detection],
        n_candidates: int,
        area: float,
    ) -> None:
        self.processed += 1
        self.candidates += n_candidates
        self.surveyed_area += area
        for det in detections:
            self.detections[det.category] += 1

    @property
    def total_detections(self) -> int:
        return sum(self.detections.values())
