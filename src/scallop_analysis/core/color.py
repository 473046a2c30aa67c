"""Per-thread color classification and saliency maps."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
from skimage import filters

from ..errors import ConfigError

logger = logging.getLogger(__name__)

# Fixed filter bank order; feature vectors depend on it
COLOR_FILTERS = ("brown_scallop", "white_scallop", "sand_dollar", "substrate")

# Reference CIELab colors and tolerances (L in [0, 100], a/b roughly [-128, 127])
DEFAULT_FILTERS = {
    "brown_scallop": ((45.0, 12.0, 22.0), 18.0),
    "white_scallop": ((78.0, 2.0, 8.0), 15.0),
    "sand_dollar": ((35.0, 8.0, 4.0), 14.0),
    "substrate": ((55.0, 4.0, 18.0), 20.0),
}

# Organism filters combined into the color-blob map
ORGANISM_FILTERS = ("brown_scallop", "white_scallop")

# Lab distance mapped to full saliency
SALIENCY_SCALE = 25.0


@dataclass
class ColorFilter:
    """A Gaussian similarity filter around a reference Lab color."""

    name: str
    reference_lab: Tuple[float, float, float]
    tolerance: float

    def apply(self, lab: np.ndarray) -> np.ndarray:
        ref = np.asarray(self.reference_lab, dtype=np.float64)
        dist2 = np.sum((lab - ref) ** 2, axis=2)
        return np.exp(-dist2 / (2.0 * self.tolerance ** 2))


@dataclass
class ColorResults:
    """Color classification output for one image."""

    saliency: np.ndarray
    class_maps: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def organism_map(self) -> np.ndarray:
        maps = [self.class_maps[name] for name in ORGANISM_FILTERS if name in self.class_maps]
        if not maps:
            return self.saliency
        return np.maximum.reduce(maps)


class ColorClassifier:
    """
    Color filter bank owned by exactly one worker thread.

    Produces a scale-aware center-surround saliency map and one similarity
    map per color filter.
    """

    def __init__(self, filters_: Optional[Dict[str, ColorFilter]] = None):
        self.filters = filters_ or {
            name: ColorFilter(name, ref, tol) for name, (ref, tol) in DEFAULT_FILTERS.items()
        }
        self.images_processed = 0

    @classmethod
    def load_filters(cls, directory: Optional[Union[str, Path]] = None) -> "ColorClassifier":
        """
        Load a filter bank.

        Each ``<name>.json`` in ``directory`` with ``reference_lab`` and
        ``tolerance`` overrides the built-in filter of the same name.
        Names outside COLOR_FILTERS are rejected.
        """
        filters_ = {
            name: ColorFilter(name, ref, tol) for name, (ref, tol) in DEFAULT_FILTERS.items()
        }
        if directory is None:
            return cls(filters_)

        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigError(f"Color filter directory not found: {directory}")

        for path in sorted(directory.glob("*.json")):
            name = path.stem
            if name not in COLOR_FILTERS:
                raise ConfigError(f"Unknown color filter {name!r} in {directory}")
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                ref = tuple(float(v) for v in data["reference_lab"])
                tol = float(data["tolerance"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise ConfigError(f"Could not load color filter {path}: {e}")
            if len(ref) != 3 or tol <= 0:
                raise ConfigError(f"Invalid color filter {path}")
            filters_[name] = ColorFilter(name, ref, tol)
            logger.debug("Loaded color filter %s from %s", name, path)

        return cls(filters_)

    def classify(
        self,
        lab: np.ndarray,
        min_radius: float,
        max_radius: float,
    ) -> ColorResults:
        """
        Run color classification on a Lab image.

        Args:
            lab: CIELab image (H, W, 3)
            min_radius: Minimum object radius in pixels
            max_radius: Maximum object radius in pixels

        Returns:
            ColorResults with saliency and per-filter maps, all in [0, 1]
        """
        center_sigma = max(1.0, min_radius / 4.0)
        surround_sigma = max(center_sigma * 2.0, max_radius * 2.0)

        center = filters.gaussian(lab, sigma=center_sigma, channel_axis=-1)
        surround = filters.gaussian(lab, sigma=surround_sigma, channel_axis=-1)
        contrast = np.sqrt(np.sum((center - surround) ** 2, axis=2))
        saliency = np.clip(contrast / SALIENCY_SCALE, 0.0, 1.0)

        class_maps = {}
        for name in COLOR_FILTERS:
            response = self.filters[name].apply(center)
            class_maps[name] = np.clip(response, 0.0, 1.0)

        self.images_processed += 1
        return ColorResults(saliency=saliency, class_maps=class_maps)
