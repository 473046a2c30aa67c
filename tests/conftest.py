"""Pytest fixtures for scallop detection tests."""

import threading

import numpy as np
import pytest
from PIL import Image

from scallop_analysis.classifiers.base import Classifier
from scallop_analysis.config import ClassifierParameters, LabelSpec, SystemParameters
from scallop_analysis.core.color import ColorClassifier
from scallop_analysis.core.preprocessing import prepare_image
from scallop_analysis.models import Candidate, Category, TrainingSample

SAND = (0.35, 0.30, 0.24)
SHELL = (0.90, 0.84, 0.76)


def draw_disks(shape, disks, background=SAND, foreground=SHELL, noise=0.01, seed=0):
    """Draw filled disks on a flat background.

    Args:
        shape: (height, width)
        disks: List of (row, col, radius)

    Returns:
        uint8 RGB image
    """
    h, w = shape
    image = np.empty((h, w, 3), dtype=np.float64)
    image[:] = background

    yy, xx = np.mgrid[:h, :w]
    for r, c, radius in disks:
        mask = (yy - r) ** 2 + (xx - c) ** 2 <= radius ** 2
        image[mask] = foreground

    rng = np.random.default_rng(seed)
    image += rng.normal(0, noise, image.shape)
    return (np.clip(image, 0, 1) * 255).astype(np.uint8)


def ring_fractions(gray, cd, bright=0.6):
    """Fraction of bright pixels inside a candidate and in a ring around it."""
    h, w = gray.shape
    yy, xx = np.mgrid[:h, :w]
    dist = np.sqrt((yy - cd.r) ** 2 + (xx - cd.c) ** 2)
    inside = dist <= 0.8 * cd.radius
    ring = (dist >= 1.2 * cd.radius) & (dist <= 1.5 * cd.radius)
    if not inside.any() or not ring.any():
        return 0.0, 1.0
    return float((gray[inside] > bright).mean()), float((gray[ring] > bright).mean())


class DiskClassifier(Classifier):
    """Accepts candidates whose outline matches a bright disk."""

    def __init__(self, key="default", requires_features=False):
        params = ClassifierParameters(
            key=key,
            labels=[LabelSpec(id=0, name="brown", category="brown_scallop")],
            model_files=["unused"],
        )
        super().__init__(params)
        self._requires_features = requires_features
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def requires_features(self):
        return self._requires_features

    def classify(self, prepared, candidates):
        with self._lock:
            self.calls += 1
        positives = []
        for cd in candidates:
            inner, outer = ring_fractions(prepared.gray32, cd)
            if inner >= 0.8 and outer <= 0.2:
                cd.class_scores = {Category.BROWN_SCALLOP: inner - outer}
                cd.label = Category.BROWN_SCALLOP
                positives.append(cd)
        return positives

    def sample(self, prepared, cd, category, source):
        features = cd.features.copy() if cd.features is not None else np.zeros(1)
        return TrainingSample(source=source, category=category, features=features)


@pytest.fixture
def single_disk_image():
    """200x200 image with one bright disk of radius 20 at (100, 100)."""
    return draw_disks((200, 200), [(100, 100, 20)])


@pytest.fixture
def multi_disk_image():
    """300x300 image with three disks of different sizes."""
    disks = [(70, 70, 15), (80, 210, 22), (210, 150, 18)]
    return draw_disks((300, 300), disks), disks


@pytest.fixture
def flat_image():
    """Featureless sand-colored image."""
    return draw_disks((120, 120), [], noise=0.0)


@pytest.fixture
def pixel_settings(tmp_path):
    """Pixel-unit settings suited to the synthetic disks."""
    return SystemParameters(
        output_directory=str(tmp_path / "out"),
        min_search_radius_pixels=10.0,
        max_search_radius_pixels=40.0,
        output_list=False,
    )


@pytest.fixture
def disk_classifier():
    return DiskClassifier()


@pytest.fixture
def prepared_disk(single_disk_image):
    """Prepared representations of the single-disk image."""
    return prepare_image(single_disk_image, ColorClassifier(), 10.0, 40.0)


@pytest.fixture
def disk_candidate():
    """Candidate matching the single-disk image."""
    return Candidate(r=100.0, c=100.0, major=20.0, minor=20.0)


@pytest.fixture
def write_image(tmp_path):
    """Save a numpy image as PNG under tmp_path and return its path."""
    def _write(image, name):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(image).save(path)
        return path
    return _write
