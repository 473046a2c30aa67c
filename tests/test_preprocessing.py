"""Tests for image preparation."""

import numpy as np
import pytest

from scallop_analysis.core.color import COLOR_FILTERS, ColorClassifier
from scallop_analysis.core.preprocessing import (
    load_image,
    prepare_image,
    prepared_image,
    resize_image,
    to_rgb_float,
)
from scallop_analysis.errors import ConfigError


class TestLoading:
    """Tests for image loading and conversion."""

    def test_load_png(self, write_image, single_disk_image):
        """Test loading an RGB image from disk."""
        path = write_image(single_disk_image, "disk.png")
        image = load_image(path)

        assert image.shape == (200, 200, 3)
        assert image.dtype == np.uint8

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_image(tmp_path / "missing.png")

    def test_grayscale_to_rgb(self):
        """Test that grayscale input is replicated to three channels."""
        rgb = to_rgb_float(np.full((5, 5), 128, dtype=np.uint8))

        assert rgb.shape == (5, 5, 3)
        assert rgb.max() <= 1.0

    def test_resize_keeps_dtype(self, single_disk_image):
        """Test that resizing keeps the dtype and truncates dimensions."""
        small = resize_image(single_disk_image, 0.55)

        assert small.shape == (110, 110, 3)
        assert small.dtype == np.uint8


class TestPreparedImage:
    """Tests for the prepared representations."""

    def test_all_representations(self, prepared_disk):
        """Test that every representation has the image shape."""
        assert prepared_disk.shape == (200, 200)
        assert prepared_disk.rgb32.shape == (200, 200, 3)
        assert prepared_disk.lab.shape == (200, 200, 3)
        assert prepared_disk.gray8.dtype == np.uint8
        assert prepared_disk.rgb8.dtype == np.uint8
        assert set(prepared_disk.color.class_maps) == set(COLOR_FILTERS)

    def test_saliency_highlights_disk(self, prepared_disk):
        """Test that the disk is more salient than the background."""
        saliency = prepared_disk.color.saliency

        assert saliency.min() >= 0.0 and saliency.max() <= 1.0
        assert saliency[100, 100] > saliency[10, 10] + 0.3

    def test_stable_edges_on_disk_boundary(self, prepared_disk):
        """Test that stable edges lie near the disk outline."""
        rows, cols = np.nonzero(prepared_disk.gradients.stable_edges)
        assert len(rows) > 0

        dist = np.sqrt((rows - 100) ** 2 + (cols - 100) ** 2)
        assert np.median(np.abs(dist - 20)) < 3

    def test_flat_image_has_low_saliency(self, flat_image):
        """Test that a featureless image produces no salient regions."""
        prepared = prepare_image(flat_image, ColorClassifier(), 10.0, 40.0)

        assert prepared.color.saliency.max() < 0.05

    def test_buffers_released(self, single_disk_image):
        """Test that buffers are released when the scope exits."""
        with prepared_image(single_disk_image, ColorClassifier(), 10.0, 40.0) as prepared:
            assert prepared.gray32 is not None

        assert prepared.gray32 is None
        assert prepared.gradients is None

    def test_buffers_released_on_error(self, single_disk_image):
        """Test that buffers are released when processing raises."""
        with pytest.raises(RuntimeError):
            with prepared_image(single_disk_image, ColorClassifier(), 10.0, 40.0) as prepared:
                raise RuntimeError("boom")

        assert prepared.lab is None

    def test_color_classifier_counts_images(self, single_disk_image):
        """Test that the per-thread color classifier counts processed images."""
        classifier = ColorClassifier()
        prepare_image(single_disk_image, classifier, 10.0, 40.0)
        prepare_image(single_disk_image, classifier, 10.0, 40.0)

        assert classifier.images_processed == 2


class TestColorFilters:
    """Tests for loading color filters."""

    def test_override_filter(self, tmp_path):
        """Test that a JSON file overrides a built-in filter."""
        (tmp_path / "sand_dollar.json").write_text(
            '{"reference_lab": [30, 5, 5], "tolerance": 10}'
        )
        classifier = ColorClassifier.load_filters(tmp_path)

        assert classifier.filters["sand_dollar"].reference_lab == (30.0, 5.0, 5.0)
        assert classifier.filters["sand_dollar"].tolerance == 10.0

    def test_unknown_filter_rejected(self, tmp_path):
        """Test that unknown filter names are rejected."""
        (tmp_path / "starfish.json").write_text('{"reference_lab": [1, 2, 3], "tolerance": 1}')

        with pytest.raises(ConfigError):
            ColorClassifier.load_filters(tmp_path)

    def test_missing_directory(self, tmp_path):
        """Test that a missing filter directory is a configuration error."""
        with pytest.raises(ConfigError):
            ColorClassifier.load_filters(tmp_path / "nope")
