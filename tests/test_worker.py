"""Tests for the per-image worker and the streaming detector."""

import math
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

from conftest import DiskClassifier, draw_disks
from scallop_analysis.core.features import FEATURE_LENGTH
from scallop_analysis.core.pipeline import CoreDetector
from scallop_analysis.core.proposals import AUTO_POLICY_MIN_BATCH
from scallop_analysis.core.worker import (
    ImageTask,
    ImageWorker,
    RunContext,
    WorkerContext,
    WorkerState,
)
from scallop_analysis.errors import ConfigError, ImageSkipped
from scallop_analysis.models import Category, GroundTruthEntry
from scallop_analysis.output.writers import read_detection_list


def _worker(settings, run=None):
    return ImageWorker(settings, run or RunContext(), WorkerContext.create(0, settings))


def _near(det, r, c, tol):
    return math.hypot(det.r - r, det.c - c) <= tol


class RecordingDisplay:
    def __init__(self):
        self.shown = []

    def show(self, name, image, detections):
        self.shown.append((name, image.shape, len(detections)))


class TestEndToEnd:
    """Tests for the full chain on synthetic images."""

    def test_single_disk(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that one bright disk yields exactly one detection at its center."""
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        detections = detector.process_frame(single_disk_image)

        assert len(detections) == 1
        assert _near(detections[0], 100, 100, 3)
        assert detections[0].radius == pytest.approx(20, rel=0.3)
        assert detections[0].category == Category.BROWN_SCALLOP

    def test_multiple_disks(self, pixel_settings, multi_disk_image, disk_classifier):
        """Test that each disk is detected once."""
        image, disks = multi_disk_image
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        detections = detector.process_frame(image)

        assert len(detections) == len(disks)
        for r, c, _ in disks:
            assert sum(_near(det, r, c, 4) for det in detections) == 1

    def test_empty_scene(self, pixel_settings, flat_image, disk_classifier):
        """Test that a featureless image yields no detections."""
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        assert detector.process_frame(flat_image) == []
        assert detector.statistics.processed == 1

    def test_feature_classifier(self, pixel_settings, single_disk_image):
        """Test the chain with feature extraction and boundary refinement."""
        classifier = DiskClassifier(requires_features=True)
        detector = CoreDetector(pixel_settings, classifier=classifier)

        detections = detector.process_frame(single_disk_image)

        assert len(detections) == 1
        assert _near(detections[0], 100, 100, 3)

    def test_resize_round_trip(self, pixel_settings, disk_classifier):
        """Test that detections on a resized copy map back to original pixels."""
        image = draw_disks((400, 400), [(200, 200, 40)])
        base = replace(pixel_settings, min_search_radius_pixels=20.0, max_search_radius_pixels=60.0)
        resized = CoreDetector(base, classifier=disk_classifier)
        full = CoreDetector(replace(base, resize_factor_required=0.0), classifier=disk_classifier)

        small = resized.process_frame(image)
        large = full.process_frame(image)

        assert len(small) == len(large) == 1
        assert _near(small[0], large[0].r, large[0].c, 3)
        assert small[0].radius == pytest.approx(large[0].radius, rel=0.25)
        assert _near(small[0], 200, 200, 3)


class TestStreaming:
    """Tests for the streaming entry points."""

    def test_frame_names_and_display(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that frames are numbered and shown through the display."""
        display = RecordingDisplay()
        settings = replace(pixel_settings, enable_output_display=True)
        detector = CoreDetector(settings, classifier=disk_classifier, run=RunContext(display=display))

        detector.process_frame(single_disk_image)
        detector.process_frame(single_disk_image)

        assert [name for name, _, _ in display.shown] == ["streaming_frame_1", "streaming_frame_2"]
        assert display.shown[0][2] == 1

    def test_stereo_pair(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that a stereo pair is processed as one wide frame."""
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        detections = detector.process_stereo_frame(single_disk_image, single_disk_image)

        assert sorted(round(det.c / 100) for det in detections) == [1, 3]

    def test_stereo_mismatch(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that pairs of different heights are rejected."""
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        with pytest.raises(ValueError):
            detector.process_stereo_frame(single_disk_image, single_disk_image[:150])

    def test_left_half_only(self, pixel_settings, disk_classifier):
        """Test that only the left half of a side-by-side frame is searched."""
        image = draw_disks((200, 400), [(100, 100, 20), (100, 300, 20)])
        settings = replace(pixel_settings, process_left_half_only=True)
        detector = CoreDetector(settings, classifier=disk_classifier)

        detections = detector.process_frame(image)

        assert len(detections) == 1
        assert _near(detections[0], 100, 100, 3)

    def test_metadata_scaling(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that altitude and focal length set the search range in meters."""
        settings = replace(
            pixel_settings,
            use_metadata=True,
            is_metadata_in_image=False,
            focal_length=1000.0,
            min_search_radius_meters=0.01,
            max_search_radius_meters=0.04,
        )
        detector = CoreDetector(settings, classifier=disk_classifier)

        # 1 mm per pixel: the 20 px disk is a 2 cm object
        detections = detector.process_frame(single_disk_image, altitude=1.0)

        assert len(detections) == 1
        assert detector.statistics.surveyed_area == pytest.approx(0.04)

    def test_process_file(self, pixel_settings, single_disk_image, disk_classifier, write_image):
        """Test detection from an image file."""
        path = write_image(single_disk_image, "frame.png")
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        assert len(detector.process_file(path)) == 1
        assert detector.process_file(path.with_name("missing.png")) == []

    def test_detection_list(self, pixel_settings, single_disk_image, flat_image, disk_classifier):
        """Test that the list is truncated on start and gains one line per frame."""
        settings = replace(pixel_settings, output_list=True)
        settings.list_path.parent.mkdir(parents=True)
        settings.list_path.write_text("stale.png,0\n")

        with CoreDetector(settings, classifier=disk_classifier) as detector:
            detector.process_frame(single_disk_image)
            detector.process_frame(flat_image)
            detector.process_frame(np.zeros((0, 0, 3), dtype=np.uint8))

        written = read_detection_list(settings.list_path)
        assert list(written) == ["streaming_frame_1", "streaming_frame_2"]
        assert written["streaming_frame_1"][0][0] == "brown_scallop"
        assert written["streaming_frame_2"] == []

    def test_unopenable_detection_list(self, pixel_settings, tmp_path, disk_classifier):
        """Test that a list that cannot be opened fails at construction."""
        (tmp_path / "blocked").write_text("")
        settings = replace(pixel_settings, output_list=True, output_directory=str(tmp_path / "blocked"))

        with pytest.raises(ConfigError):
            CoreDetector(settings, classifier=disk_classifier)

    def test_benchmark_file(self, pixel_settings, single_disk_image, disk_classifier, tmp_path):
        """Test that stage timings are written one line per frame."""
        settings = replace(pixel_settings, benchmark_file=str(tmp_path / "bench.csv"))

        with CoreDetector(settings, classifier=disk_classifier) as detector:
            detector.process_frame(single_disk_image)
            detector.process_frame(single_disk_image)

        lines = (tmp_path / "bench.csv").read_text().splitlines()
        assert lines[0].startswith("image,initializing")
        assert [line.split(",")[0] for line in lines[1:]] == [
            "streaming_frame_1",
            "streaming_frame_2",
        ]

    def test_auto_blob_policy_fixed_for_stream(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that every frame of a stream uses the same blob detector."""
        settings = replace(pixel_settings, blob_policy="auto")
        detector = CoreDetector(settings, classifier=disk_classifier)

        results = [
            [(d.r, d.c, d.major) for d in detector.process_frame(single_disk_image)]
            for _ in range(AUTO_POLICY_MIN_BATCH + 2)
        ]

        assert detector.run.salient_blobs is False
        assert all(result == results[0] for result in results)


class TestSkippedImages:
    """Tests for recoverable per-image failures."""

    def test_empty_image(self, pixel_settings, disk_classifier):
        """Test that a zero-dimension image is skipped."""
        worker = _worker(pixel_settings)
        task = ImageTask(name="empty.png", image=np.zeros((0, 10, 3), dtype=np.uint8))

        with pytest.raises(ImageSkipped, match="empty"):
            worker.process(task, disk_classifier)
        assert worker.state == WorkerState.ERROR

    def test_missing_metadata(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that required but absent metadata skips the image."""
        settings = replace(pixel_settings, use_metadata=True, is_metadata_in_image=False,
                           min_search_radius_meters=0.01, max_search_radius_meters=0.04)
        worker = _worker(settings)

        with pytest.raises(ImageSkipped, match="metadata"):
            worker.process(ImageTask(name="a.png", image=single_disk_image), disk_classifier)

    def test_streaming_frame_without_metadata(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that a frame with no pose is skipped when metadata is required."""
        settings = replace(
            pixel_settings,
            use_metadata=True,
            is_metadata_in_image=False,
            focal_length=1000.0,
            min_search_radius_meters=0.01,
            max_search_radius_meters=0.04,
        )
        detector = CoreDetector(settings, classifier=disk_classifier)

        assert detector.process_frame(single_disk_image) == []
        assert detector.statistics.processed == 0
        assert len(detector.process_frame(single_disk_image, altitude=1.0)) == 1

    def test_tiny_search_radius(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that a maximum radius under one pixel skips the image."""
        settings = replace(pixel_settings, min_search_radius_pixels=0.2, max_search_radius_pixels=0.5)
        worker = _worker(settings)

        with pytest.raises(ImageSkipped, match="below one pixel"):
            worker.process(ImageTask(name="a.png", image=single_disk_image), disk_classifier)

    def test_unreadable_file(self, pixel_settings, tmp_path, disk_classifier):
        """Test that a corrupt image file is skipped."""
        path = tmp_path / "broken.png"
        path.write_bytes(b"not a png")
        worker = _worker(pixel_settings)

        with pytest.raises(ImageSkipped):
            worker.process(ImageTask(name="broken.png", input_path=str(path)), disk_classifier)

    def test_streaming_skip_returns_empty(self, pixel_settings, disk_classifier):
        """Test that streaming calls report skipped frames as no detections."""
        detector = CoreDetector(pixel_settings, classifier=disk_classifier)

        assert detector.process_frame(np.zeros((0, 0, 3), dtype=np.uint8)) == []


class TestWorkerOutputs:
    """Tests for timings, image dumps and training capture."""

    def test_states_and_timings(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that a successful run ends in Done with stage timings."""
        worker = _worker(pixel_settings)

        result = worker.process(ImageTask(name="a.png", image=single_disk_image), disk_classifier)

        assert worker.state == WorkerState.DONE
        assert result.resize_factor == 1.0
        assert result.n_candidates >= 1
        for stage in ("initializing", "preparing", "proposing_candidates", "classifying", "emitting"):
            assert stage in result.timings

    def test_image_dumps(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that proposal and detection overlays are written."""
        settings = replace(pixel_settings, output_proposal_images=True, output_detection_images=True)
        worker = _worker(settings)

        worker.process(ImageTask(name="dive/a.png", image=single_disk_image), disk_classifier)

        out = Path(pixel_settings.output_directory) / "dive"
        assert (out / "a_proposals.png").exists()
        assert (out / "a_detections.png").exists()

    def test_ground_truth_capture(self, pixel_settings, single_disk_image):
        """Test that ground-truth training yields one sample per labeled object."""
        settings = replace(
            pixel_settings,
            is_training_mode=True,
            use_file_for_training=True,
            ground_truth_file="gt.csv",
            training_percent_keep=0.0,
        )
        truth = GroundTruthEntry("a.png", Category.WHITE_SCALLOP, 100, 100, 20, 20)
        task = ImageTask(name="a.png", image=single_disk_image, ground_truth=(truth,))
        classifier = DiskClassifier(requires_features=True)

        result = _worker(settings).process(task, classifier)

        assert len(result.samples) == 1
        assert result.samples[0].category == Category.WHITE_SCALLOP
        assert result.samples[0].features.shape == (FEATURE_LENGTH,)
        assert result.detections == []
        assert classifier.calls == 0

    def test_labeler_ends_session(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that a labeler returning None cancels the run."""
        class Quit:
            def label(self, name, image, candidates):
                return None

        settings = replace(pixel_settings, is_training_mode=True)
        run = RunContext(labeler=Quit())

        result = _worker(settings, run).process(
            ImageTask(name="a.png", image=single_disk_image), disk_classifier
        )

        assert run.cancelled
        assert result.samples == []

    def test_labeler_designations(self, pixel_settings, single_disk_image, disk_classifier):
        """Test that interactive designations become samples."""
        class First:
            def label(self, name, image, candidates):
                return [(candidates[0], Category.SAND_DOLLAR)]

        settings = replace(pixel_settings, is_training_mode=True)
        run = RunContext(labeler=First())

        result = _worker(settings, run).process(
            ImageTask(name="a.png", image=single_disk_image), disk_classifier
        )

        assert not run.cancelled
        assert [s.category for s in result.samples] == [Category.SAND_DOLLAR]
