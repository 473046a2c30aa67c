"""Tests for the scallop-detect command line."""

import json

import joblib
import numpy as np
import pytest
from sklearn.ensemble import AdaBoostClassifier

from conftest import draw_disks
from scallop_analysis.cli import build_settings, create_parser, main
from scallop_analysis.core.features import FEATURE_LENGTH
from scallop_analysis.errors import ScallopError
from scallop_analysis.output.writers import read_detection_list


@pytest.fixture
def classifier_dir(tmp_path):
    """Boosted classifier config over full feature vectors that never fires."""
    rng = np.random.default_rng(0)
    X = rng.normal(size=(40, FEATURE_LENGTH))
    y = np.array([0, 1] * 20)
    directory = tmp_path / "classifiers"
    directory.mkdir()
    joblib.dump(AdaBoostClassifier(n_estimators=5, random_state=0).fit(X, y), directory / "brown.joblib")
    (directory / "survey.json").write_text(json.dumps({
        "labels": [{"name": "brown", "category": "brown_scallop"}],
        "model_files": ["brown.joblib"],
        "threshold": 1e6,
    }))
    return directory


class TestParser:
    """Tests for argument parsing and settings layering."""

    def test_batch_overrides(self):
        """Test that command-line options override defaults."""
        args = create_parser().parse_args([
            "batch", "--input-dir", "imgs", "--threads", "3",
            "--min-radius", "12", "--max-radius", "30", "-o", "results",
        ])
        settings = build_settings(args)

        assert settings.input_directory == "imgs"
        assert settings.num_threads == 3
        assert settings.min_search_radius_pixels == 12
        assert settings.max_search_radius_pixels == 30
        assert settings.output_directory == "results"

    def test_radius_units_follow_profile(self):
        """Test that radii are meters once a metadata profile is active."""
        args = create_parser().parse_args(["batch", "--profile", "auv", "--min-radius", "0.03"])

        assert build_settings(args).min_search_radius_meters == 0.03

    def test_input_list(self, tmp_path):
        """Test that an input list selects list mode."""
        args = create_parser().parse_args(["batch", "--input-list", str(tmp_path / "list.txt")])
        settings = build_settings(args)

        assert not settings.is_input_directory
        assert settings.input_filename == "list.txt"

    def test_unknown_profile(self):
        """Test that an unknown profile is reported as a pipeline error."""
        args = create_parser().parse_args(["batch", "--profile", "submarine"])

        with pytest.raises(ScallopError):
            build_settings(args)

    def test_exclusive_sources(self):
        """Test that directory and list inputs cannot be combined."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["batch", "--input-dir", "a", "--input-list", "b"])


class TestMain:
    """Tests for command execution and exit codes."""

    def test_profiles(self, capsys):
        """Test listing profiles."""
        assert main(["profiles"]) == 0
        assert "habcam" in capsys.readouterr().out

    def test_no_command(self):
        """Test that no command prints help and succeeds."""
        assert main([]) == 0

    def test_batch_missing_classifier(self, tmp_path, write_image):
        """Test that a classifier that cannot load exits with status 1."""
        write_image(draw_disks((120, 120), []), "imgs/a.png")

        code = main([
            "batch", "--input-dir", str(tmp_path / "imgs"),
            "--classifier-dir", str(tmp_path / "nowhere"),
            "-o", str(tmp_path / "out"),
        ])

        assert code == 1

    def test_batch_run(self, tmp_path, write_image, classifier_dir):
        """Test a full batch run through the boosted classifier."""
        write_image(draw_disks((160, 160), [(80, 80, 20)]), "imgs/a.png")
        write_image(draw_disks((160, 160), []), "imgs/b.png")

        code = main([
            "batch", "--input-dir", str(tmp_path / "imgs"),
            "--classifier", "survey", "--classifier-dir", str(classifier_dir),
            "--min-radius", "10", "--max-radius", "40",
            "-o", str(tmp_path / "out"),
        ])

        assert code == 0
        written = read_detection_list(tmp_path / "out" / "detections.csv")
        assert written == {"a.png": [], "b.png": []}
        assert list((tmp_path / "out" / "logs").glob("session_*/run.log"))

    def test_process_missing_image(self, tmp_path, classifier_dir):
        """Test that a missing image exits with status 1."""
        code = main([
            "process", str(tmp_path / "missing.png"),
            "--classifier", "survey", "--classifier-dir", str(classifier_dir),
            "-o", str(tmp_path / "out"),
        ])

        assert code == 1

    def test_process_image(self, tmp_path, write_image, classifier_dir):
        """Test single-image processing writes the overlay."""
        path = write_image(draw_disks((160, 160), [(80, 80, 20)]), "frame.png")

        code = main([
            "process", str(path),
            "--classifier", "survey", "--classifier-dir", str(classifier_dir),
            "--min-radius", "10", "--max-radius", "40",
            "-o", str(tmp_path / "out"),
        ])

        assert code == 0
        assert (tmp_path / "out" / "frame_detections.png").exists()
