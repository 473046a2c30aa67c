"""System and classifier configuration."""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigError

BLOB_POLICIES = ("salient", "colored", "auto")
CLASSIFIER_TYPES = ("boosted", "neural")


@dataclass
class SystemParameters:
    """Run-wide settings for the detection pipeline."""

    # Inputs
    input_directory: str = ""
    input_filename: str = ""
    is_input_directory: bool = True
    is_metadata_in_image: bool = True

    # Outputs
    output_directory: str = "output"
    output_filename: str = "detections.csv"
    output_list: bool = True
    output_proposal_images: bool = False
    output_detection_images: bool = False
    enable_output_display: bool = False
    benchmark_file: Optional[str] = None

    # Geometry
    use_metadata: bool = False
    focal_length: float = 0.0  # pixels
    min_search_radius_meters: float = 0.015
    max_search_radius_meters: float = 0.1
    min_search_radius_pixels: float = 8.0
    max_search_radius_pixels: float = 60.0
    max_pixels_for_min_radius: float = 12.0
    resize_factor_required: float = 0.9
    process_left_half_only: bool = False
    look_at_border_points: bool = False

    # Classification
    classifier_to_use: str = "default"
    classifier_directory: str = "classifiers"
    color_filter_directory: Optional[str] = None
    blob_policy: str = "salient"

    # Training
    is_training_mode: bool = False
    use_file_for_training: bool = False
    ground_truth_file: Optional[str] = None
    training_percent_keep: float = 0.1
    training_output_file: str = "training_samples.npz"
    random_seed: Optional[int] = None

    # Concurrency
    num_threads: int = 1

    def validate(self) -> "SystemParameters":
        """Check value ranges, raising ConfigError on the first problem."""
        if self.num_threads < 1:
            raise ConfigError("num_threads must be at least 1")
        if self.blob_policy not in BLOB_POLICIES:
            raise ConfigError(
                f"blob_policy must be one of {BLOB_POLICIES}, got {self.blob_policy!r}"
            )
        if not 0.0 <= self.training_percent_keep <= 1.0:
            raise ConfigError("training_percent_keep must be within [0, 1]")
        if self.use_metadata:
            lo, hi = self.min_search_radius_meters, self.max_search_radius_meters
        else:
            lo, hi = self.min_search_radius_pixels, self.max_search_radius_pixels
        if lo <= 0 or hi <= 0 or lo > hi:
            raise ConfigError(f"Invalid search radius range [{lo}, {hi}]")
        if self.max_pixels_for_min_radius <= 0:
            raise ConfigError("max_pixels_for_min_radius must be positive")
        if self.use_file_for_training and not self.ground_truth_file:
            raise ConfigError("use_file_for_training requires ground_truth_file")
        return self

    @property
    def list_path(self) -> Path:
        return Path(self.output_directory) / self.output_filename


@dataclass
class LabelSpec:
    """One output bin of a classifier."""

    id: int
    name: str
    category: str = "other"


@dataclass
class ClassifierParameters:
    """Settings for one classifier configuration key."""

    key: str
    classifier_type: str = "boosted"
    description: str = ""
    detects_organism: bool = True
    labels: List[LabelSpec] = field(default_factory=list)

    # Boosted: one model per label. Neural: a single primary network.
    model_files: List[str] = field(default_factory=list)
    threshold: float = 0.0

    # Neural-network only
    suppression_model_file: Optional[str] = None
    suppression_labels: List[LabelSpec] = field(default_factory=list)
    suppression_threshold: float = 0.5
    preclassifier_file: Optional[str] = None
    preclassifier_threshold: float = -0.5
    chip_size: int = 64
    device: str = "cpu"

    # Directory the config was read from; relative model paths resolve here
    base_directory: str = "."

    def resolve(self, filename: str) -> Path:
        path = Path(filename)
        if not path.is_absolute():
            path = Path(self.base_directory) / path
        return path

    def validate(self) -> "ClassifierParameters":
        if self.classifier_type not in CLASSIFIER_TYPES:
            raise ConfigError(
                f"Classifier {self.key}: unknown type {self.classifier_type!r}"
            )
        if not self.labels:
            raise ConfigError(f"Classifier {self.key}: no labels configured")
        if not self.model_files:
            raise ConfigError(f"Classifier {self.key}: no model files configured")
        if self.classifier_type == "boosted" and len(self.model_files) != len(self.labels):
            raise ConfigError(
                f"Classifier {self.key}: boosted classifiers need one model file per label"
            )
        if self.chip_size < 8:
            raise ConfigError(f"Classifier {self.key}: chip_size too small")
        return self


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Unable to read configuration {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must contain a JSON object")
    return data


def _check_keys(cls, data: Dict[str, Any], source: str) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {source}: {', '.join(unknown)}")


def system_parameters_from_dict(data: Dict[str, Any], source: str = "settings") -> SystemParameters:
    """Build SystemParameters from a plain dictionary."""
    _check_keys(SystemParameters, data, source)
    try:
        params = SystemParameters(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid {source}: {e}")
    return params.validate()


def load_system_config(path: Union[str, Path]) -> SystemParameters:
    """Load and validate system parameters from a JSON file."""
    path = Path(path)
    return system_parameters_from_dict(_read_json(path), source=str(path))


def _parse_labels(raw: Any, source: str) -> List[LabelSpec]:
    if not isinstance(raw, list):
        raise ConfigError(f"{source}: labels must be a list")
    labels = []
    for i, item in enumerate(raw):
        if isinstance(item, str):
            labels.append(LabelSpec(id=i, name=item, category=item))
        elif isinstance(item, dict) and "name" in item:
            labels.append(
                LabelSpec(
                    id=int(item.get("id", i)),
                    name=str(item["name"]),
                    category=str(item.get("category", item["name"])),
                )
            )
        else:
            raise ConfigError(f"{source}: invalid label entry {item!r}")
    return labels


def classifier_parameters_from_dict(
    key: str,
    data: Dict[str, Any],
    base_directory: Union[str, Path] = ".",
) -> ClassifierParameters:
    """Build ClassifierParameters from a plain dictionary."""
    source = f"classifier {key}"
    data = dict(data)
    data.pop("key", None)
    _check_keys(ClassifierParameters, data, source)
    data["labels"] = _parse_labels(data.get("labels", []), source)
    data["suppression_labels"] = _parse_labels(data.get("suppression_labels", []), source)
    if isinstance(data.get("model_files"), str):
        data["model_files"] = [data["model_files"]]
    data["base_directory"] = str(data.get("base_directory", base_directory))
    try:
        params = ClassifierParameters(key=key, **data)
    except TypeError as e:
        raise ConfigError(f"Invalid {source}: {e}")
    return params.validate()


def load_classifier_config(key: str, settings: SystemParameters) -> ClassifierParameters:
    """Resolve a classifier key to its parameters.

    The configuration is read from ``<classifier_directory>/<key>.json``.
    """
    directory = Path(settings.classifier_directory)
    path = directory / f"{key}.json"
    return classifier_parameters_from_dict(key, _read_json(path), base_directory=directory)
