"""Parameter profiles for different survey platforms."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict

from .config import SystemParameters


@dataclass
class SurveyProfile:
    """Named set of overrides applied on top of default system parameters."""

    name: str
    description: str
    overrides: Dict[str, Any] = field(default_factory=dict)

    def apply(self, base: SystemParameters) -> SystemParameters:
        return replace(base, **self.overrides).validate()


# Built-in profiles
PROFILES = {
    "default": SurveyProfile(
        name="default",
        description="Pixel-unit search radii, no camera metadata",
    ),
    "habcam": SurveyProfile(
        name="habcam",
        description="Towed stereo camera: metadata in list, left frame only",
        overrides={
            "use_metadata": True,
            "is_metadata_in_image": False,
            "is_input_directory": False,
            "process_left_half_only": True,
            "min_search_radius_meters": 0.015,
            "max_search_radius_meters": 0.09,
            "focal_length": 2300.0,
        },
    ),
    "auv": SurveyProfile(
        name="auv",
        description="AUV downward camera with altitude in image EXIF",
        overrides={
            "use_metadata": True,
            "is_metadata_in_image": True,
            "min_search_radius_meters": 0.02,
            "max_search_radius_meters": 0.1,
            "focal_length": 1800.0,
        },
    ),
    "large-batch": SurveyProfile(
        name="large-batch",
        description="Cheaper color-blob proposals for large runs",
        overrides={
            "blob_policy": "auto",
            "num_threads": 4,
        },
    ),
    "training": SurveyProfile(
        name="training",
        description="Ground-truth driven sample extraction",
        overrides={
            "is_training_mode": True,
            "use_file_for_training": True,
            "ground_truth_file": "groundtruth.csv",
            "look_at_border_points": True,
            "output_list": False,
            "num_threads": 1,
        },
    ),
}


def get_profile(name: str) -> SurveyProfile:
    """Get a survey profile by name."""
    if name not in PROFILES:
        available = ", ".join(PROFILES.keys())
        raise ValueError(f"Unknown profile '{name}'. Available: {available}")
    return PROFILES[name]


def list_profiles() -> list[str]:
    """List all available profile names."""
    return list(PROFILES.keys())


def profile_help() -> str:
    """Get help text describing all profiles."""
    lines = ["Available profiles:"]
    for name, profile in PROFILES.items():
        lines.append(f"  {name}: {profile.description}")
    return "\n".join(lines)
