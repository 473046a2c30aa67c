"""Core processing modules for scallop detection."""

from .calibration import CameraMetadata, calculate_image_properties, compute_resize_factor
from .preprocessing import load_image, prepare_image, prepared_image
from .consolidation import prioritize_candidates
from .features import FEATURE_LENGTH, extract_features
from .worker import ImageTask, ImageWorker, RunContext, WorkerContext, WorkerState

__all__ = [
    "CameraMetadata",
    "calculate_image_properties",
    "compute_resize_factor",
    "load_image",
    "prepare_image",
    "prepared_image",
    "prioritize_candidates",
    "FEATURE_LENGTH",
    "extract_features",
    "ImageTask",
    "ImageWorker",
    "RunContext",
    "WorkerContext",
    "WorkerState",
]
