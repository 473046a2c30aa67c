"""Input set resolution: directory scans, input lists, ground truth."""

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .config import SystemParameters
from .core.calibration import CameraMetadata
from .errors import ConfigError
from .models import Category, GroundTruthEntry

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".tif", ".tiff", ".png"}


@dataclass
class InputEntry:
    """One image to process and how to process it."""

    path: Path
    name: str
    classifier_key: str
    camera: Optional[CameraMetadata] = None


def list_directory_images(directory: Union[str, Path]) -> List[Path]:
    """All image files under ``directory`` (recursive), sorted."""
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigError(f"Input directory not found: {directory}")
    return sorted(
        p for p in directory.rglob("*")
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def read_input_list(
    path: Union[str, Path],
    metadata_in_list: bool = False,
    focal_length: float = 0.0,
) -> List[InputEntry]:
    """
    Parse an input list file.

    Each non-empty line is ``<file> <classifier key>``, or with
    ``metadata_in_list`` set, ``<file> <altitude> <pitch> <roll> <classifier key>``.
    Lines starting with ``#`` are ignored.

    Raises:
        ConfigError: If the list is missing or a line is malformed
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigError(f"Unable to open input list {path}: {e}")

    expected = 5 if metadata_in_list else 2
    entries = []
    for lineno, line in enumerate(lines, 1):
        tokens = line.split()
        if not tokens or tokens[0].startswith("#"):
            continue
        if len(tokens) != expected:
            raise ConfigError(
                f"{path}:{lineno}: expected {expected} fields, got {len(tokens)}"
            )

        camera = None
        if metadata_in_list:
            try:
                alt, pitch, roll = (float(v) for v in tokens[1:4])
            except ValueError:
                raise ConfigError(f"{path}:{lineno}: invalid altitude/pitch/roll")
            camera = CameraMetadata(altitude=alt, pitch=pitch, roll=roll, focal_length=focal_length)

        image_path = Path(tokens[0])
        entries.append(
            InputEntry(
                path=image_path,
                name=image_path.name,
                classifier_key=tokens[-1],
                camera=camera,
            )
        )
    return entries


def resolve_inputs(settings: SystemParameters) -> List[InputEntry]:
    """
    Build the list of images for a run.

    Directory mode (always used for training) scans the input directory and
    assigns the configured classifier to every image. List mode reads
    ``input_directory/input_filename``.

    Raises:
        ConfigError: If the resolved input set is empty
    """
    if settings.is_input_directory or settings.is_training_mode:
        root = Path(settings.input_directory or ".")
        entries = [
            InputEntry(
                path=p,
                name=str(p.relative_to(root)),
                classifier_key=settings.classifier_to_use,
            )
            for p in list_directory_images(root)
        ]
    else:
        list_path = Path(settings.input_directory or ".") / settings.input_filename
        entries = read_input_list(
            list_path,
            metadata_in_list=not settings.is_metadata_in_image,
            focal_length=settings.focal_length,
        )

    if not entries:
        raise ConfigError("Input invalid or contains no valid images")
    logger.debug("Resolved %d input images", len(entries))
    return entries


def parse_ground_truth(path: Union[str, Path]) -> Dict[str, List[GroundTruthEntry]]:
    """
    Read a ground-truth CSV file.

    Columns: filename, category, row, col, major, minor[, angle]. A header
    line is skipped. Entries are grouped by image base name.

    Raises:
        ConfigError: If the file is missing or a row is malformed
    """
    path = Path(path)
    grouped: Dict[str, List[GroundTruthEntry]] = {}
    try:
        with open(path, "r", newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
    except OSError as e:
        raise ConfigError(f"Unable to open ground truth file {path}: {e}")

    for lineno, row in enumerate(rows, 1):
        row = [v.strip() for v in row]
        if not row or not row[0] or row[0].startswith("#"):
            continue
        if len(row) < 6:
            raise ConfigError(f"{path}:{lineno}: expected at least 6 columns")
        try:
            r, c, major, minor = (float(v) for v in row[2:6])
            angle = float(row[6]) if len(row) > 6 and row[6] else 0.0
        except ValueError:
            if lineno == 1:
                continue  # header
            raise ConfigError(f"{path}:{lineno}: invalid number")

        name = Path(row[0]).name
        grouped.setdefault(name, []).append(
            GroundTruthEntry(
                name=name,
                category=Category.parse(row[1]),
                r=r,
                c=c,
                major=major,
                minor=minor,
                angle=angle,
            )
        )

    logger.debug("Read ground truth for %d images from %s", len(grouped), path)
    return grouped
