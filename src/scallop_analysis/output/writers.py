"""Persistent outputs: detection list, training samples, stage timings."""

import csv
import threading
from pathlib import Path
from typing import Dict, List, Sequence, Union

import numpy as np

from ..errors import ConfigError
from ..models import Detection, TrainingSample


class DetectionListWriter:
    """
    Detection list file, one CSV line per processed image.

    Each line holds the image name, the number of detections, then six
    fields per detection: category, row, column, angle, major, minor, all
    in original-image pixels. The file is truncated when opened.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "w", newline="", encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Unable to open output list {self.path}: {e}")
        self._writer = csv.writer(self._file)

    def write(self, name: str, detections: Sequence[Detection]) -> None:
        row: List = [name, len(detections)]
        for det in detections:
            row.extend(det.to_record())
        with self._lock:
            self._writer.writerow(row)
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self) -> "DetectionListWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def read_detection_list(path: Union[str, Path]) -> Dict[str, List[List]]:
    """Parse a detection list back into {image name: [record, ...]}."""
    results: Dict[str, List[List]] = {}
    with open(path, "r", newline="", encoding="utf-8") as f:
        for row in csv.reader(f):
            if not row:
                continue
            name, count = row[0], int(row[1])
            fields = row[2:]
            records = []
            for i in range(count):
                cat, *numbers = fields[i * 6:(i + 1) * 6]
                records.append([cat] + [float(v) for v in numbers])
            results[name] = records
    return results


def write_training_samples(path: Union[str, Path], samples: Sequence[TrainingSample]) -> Path:
    """
    Save training samples as a compressed ``.npz`` archive.

    Arrays: ``labels`` (category names), ``sources`` (image names), and
    ``features`` and/or ``chips`` when every sample carries them.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    arrays = {
        "labels": np.array([s.category.value for s in samples], dtype=str),
        "sources": np.array([s.source for s in samples], dtype=str),
    }
    if samples and all(s.features is not None for s in samples):
        arrays["features"] = np.stack([s.features for s in samples])
    if samples and all(s.chip is not None for s in samples):
        arrays["chips"] = np.stack([s.chip for s in samples])

    np.savez_compressed(path, **arrays)
    return path


class BenchmarkWriter:
    """Per-image stage durations, one CSV line per image."""

    def __init__(self, path: Union[str, Path], stages: Sequence[str]):
        self.path = Path(path)
        self.stages = list(stages)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "w", newline="", encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Unable to open benchmark file {self.path}: {e}")
        self._writer = csv.writer(self._file)
        self._writer.writerow(["image"] + self.stages + ["total"])

    def write(self, name: str, timings: Dict[str, float]) -> None:
        values = [timings.get(stage, 0.0) for stage in self.stages]
        self._writer.writerow([name] + [f"{v:.4f}" for v in values] + [f"{sum(values):.4f}"])
        self._file.flush()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()
