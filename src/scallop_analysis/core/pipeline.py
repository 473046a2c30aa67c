"""Pipeline driver: batch dispatch across worker slots, and streaming entry points."""

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

import numpy as np

from ..classifiers.base import Classifier, load_classifier
from ..config import SystemParameters, load_classifier_config, load_system_config
from ..errors import ClassifierLoadError, ConfigError, ImageSkipped
from ..inputs import InputEntry, parse_ground_truth, resolve_inputs
from ..models import Category, Detection, ThreadStatistics, TrainingSample
from ..output.logger import log_detection, log_image_start, log_warning
from ..output.writers import BenchmarkWriter, DetectionListWriter, write_training_samples
from .calibration import CameraMetadata, read_camera_metadata
from .preprocessing import load_image
from .proposals import use_salient_detector
from .worker import ImageResult, ImageTask, ImageWorker, RunContext, WorkerContext, WorkerState

logger = logging.getLogger(__name__)

BENCHMARK_STAGES = [
    WorkerState.INITIALIZING.value,
    WorkerState.PREPARING.value,
    WorkerState.PROPOSING_CANDIDATES.value,
    WorkerState.CONSOLIDATING.value,
    WorkerState.EXTRACTING_FEATURES.value,
    WorkerState.CLASSIFYING.value,
    WorkerState.POST_FILTERING.value,
    WorkerState.EMITTING.value,
]


class ClassifierCache:
    """At most one loaded classifier per configuration key for a run."""

    def __init__(
        self,
        settings: SystemParameters,
        loader: Callable[..., Classifier] = load_classifier,
    ):
        self.settings = settings
        self.loader = loader
        self._models: Dict[str, Classifier] = {}

    def register(self, key: str, classifier: Classifier) -> None:
        self._models[key] = classifier

    def get(self, key: str) -> Classifier:
        if key not in self._models:
            params = load_classifier_config(key, self.settings)
            self._models[key] = self.loader(params)
        return self._models[key]

    def load_all(self, keys: Iterable[str]) -> None:
        """Load every key up front; any failure is fatal to the run."""
        for key in dict.fromkeys(keys):
            try:
                self.get(key)
            except (ConfigError, ClassifierLoadError) as e:
                raise ClassifierLoadError(f"Unable to load classifier {key!r}: {e}")

    def __contains__(self, key: str) -> bool:
        return key in self._models

    def __len__(self) -> int:
        return len(self._models)


@dataclass
class RunSummary:
    """What a batch run produced."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    detections: Dict[str, List[Detection]] = field(default_factory=dict)
    samples: List[TrainingSample] = field(default_factory=list)
    statistics: List[ThreadStatistics] = field(default_factory=list)
    list_path: Optional[Path] = None
    samples_path: Optional[Path] = None

    @property
    def total_detections(self) -> int:
        return sum(len(d) for d in self.detections.values())

    def category_counts(self) -> Dict[Category, int]:
        counts = {cat: 0 for cat in Category}
        for stats in self.statistics:
            for cat, n in stats.detections.items():
                counts[cat] += n
        return counts


def _task_for(entry: InputEntry, ground_truth: Dict) -> ImageTask:
    return ImageTask(
        name=entry.name,
        input_path=str(entry.path),
        classifier_key=entry.classifier_key,
        camera=entry.camera,
        ground_truth=tuple(ground_truth.get(entry.path.name, ())),
    )


class PipelineDriver:
    """
    Runs a batch of images across a fixed pool of worker slots.

    Each slot owns a private color classifier and statistics; loaded
    classifiers are shared. Results are written in submission order.
    """

    def __init__(
        self,
        settings: SystemParameters,
        classifiers: Optional[ClassifierCache] = None,
        run: Optional[RunContext] = None,
    ):
        self.settings = settings.validate()
        self.classifiers = classifiers if classifiers is not None else ClassifierCache(settings)
        num_threads = 1 if settings.is_training_mode else settings.num_threads
        self.run = run or RunContext()
        self.run.num_threads = num_threads
        self.contexts = [WorkerContext.create(i, settings) for i in range(num_threads)]

    def _process(self, slots: "queue.Queue[WorkerContext]", task: ImageTask) -> Optional[ImageResult]:
        if self.run.cancelled:
            return None
        context = slots.get()
        try:
            worker = ImageWorker(self.settings, self.run, context)
            return worker.process(task, self.classifiers.get(task.classifier_key))
        finally:
            slots.put(context)

    def run_entries(self, entries: List[InputEntry]) -> RunSummary:
        """
        Process resolved inputs.

        Raises:
            ConfigError: If the input set is empty or the output list cannot be opened
            ClassifierLoadError: If any referenced classifier fails to load
        """
        s = self.settings
        if not entries:
            raise ConfigError("Input invalid or contains no valid images")

        ground_truth = {}
        if s.is_training_mode and s.use_file_for_training:
            ground_truth = parse_ground_truth(s.ground_truth_file)
        elif s.is_training_mode and self.run.labeler is None:
            raise ConfigError("Interactive training requires a labeler")

        keys = list(dict.fromkeys(entry.classifier_key for entry in entries))
        self.classifiers.load_all(keys)
        self.run.salient_blobs = use_salient_detector(
            s.blob_policy,
            len(entries),
            all(self.classifiers.get(key).detects_organism for key in keys),
        )
        logger.debug(
            "Blob detector for this run: %s", "salient" if self.run.salient_blobs else "colored"
        )

        summary = RunSummary(statistics=[ctx.statistics for ctx in self.contexts])
        writer = None
        if s.output_list and not s.is_training_mode:
            writer = DetectionListWriter(s.list_path)
            summary.list_path = writer.path
        benchmark = BenchmarkWriter(s.benchmark_file, BENCHMARK_STAGES) if s.benchmark_file else None

        slots: "queue.Queue[WorkerContext]" = queue.Queue()
        for ctx in self.contexts:
            slots.put(ctx)

        tasks = [_task_for(entry, ground_truth) for entry in entries]
        try:
            with ThreadPoolExecutor(max_workers=len(self.contexts)) as executor:
                futures = [executor.submit(self._process, slots, task) for task in tasks]
                for index, (task, future) in enumerate(zip(tasks, futures), 1):
                    self._collect(index, len(tasks), task, future, summary, writer, benchmark)
        finally:
            if writer is not None:
                writer.close()
            if benchmark is not None:
                benchmark.close()

        summary.cancelled = self.run.cancelled
        if s.is_training_mode:
            summary.samples_path = write_training_samples(
                Path(s.output_directory) / s.training_output_file, summary.samples
            )
            logger.info("Wrote %d training samples to %s", len(summary.samples), summary.samples_path)
        return summary

    def _collect(self, index, total, task, future, summary, writer, benchmark) -> None:
        log_image_start(logger, task.name, index, total)
        try:
            result = future.result()
        except ImageSkipped as e:
            log_warning(logger, f"Skipping {e}")
            summary.skipped += 1
            return
        except Exception:
            logger.exception("Error processing %s", task.name)
            summary.failed += 1
            return

        if result is None:
            return

        summary.processed += 1
        summary.samples.extend(result.samples)
        if not self.settings.is_training_mode:
            summary.detections[task.name] = result.detections
            log_detection(logger, task.name, result.detections)
        if writer is not None:
            writer.write(task.name, result.detections)
        if benchmark is not None:
            benchmark.write(task.name, result.timings)

    def run_batch(self) -> RunSummary:
        """Resolve inputs from the settings and process them."""
        return self.run_entries(resolve_inputs(self.settings))


def run_detector(settings: SystemParameters, run: Optional[RunContext] = None) -> RunSummary:
    """Main entry point for batch processing."""
    return PipelineDriver(settings, run=run).run_batch()


class CoreDetector:
    """
    Streaming entry point for one frame at a time.

    Every call reuses a single worker slot, so an instance must not be used
    from several threads at once. When the settings ask for an output list,
    it is truncated on construction and gains one line per processed frame.
    """

    def __init__(
        self,
        settings: Union[SystemParameters, str, Path],
        classifier: Optional[Classifier] = None,
        run: Optional[RunContext] = None,
    ):
        if not isinstance(settings, SystemParameters):
            settings = load_system_config(settings)
        self.settings = settings.validate()
        self.run = run or RunContext()
        self.context = WorkerContext.create(0, self.settings)
        if classifier is None:
            classifier = ClassifierCache(self.settings).get(self.settings.classifier_to_use)
        self.classifier = classifier
        self.frame_counter = 0
        if self.run.salient_blobs is None:
            self.run.salient_blobs = use_salient_detector(
                self.settings.blob_policy, None, classifier.detects_organism
            )

        # Frames carry their own pose; metadata is never read from a file here
        self.frame_settings = replace(
            self.settings, is_metadata_in_image=False, is_training_mode=False
        )

        s = self.settings
        self.writer = DetectionListWriter(s.list_path) if s.output_list else None
        self.benchmark = None
        if s.benchmark_file:
            try:
                self.benchmark = BenchmarkWriter(s.benchmark_file, BENCHMARK_STAGES)
            except ConfigError:
                self.close()
                raise

    @property
    def statistics(self) -> ThreadStatistics:
        return self.context.statistics

    def close(self) -> None:
        """Close the output list and benchmark files."""
        if self.writer is not None:
            self.writer.close()
        if self.benchmark is not None:
            self.benchmark.close()

    def __enter__(self) -> "CoreDetector":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(
        self,
        name: str,
        image: np.ndarray,
        pitch: float,
        roll: float,
        altitude: float,
        focal_length: float = 0.0,
    ) -> List[Detection]:
        has_metadata = bool(pitch or roll or altitude)
        camera = None
        if has_metadata:
            camera = CameraMetadata(
                altitude=altitude,
                pitch=pitch,
                roll=roll,
                focal_length=focal_length or self.settings.focal_length,
            )
        task = ImageTask(name=name, image=image, classifier_key=self.classifier.key, camera=camera)
        worker = ImageWorker(self.frame_settings, self.run, self.context)
        try:
            result = worker.process(task, self.classifier)
        except ImageSkipped as e:
            log_warning(logger, f"Skipping {e}")
            return []

        if self.writer is not None:
            self.writer.write(name, result.detections)
        if self.benchmark is not None:
            self.benchmark.write(name, result.timings)
        return result.detections

    def process_frame(
        self,
        image: np.ndarray,
        pitch: float = 0.0,
        roll: float = 0.0,
        altitude: float = 0.0,
    ) -> List[Detection]:
        """Detect in one frame; returns detections in frame pixel coordinates."""
        self.frame_counter += 1
        return self._run(f"streaming_frame_{self.frame_counter}", image, pitch, roll, altitude)

    def process_stereo_frame(
        self,
        left: np.ndarray,
        right: np.ndarray,
        pitch: float = 0.0,
        roll: float = 0.0,
        altitude: float = 0.0,
    ) -> List[Detection]:
        """Detect in a left/right pair joined side by side into one wide frame."""
        if left.shape[0] != right.shape[0] or left.shape[2:] != right.shape[2:]:
            raise ValueError(
                f"Stereo frames differ in height or channels: {left.shape} vs {right.shape}"
            )
        return self.process_frame(np.concatenate([left, right], axis=1), pitch, roll, altitude)

    def process_file(
        self,
        path: Union[str, Path],
        pitch: float = 0.0,
        roll: float = 0.0,
        altitude: float = 0.0,
    ) -> List[Detection]:
        """
        Detect in an image file.

        With no pose given, altitude is read from the file's EXIF when the
        settings ask for metadata from images.
        """
        path = Path(path)
        try:
            image = load_image(path)
        except OSError as e:
            log_warning(logger, f"Skipping {path.name}: {e}")
            return []

        s = self.settings
        focal_length = 0.0
        if not (pitch or roll or altitude) and s.use_metadata and s.is_metadata_in_image:
            camera = read_camera_metadata(path, s.focal_length)
            if camera is not None:
                altitude, focal_length = camera.altitude, camera.focal_length
        return self._run(path.name, image, pitch, roll, altitude, focal_length)
