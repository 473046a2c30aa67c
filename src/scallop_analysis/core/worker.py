"""Per-image worker: runs the full detection chain for one image."""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from ..config import SystemParameters
from ..errors import ImageSkipped
from ..models import (
    Candidate,
    Category,
    Detection,
    GroundTruthEntry,
    ImageProperties,
    ThreadStatistics,
    TrainingSample,
)
from ..output import rendering
from .calibration import (
    CameraMetadata,
    calculate_image_properties,
    compute_resize_factor,
    search_radius_pixels,
)
from .color import ColorClassifier
from .consolidation import prioritize_candidates
from .features import expensive_edge_search, extract_features
from .postfilter import interpolate_results, remove_inside_points
from .preprocessing import PreparedImage, load_image, prepared_image, resize_image
from .proposals import (
    detect_adaptive_regions,
    detect_colored_blobs,
    detect_salient_blobs,
    filter_candidates,
    find_edge_candidates,
    find_template_candidates,
    remove_border_candidates,
    use_salient_detector,
)

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    INITIALIZING = "initializing"
    PREPARING = "preparing"
    PROPOSING_CANDIDATES = "proposing_candidates"
    CONSOLIDATING = "consolidating"
    TRAINING_CAPTURE = "training_capture"
    EXTRACTING_FEATURES = "extracting_features"
    CLASSIFYING = "classifying"
    POST_FILTERING = "post_filtering"
    EMITTING = "emitting"
    DONE = "done"
    ERROR = "error"


class Display(Protocol):
    """On-screen display of one image's results."""

    def show(self, name: str, image: np.ndarray, detections: Sequence[Detection]) -> None:
        ...


class Labeler(Protocol):
    """Interactive labeling of candidates, highest priority first."""

    def label(
        self,
        name: str,
        image: np.ndarray,
        candidates: Sequence[Candidate],
    ) -> Optional[List[Tuple[Candidate, Category]]]:
        """Return designations, or None to end the session."""
        ...


@dataclass
class RunContext:
    """Run-wide state shared by every worker slot."""

    num_threads: int = 1
    cancel: threading.Event = field(default_factory=threading.Event)
    display_lock: threading.Lock = field(default_factory=threading.Lock)
    display: Optional[Display] = None
    labeler: Optional[Labeler] = None
    # Blob detector chosen once per run; None treats each image as its own run
    salient_blobs: Optional[bool] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


@dataclass
class WorkerContext:
    """Thread-private state; never shared between slots."""

    slot: int
    color_classifier: ColorClassifier
    statistics: ThreadStatistics = field(default_factory=ThreadStatistics)
    rng: np.random.Generator = field(default_factory=np.random.default_rng)

    @classmethod
    def create(cls, slot: int, settings: SystemParameters) -> "WorkerContext":
        seed = None if settings.random_seed is None else settings.random_seed + slot
        return cls(
            slot=slot,
            color_classifier=ColorClassifier.load_filters(settings.color_filter_directory),
            rng=np.random.default_rng(seed),
        )


@dataclass(frozen=True)
class ImageTask:
    """Immutable description of one unit of work."""

    name: str
    input_path: Optional[str] = None
    image: Optional[np.ndarray] = None
    classifier_key: str = "default"
    camera: Optional[CameraMetadata] = None
    ground_truth: Tuple[GroundTruthEntry, ...] = ()


@dataclass
class ImageResult:
    name: str
    detections: List[Detection] = field(default_factory=list)
    samples: List[TrainingSample] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    n_candidates: int = 0
    resize_factor: float = 1.0


class ImageWorker:
    """
    Runs one image through the detection chain.

    States follow Initializing -> Preparing -> ProposingCandidates ->
    Consolidating -> (TrainingCapture | ExtractingFeatures -> Classifying)
    -> PostFiltering -> Emitting -> Done. Any exception moves the worker to
    Error and propagates; ImageSkipped marks recoverable input problems.
    """

    def __init__(
        self,
        settings: SystemParameters,
        run: RunContext,
        context: WorkerContext,
    ):
        self.settings = settings
        self.run = run
        self.context = context
        self.state = WorkerState.INITIALIZING
        self._timings: Dict[str, float] = {}

    def _enter(self, state: WorkerState) -> None:
        logger.debug("slot %d: %s -> %s", self.context.slot, self.state.value, state.value)
        self.state = state

    @contextmanager
    def _stage(self, state: WorkerState) -> Iterator[None]:
        self._enter(state)
        start = time.perf_counter()
        yield
        self._timings[state.value] = time.perf_counter() - start

    def process(self, task: ImageTask, classifier) -> ImageResult:
        """
        Process one image.

        Args:
            task: The image to process
            classifier: Loaded classifier for the task's key

        Returns:
            ImageResult with detections in original-image coordinates

        Raises:
            ImageSkipped: If the image cannot be processed
        """
        self.state = WorkerState.INITIALIZING
        self._timings = {}
        try:
            result = self._run(task, classifier)
        except Exception:
            self._enter(WorkerState.ERROR)
            raise
        self._enter(WorkerState.DONE)
        result.timings = dict(self._timings)
        return result

    # -----------------------------
    # Initializing
    # -----------------------------

    def _load(self, task: ImageTask) -> np.ndarray:
        if task.image is not None:
            image = task.image
        elif task.input_path is not None:
            try:
                image = load_image(task.input_path)
            except OSError as e:
                raise ImageSkipped(task.name, f"unreadable image ({e})")
        else:
            raise ImageSkipped(task.name, "no image data")

        if image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0:
            raise ImageSkipped(task.name, "empty image")

        if self.settings.process_left_half_only:
            image = image[:, : image.shape[1] // 2]
            if image.shape[1] == 0:
                raise ImageSkipped(task.name, "empty image")
        return image

    def _properties(self, task: ImageTask, image: np.ndarray) -> ImageProperties:
        s = self.settings
        metadata_path = None
        if s.use_metadata and s.is_metadata_in_image and task.camera is None:
            metadata_path = task.input_path

        props = calculate_image_properties(
            image.shape[1],
            image.shape[0],
            use_metadata=s.use_metadata,
            camera=task.camera,
            metadata_path=metadata_path,
            focal_length=s.focal_length,
        )
        if s.use_metadata and not props.has_metadata:
            raise ImageSkipped(task.name, "metadata required but unreadable")
        return props

    def _search_range(self, task: ImageTask, props: ImageProperties) -> Tuple[float, float]:
        s = self.settings
        if props.has_metadata:
            lo, hi = s.min_search_radius_meters, s.max_search_radius_meters
        else:
            lo, hi = s.min_search_radius_pixels, s.max_search_radius_pixels
        min_r, max_r = search_radius_pixels(props, lo, hi)
        if max_r < 1.0:
            raise ImageSkipped(task.name, f"maximum search radius {max_r:.2f}px is below one pixel")
        return min_r, max_r

    # -----------------------------
    # Main chain
    # -----------------------------

    def _run(self, task: ImageTask, classifier) -> ImageResult:
        s = self.settings
        ctx = self.context

        with self._stage(WorkerState.INITIALIZING):
            image = self._load(task)
            props = self._properties(task, image)
            min_r, max_r = self._search_range(task, props)

            resize_factor = compute_resize_factor(
                min_r, s.max_pixels_for_min_radius, s.resize_factor_required
            )
            working = image
            if resize_factor != 1.0:
                working = resize_image(image, resize_factor)
                min_r *= resize_factor
                max_r *= resize_factor
                logger.debug("%s: resized by %.3f", task.name, resize_factor)

            salient = self.run.salient_blobs
            if salient is None:
                salient = use_salient_detector(s.blob_policy, 1, classifier.detects_organism)

        self._enter(WorkerState.PREPARING)
        start = time.perf_counter()
        with prepared_image(working, ctx.color_classifier, min_r, max_r) as prepared:
            self._timings[WorkerState.PREPARING.value] = time.perf_counter() - start
            result = self._detect(
                task, classifier, prepared, props, resize_factor, min_r, max_r, salient
            )

        with self._stage(WorkerState.EMITTING):
            ctx.statistics.update(result.detections, result.n_candidates, props.area_m2)
            self._emit(task, image, result)

        return result

    def _propose(self, prepared: PreparedImage, min_r: float, max_r: float, salient: bool):
        if salient:
            blobs = detect_salient_blobs(prepared.color, min_r, max_r)
        else:
            blobs = detect_colored_blobs(prepared.color, min_r, max_r)
        adaptive = detect_adaptive_regions(prepared.color, min_r)
        template = find_template_candidates(prepared.gradients, min_r, max_r)
        edge = find_edge_candidates(prepared.gradients, min_r, max_r)
        return [filter_candidates(cds, min_r, max_r) for cds in (blobs, adaptive, template, edge)]

    def _detect(
        self,
        task: ImageTask,
        classifier,
        prepared: PreparedImage,
        props: ImageProperties,
        resize_factor: float,
        min_r: float,
        max_r: float,
        salient: bool,
    ) -> ImageResult:
        s = self.settings
        result = ImageResult(name=task.name, resize_factor=resize_factor)

        with self._stage(WorkerState.PROPOSING_CANDIDATES):
            proposals = self._propose(prepared, min_r, max_r, salient)

        with self._stage(WorkerState.CONSOLIDATING):
            merged, ordered = prioritize_candidates(*proposals)
            if not s.look_at_border_points:
                merged = remove_border_candidates(merged, prepared.shape)
                ordered = remove_border_candidates(ordered, prepared.shape)
            result.n_candidates = len(merged)

        if s.output_proposal_images:
            path = Path(s.output_directory) / rendering.output_name(task.name, "proposals")
            rendering.save_overlay(path, prepared.rgb8, candidates=ordered)

        if s.is_training_mode:
            with self._stage(WorkerState.TRAINING_CAPTURE):
                result.samples = self._capture(
                    task, classifier, prepared, props, resize_factor, max_r, merged, ordered
                )
            return result

        if classifier.requires_features:
            with self._stage(WorkerState.EXTRACTING_FEATURES):
                extract_features(prepared, merged, props, resize_factor, max_r)

        with self._stage(WorkerState.CLASSIFYING):
            positives = classifier.classify(prepared, merged)

        with self._stage(WorkerState.POST_FILTERING):
            if classifier.requires_features:
                expensive_edge_search(prepared, positives, min_r, max_r)
            positives = remove_inside_points(positives)
            result.detections = interpolate_results(positives, resize_factor)

        return result

    def _capture(
        self,
        task: ImageTask,
        classifier,
        prepared: PreparedImage,
        props: ImageProperties,
        resize_factor: float,
        max_r: float,
        merged: List[Candidate],
        ordered: List[Candidate],
    ) -> List[TrainingSample]:
        s = self.settings

        if s.use_file_for_training:
            truth = [entry.to_candidate(resize_factor) for entry in task.ground_truth]
            if classifier.requires_features:
                extract_features(prepared, truth + merged, props, resize_factor, max_r)
            return classifier.extract_samples(
                prepared,
                merged,
                truth,
                source=task.name,
                keep_fraction=s.training_percent_keep,
                rng=self.context.rng,
            )

        if self.run.labeler is None:
            raise ImageSkipped(task.name, "interactive training requires a labeler")

        with self.run.display_lock:
            designations = self.run.labeler.label(task.name, prepared.rgb8, ordered)
        if designations is None:
            logger.info("Labeling session ended by user")
            self.run.cancel.set()
            return []

        if classifier.requires_features:
            extract_features(prepared, [cd for cd, _ in designations], props, resize_factor, max_r)
        return classifier.make_samples(prepared, designations, task.name)

    def _emit(self, task: ImageTask, image: np.ndarray, result: ImageResult) -> None:
        s = self.settings
        if s.output_detection_images:
            path = Path(s.output_directory) / rendering.output_name(task.name, "detections")
            rendering.save_overlay(path, image, detections=result.detections)

        if s.enable_output_display and self.run.display is not None:
            with self.run.display_lock:
                self.run.display.show(task.name, image, result.detections)
