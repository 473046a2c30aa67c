"""Classifier capability set and factory."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..config import ClassifierParameters, LabelSpec
from ..errors import ClassifierLoadError, ConfigError
from ..models import Candidate, Category, TrainingSample
from .training import select_training_candidates

logger = logging.getLogger(__name__)


class Classifier(ABC):
    """
    A loaded model that turns candidates into positives.

    Inference never mutates model state, so one instance is shared by every
    worker thread of a run. Training extraction is only ever called from a
    single worker.
    """

    def __init__(self, params: ClassifierParameters):
        self.params = params
        self.labels: List[LabelSpec] = list(params.labels)

    @property
    def key(self) -> str:
        return self.params.key

    @property
    @abstractmethod
    def requires_features(self) -> bool:
        """Whether candidates need feature vectors before classify()."""

    @property
    def detects_organism(self) -> bool:
        return self.params.detects_organism

    @property
    def output_class_count(self) -> int:
        return len(self.labels)

    def label(self, index: int) -> LabelSpec:
        return self.labels[index]

    def category(self, index: int) -> Category:
        return Category.parse(self.labels[index].category)

    @abstractmethod
    def classify(self, prepared, candidates: List[Candidate]) -> List[Candidate]:
        """
        Score candidates and return the positives.

        Positives carry ``class_scores`` keyed by Category. An empty input
        returns an empty list.
        """

    @abstractmethod
    def sample(self, prepared, cd: Candidate, category: Category, source: str) -> TrainingSample:
        """Build one training sample for a labeled candidate."""

    def make_samples(
        self,
        prepared,
        labeled: Sequence[Tuple[Candidate, Category]],
        source: str,
    ) -> List[TrainingSample]:
        return [self.sample(prepared, cd, category, source) for cd, category in labeled]

    def extract_samples(
        self,
        prepared,
        candidates: List[Candidate],
        ground_truth: List[Candidate],
        source: str,
        keep_fraction: float,
        rng: Optional[np.random.Generator] = None,
    ) -> List[TrainingSample]:
        """Labeled samples from ground truth plus a fraction of negatives."""
        labeled = select_training_candidates(candidates, ground_truth, keep_fraction, rng)
        return self.make_samples(prepared, labeled, source)


def load_classifier(classifier_params: ClassifierParameters) -> Classifier:
    """
    Load the model described by a classifier configuration.

    Raises:
        ClassifierLoadError: If model files are missing or malformed
    """
    try:
        classifier_params.validate()
    except ConfigError as e:
        raise ClassifierLoadError(str(e))

    if classifier_params.classifier_type == "boosted":
        from .boosted import BoostedClassifier
        classifier = BoostedClassifier.load(classifier_params)
    else:
        from .neural import NeuralClassifier
        classifier = NeuralClassifier.load(classifier_params)

    logger.info(
        "Loaded %s classifier %r with %d classes",
        classifier_params.classifier_type,
        classifier_params.key,
        classifier.output_class_count,
    )
    return classifier
