"""Boosted ensemble classifier over hand-engineered feature vectors."""

import logging
from typing import List, Optional, Sequence

import joblib
import numpy as np

from ..config import ClassifierParameters
from ..errors import ClassifierLoadError
from ..models import Candidate, Category, TrainingSample
from .base import Classifier

logger = logging.getLogger(__name__)


def _load_model(path):
    try:
        model = joblib.load(path)
    except FileNotFoundError:
        raise ClassifierLoadError(f"Model file not found: {path}")
    except Exception as e:  # joblib raises whatever unpickling raises
        raise ClassifierLoadError(f"Could not load model {path}: {e}")
    if not hasattr(model, "decision_function"):
        raise ClassifierLoadError(f"Model {path} has no decision_function")
    return model


class BoostedClassifier(Classifier):
    """
    One binary boosted ensemble per output label.

    A candidate is positive when any label's decision value exceeds the
    configured threshold. Stateless at inference time.
    """

    def __init__(self, params: ClassifierParameters, models: Sequence):
        super().__init__(params)
        if len(models) != len(self.labels):
            raise ClassifierLoadError(
                f"Classifier {params.key}: {len(models)} models for {len(self.labels)} labels"
            )
        self.models = list(models)
        self.threshold = params.threshold

    @classmethod
    def load(cls, params: ClassifierParameters) -> "BoostedClassifier":
        models = [_load_model(params.resolve(f)) for f in params.model_files]
        return cls(params, models)

    @property
    def requires_features(self) -> bool:
        return True

    def decision_values(self, features: np.ndarray) -> np.ndarray:
        """Decision values, shape (n_candidates, n_labels)."""
        columns = [np.asarray(m.decision_function(features), dtype=np.float64).reshape(-1)
                   for m in self.models]
        return np.stack(columns, axis=1)

    def classify(self, prepared, candidates: List[Candidate]) -> List[Candidate]:
        scorable = [cd for cd in candidates if cd.features is not None]
        if not scorable:
            return []

        values = self.decision_values(np.stack([cd.features for cd in scorable]))

        positives = []
        for cd, row in zip(scorable, values):
            if row.max() <= self.threshold:
                continue
            scores = {}
            for i, value in enumerate(row):
                category = self.category(i)
                scores[category] = max(float(value), scores.get(category, -np.inf))
            cd.class_scores = scores
            cd.label = max(scores.items(), key=lambda item: item[1])[0]
            positives.append(cd)
        return positives

    def sample(self, prepared, cd: Candidate, category: Category, source: str) -> TrainingSample:
        features: Optional[np.ndarray] = None
        if cd.features is not None:
            features = cd.features.copy()
        return TrainingSample(source=source, category=category, features=features)
