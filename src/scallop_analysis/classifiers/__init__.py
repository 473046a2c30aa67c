"""Pluggable candidate classifiers."""

from .base import Classifier, load_classifier
from .boosted import BoostedClassifier
from .training import select_training_candidates

__all__ = [
    "Classifier",
    "BoostedClassifier",
    "load_classifier",
    "select_training_candidates",
]
