"""Neural-network classifier over image chips."""

import logging
import math
import threading
from typing import Dict, List, Optional

import joblib
import numpy as np
import torch
import torch.nn as nn
from skimage import transform

from ..config import ClassifierParameters, LabelSpec
from ..errors import ClassifierLoadError
from ..models import Candidate, Category, TrainingSample
from .base import Classifier

logger = logging.getLogger(__name__)

# Chip half-width as a multiple of the candidate radius
CHIP_CONTEXT = 1.25
BATCH_SIZE = 64


def get_candidate_chip(image: np.ndarray, cd: Candidate, chip_size: int) -> np.ndarray:
    """
    Crop a square patch centered on a candidate, resized to chip_size.

    Regions past the image border are filled by edge replication.

    Returns:
        Float32 array (chip_size, chip_size, channels)
    """
    half = max(1, int(math.ceil(CHIP_CONTEXT * cd.radius)))
    r, c = int(round(cd.r)), int(round(cd.c))
    h, w = image.shape[:2]

    r0, r1 = r - half, r + half + 1
    c0, c1 = c - half, c + half + 1
    pad = [
        (max(0, -r0), max(0, r1 - h)),
        (max(0, -c0), max(0, c1 - w)),
    ] + [(0, 0)] * (image.ndim - 2)

    patch = image[max(0, r0):min(h, r1), max(0, c0):min(w, c1)]
    if any(before or after for before, after in pad):
        patch = np.pad(patch, pad, mode="edge")

    chip = transform.resize(
        patch,
        (chip_size, chip_size) + image.shape[2:],
        anti_aliasing=True,
    )
    return chip.astype(np.float32)


def _load_network(path, device: str) -> nn.Module:
    try:
        model = torch.jit.load(str(path), map_location=device)
    except (OSError, RuntimeError, ValueError) as e:
        raise ClassifierLoadError(f"Could not load network {path}: {e}")
    model.eval()
    return model


class NeuralClassifier(Classifier):
    """
    Chip-based classifier with an optional suppression network.

    The primary network accepts a candidate when its best organism
    probability exceeds ``threshold``. The suppression network then rejects
    accepted candidates whose probability for any look-alike (OTHER) label
    exceeds ``suppression_threshold``. An optional boosted preclassifier
    rejects obvious negatives from their feature vectors first.

    Both networks live on one device; calls into them are serialized.
    """

    def __init__(
        self,
        params: ClassifierParameters,
        network: nn.Module,
        suppression: Optional[nn.Module] = None,
        preclassifier=None,
    ):
        super().__init__(params)
        self.device = torch.device(params.device)
        self.network = network.to(self.device).eval()
        self.suppression = suppression.to(self.device).eval() if suppression is not None else None
        self.suppression_labels: List[LabelSpec] = list(params.suppression_labels)
        self.preclassifier = preclassifier
        self.chip_size = params.chip_size
        self.threshold = params.threshold
        self.suppression_threshold = params.suppression_threshold
        self.preclassifier_threshold = params.preclassifier_threshold
        self._device_lock = threading.Lock()

    @classmethod
    def load(cls, params: ClassifierParameters) -> "NeuralClassifier":
        network = _load_network(params.resolve(params.model_files[0]), params.device)

        suppression = None
        if params.suppression_model_file:
            if not params.suppression_labels:
                raise ClassifierLoadError(
                    f"Classifier {params.key}: suppression network without labels"
                )
            suppression = _load_network(params.resolve(params.suppression_model_file), params.device)

        preclassifier = None
        if params.preclassifier_file:
            path = params.resolve(params.preclassifier_file)
            try:
                preclassifier = joblib.load(path)
            except FileNotFoundError:
                raise ClassifierLoadError(f"Model file not found: {path}")
            except Exception as e:  # joblib raises whatever unpickling raises
                raise ClassifierLoadError(f"Could not load preclassifier {path}: {e}")

        return cls(params, network, suppression, preclassifier)

    @property
    def requires_features(self) -> bool:
        return self.preclassifier is not None

    def _probabilities(self, network: nn.Module, chips: np.ndarray) -> np.ndarray:
        """Softmax outputs for a stack of HWC chips, shape (n, classes)."""
        outputs = []
        with self._device_lock, torch.no_grad():
            for start in range(0, len(chips), BATCH_SIZE):
                batch = torch.from_numpy(
                    np.ascontiguousarray(chips[start:start + BATCH_SIZE].transpose(0, 3, 1, 2))
                ).to(self.device)
                logits = network(batch)
                outputs.append(torch.softmax(logits, dim=1).cpu().numpy())
        return np.concatenate(outputs, axis=0)

    def _prefilter(self, candidates: List[Candidate]) -> List[Candidate]:
        if self.preclassifier is None:
            return candidates
        scorable = [cd for cd in candidates if cd.features is not None]
        if not scorable:
            return []
        values = np.asarray(
            self.preclassifier.decision_function(np.stack([cd.features for cd in scorable]))
        ).reshape(-1)
        return [cd for cd, v in zip(scorable, values) if v >= self.preclassifier_threshold]

    def _chips(self, prepared, candidates: List[Candidate]) -> np.ndarray:
        return np.stack([get_candidate_chip(prepared.rgb32, cd, self.chip_size) for cd in candidates])

    def classify(self, prepared, candidates: List[Candidate]) -> List[Candidate]:
        candidates = self._prefilter(candidates)
        if not candidates:
            return []

        chips = self._chips(prepared, candidates)
        probs = self._probabilities(self.network, chips)

        accepted = []
        for i, (cd, row) in enumerate(zip(candidates, probs)):
            scores: Dict[Category, float] = {}
            for j, p in enumerate(row[:len(self.labels)]):
                category = self.category(j)
                scores[category] = max(float(p), scores.get(category, 0.0))
            organism = [p for cat, p in scores.items() if cat != Category.OTHER]
            if organism and max(organism) > self.threshold:
                cd.class_scores = {cat: p for cat, p in scores.items() if cat != Category.OTHER}
                accepted.append((i, cd))

        if self.suppression is None or not accepted:
            positives = [cd for _, cd in accepted]
        else:
            second = self._probabilities(self.suppression, chips[[i for i, _ in accepted]])
            positives = []
            for (_, cd), row in zip(accepted, second):
                if self._suppressed(row):
                    continue
                positives.append(cd)

        for cd in positives:
            cd.label = max(cd.class_scores.items(), key=lambda item: item[1])[0]
        return positives

    def _suppressed(self, row: np.ndarray) -> bool:
        for label, p in zip(self.suppression_labels, row):
            if Category.parse(label.category) == Category.OTHER and p > self.suppression_threshold:
                return True
        return False

    def sample(self, prepared, cd: Candidate, category: Category, source: str) -> TrainingSample:
        return TrainingSample(
            source=source,
            category=category,
            features=cd.features.copy() if cd.features is not None else None,
            chip=get_candidate_chip(prepared.rgb32, cd, self.chip_size),
        )
