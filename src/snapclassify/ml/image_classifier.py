"""Classification result types.

The output vector of the model is paired positionally with the label list
shipped in the model descriptor. Results keep that order; nothing here sorts
by confidence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from snapclassify.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from numpy.typing import NDArray

# Float rounding slack for outputs that are already probabilities.
PROBABILITY_TOLERANCE = 1e-4


def format_confidence(probability: float) -> str:
    """Render a probability as a percentage string, e.g. 0.1234 -> '12.34%'."""
    return f"{probability * 100:.2f}%"


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - logits.max()
    exp = np.exp(shifted)
    return (exp / exp.sum()).astype(np.float32)


@dataclass(frozen=True)
class Prediction:
    """A single class with its probability and formatted confidence."""

    label: str
    probability: float
    confidence: str


@dataclass(frozen=True)
class PredictionResult:
    """Per-class predictions in the model's positional label order."""

    predictions: tuple[Prediction, ...]

    @classmethod
    def from_scores(cls, scores: NDArray[np.float32], labels: Sequence[str]) -> PredictionResult:
        """Pair an output vector with the ordered label list.

        Raises:
            InferenceError: If the vector length differs from the label count
                or contains values that are not probabilities.
        """
        vector = np.asarray(scores, dtype=np.float32).reshape(-1)
        if vector.shape[0] != len(labels):
            raise InferenceError(f"Model produced {vector.shape[0]} scores for {len(labels)} labels")
        if not np.all(np.isfinite(vector)):
            raise InferenceError("Model produced non-finite scores")
        if vector.size and (vector.min() < -PROBABILITY_TOLERANCE or vector.max() > 1 + PROBABILITY_TOLERANCE):
            raise InferenceError(
                f"Model produced scores outside [0, 1] (min={vector.min():.4g}, max={vector.max():.4g}); "
                "set output_activation to softmax for logit outputs"
            )
        vector = np.clip(vector, 0.0, 1.0)

        return cls(
            predictions=tuple(
                Prediction(label=label, probability=float(p), confidence=format_confidence(float(p)))
                for label, p in zip(labels, vector, strict=True)
            )
        )

    def top(self) -> Prediction:
        """Return the highest-probability prediction (first one wins ties)."""
        return max(self.predictions, key=lambda p: p.probability)

    @property
    def labels(self) -> list[str]:
        return [p.label for p in self.predictions]

    def __iter__(self) -> Iterator[Prediction]:
        return iter(self.predictions)

    def __len__(self) -> int:
        return len(self.predictions)
