"""Image classification models.

``ImageClassifier`` is the single capability the inference invoker depends
on, so the invoker can be exercised with a fake classifier. ``OnnxImageClassifier``
is the production implementation backed by a bundled ONNX model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from leafscan.ml.errors import InferenceError
from leafscan.ml.preprocessing import ClassificationRequest, apply_request

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from leafscan.ml.model_manager import LoadedModel, ModelManager


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


class OnnxImageClassifier:
    """Runs a registered ONNX classifier on a decoded image."""

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._manager = manager
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        model = self._manager.get_model(self._model_name)
        request = ClassificationRequest.for_model(model.spec)
        tensor = apply_request(image, request)

        try:
            outputs = model.session.run(None, {model.input_name: tensor})
        except Exception as exc:  # onnxruntime raises its own pybind exception types
            raise InferenceError(str(exc)) from exc

        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if scores.size != len(model.labels):
            raise InferenceError(f"model returned {scores.size} scores for {len(model.labels)} labels")

        probabilities = scores if model.spec.outputs_probabilities else _softmax(scores)
        return _rank(model, probabilities)


def _softmax(scores: NDArray[np.float64]) -> NDArray[np.float64]:
    shifted = np.exp(scores - np.max(scores))
    return shifted / shifted.sum()


def _rank(model: LoadedModel, probabilities: NDArray[np.float64]) -> list[ClassificationResult]:
    order = np.argsort(-probabilities, kind="stable")
    return [ClassificationResult(label=model.labels[i], confidence=float(probabilities[i])) for i in order]
