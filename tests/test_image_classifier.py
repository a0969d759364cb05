"""Tests for the ONNX-backed image classifier."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import numpy as np
import pytest

from leafscan.ml.errors import InferenceError, ModelLoadError
from leafscan.ml.image_classifier import OnnxImageClassifier
from leafscan.ml.model_manager import MODEL_REGISTRY, LoadedModel

LABELS = ("Tomato___Early_blight", "Tomato___Late_blight", "Tomato___healthy")


def _manager(scores: object, *, outputs_probabilities: bool = False) -> tuple[MagicMock, MagicMock]:
    session = MagicMock()
    session.run.return_value = [np.asarray(scores, dtype=np.float32)]
    spec = replace(MODEL_REGISTRY["leafscan_v2"], input_size=(16, 16), outputs_probabilities=outputs_probabilities)
    manager = MagicMock()
    manager.get_model.return_value = LoadedModel(spec=spec, session=session, labels=LABELS, input_name="pixel_values")
    return manager, session


def _leaf() -> np.ndarray:
    return np.full((40, 60, 3), 90, dtype=np.uint8)


class TestOnnxImageClassifier:
    def test_softmax_over_logits(self) -> None:
        manager, _session = _manager([[0.5, 3.0, 1.0]])
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        results = classifier.classify(_leaf())

        assert [r.label for r in results] == ["Tomato___Late_blight", "Tomato___healthy", "Tomato___Early_blight"]
        assert sum(r.confidence for r in results) == pytest.approx(1.0)
        expected = np.exp(3.0) / (np.exp(0.5) + np.exp(3.0) + np.exp(1.0))
        assert results[0].confidence == pytest.approx(expected, rel=1e-5)
        manager.get_model.assert_called_once_with("leafscan_v2")

    def test_probabilities_pass_through(self) -> None:
        manager, _session = _manager([[0.05, 0.03, 0.92]], outputs_probabilities=True)
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        results = classifier.classify(_leaf())

        assert results[0].label == "Tomato___healthy"
        assert results[0].confidence == pytest.approx(0.92)
        assert len(results) == len(LABELS)

    def test_runs_center_cropped_tensor(self) -> None:
        manager, session = _manager([[0.1, 0.2, 0.7]], outputs_probabilities=True)
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        classifier.classify(_leaf())

        output_names, feeds = session.run.call_args.args
        assert output_names is None
        assert list(feeds) == ["pixel_values"]
        assert feeds["pixel_values"].shape == (1, 3, 16, 16)
        assert feeds["pixel_values"].dtype == np.float32

    def test_session_error_becomes_inference_error(self) -> None:
        manager, session = _manager([[0.1, 0.2, 0.7]])
        session.run.side_effect = RuntimeError("Got invalid dimensions for input")
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        with pytest.raises(InferenceError, match="invalid dimensions"):
            classifier.classify(_leaf())

    def test_score_count_mismatch(self) -> None:
        manager, _session = _manager([[0.1, 0.9]])
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        with pytest.raises(InferenceError, match="2 scores for 3 labels"):
            classifier.classify(_leaf())

    def test_load_errors_propagate(self) -> None:
        manager = MagicMock()
        manager.get_model.side_effect = ModelLoadError("model file not found: models/leafscan_v2.onnx")
        classifier = OnnxImageClassifier(manager, "leafscan_v2")

        with pytest.raises(ModelLoadError):
            classifier.classify(_leaf())

    def test_model_name(self) -> None:
        assert OnnxImageClassifier(MagicMock(), "leafscan_v1").model_name == "leafscan_v1"
