"""Tests for display helpers and the scan session state."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest

from leafscan.config import Settings
from leafscan.display import (
    ConfidenceLevel,
    ScanSession,
    ScanState,
    confidence_level,
    confidence_percent,
    format_disease_name,
)
from leafscan.ml.image_classifier import ClassificationResult
from leafscan.ml.inference import Failure, InferenceInvoker, Success

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray


class GatedClassifier:
    """Red images wait for ``release_red``; anything else classifies at once."""

    model_name = "gated"

    def __init__(self) -> None:
        self.release_red = threading.Event()

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        if image[0, 0, 0] > 128:
            self.release_red.wait(timeout=5)
            return [ClassificationResult("Apple___Black_rot", 0.9), ClassificationResult("Apple___healthy", 0.1)]
        return [ClassificationResult("Apple___healthy", 0.8), ClassificationResult("Apple___Black_rot", 0.2)]


def _solid(color: tuple[int, int, int]) -> NDArray[np.uint8]:
    return np.broadcast_to(np.asarray(color, dtype=np.uint8), (12, 12, 3)).copy()


@pytest.fixture()
def classifier() -> GatedClassifier:
    return GatedClassifier()


@pytest.fixture()
def invoker(classifier: GatedClassifier) -> Iterator[InferenceInvoker]:
    inv = InferenceInvoker(classifier, Settings(max_concurrent=2))  # type: ignore[arg-type]
    yield inv
    classifier.release_red.set()
    inv.shutdown()


class TestFormatting:
    @pytest.mark.parametrize(
        ("label", "expected"),
        [
            ("Tomato___Late_blight", "Tomato   Late blight"),
            ("Apple___healthy", "Apple   healthy"),
            ("Grape___Esca_(Black_Measles)", "Grape   Esca \n(Black Measles)"),
        ],
    )
    def test_format_disease_name(self, label: str, expected: str) -> None:
        assert format_disease_name(label) == expected

    @pytest.mark.parametrize(
        ("confidence", "level"),
        [
            (0.92, ConfidenceLevel.HIGH),
            (0.8, ConfidenceLevel.MEDIUM),
            (0.51, ConfidenceLevel.MEDIUM),
            (0.5, ConfidenceLevel.LOW),
            (0.0, ConfidenceLevel.LOW),
        ],
    )
    def test_confidence_level(self, confidence: float, level: ConfidenceLevel) -> None:
        assert confidence_level(confidence) is level

    def test_confidence_percent_truncates(self) -> None:
        assert confidence_percent(0.929) == 92
        assert confidence_percent(1.0) == 100


class TestScanState:
    def test_from_success(self) -> None:
        outcome = Success(
            top_label="Tomato___Late_blight",
            top_confidence=0.92,
            ranked=(ClassificationResult("Tomato___Late_blight", 0.92),),
        )

        state = ScanState.from_outcome(outcome)

        assert state == ScanState(result="Tomato___Late_blight", confidence=0.92)
        assert state.display_name == "Tomato   Late blight"
        assert state.level is ConfidenceLevel.HIGH

    def test_from_failure(self) -> None:
        state = ScanState.from_outcome(Failure(reason="model load failure", detail="missing file"))

        assert state.failed
        assert not state.analyzing
        assert state.confidence == 0.0
        assert state.display_name == "Error: model load failure: missing file"


class TestScanSession:
    async def test_scan_updates_state(self, invoker: InferenceInvoker) -> None:
        session = ScanSession(invoker)

        outcome = await session.scan(_solid((10, 200, 10)))

        assert isinstance(outcome, Success)
        assert session.state == ScanState(result="Apple___healthy", confidence=0.8)

    async def test_busy_while_analyzing(self, invoker: InferenceInvoker, classifier: GatedClassifier) -> None:
        session = ScanSession(invoker)

        task = asyncio.create_task(session.scan(_solid((220, 10, 10))))
        await asyncio.sleep(0)
        assert session.state.analyzing
        assert session.state.result == ""

        classifier.release_red.set()
        await task
        assert not session.state.analyzing
        assert session.state.result == "Apple___Black_rot"

    async def test_failure_leaves_busy_state(self, invoker: InferenceInvoker) -> None:
        session = ScanSession(invoker)

        outcome = await session.scan(b"not an image")

        assert isinstance(outcome, Failure)
        assert not session.state.analyzing
        assert session.state.failed
        assert session.state.result == "Error: image decode failure: unrecognized image format"

    async def test_latest_scan_wins(self, invoker: InferenceInvoker, classifier: GatedClassifier) -> None:
        session = ScanSession(invoker)

        slow = asyncio.create_task(session.scan(_solid((220, 10, 10))))
        await asyncio.sleep(0)
        fast_outcome = await session.scan(_solid((10, 220, 10)))
        assert isinstance(fast_outcome, Success)
        assert session.state.result == "Apple___healthy"

        classifier.release_red.set()
        slow_outcome = await slow

        assert isinstance(slow_outcome, Success)
        assert slow_outcome.top_label == "Apple___Black_rot"
        assert session.state.result == "Apple___healthy"
        assert not session.state.analyzing
