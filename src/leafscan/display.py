"""Presentation helpers and the display state of a scan screen."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from leafscan.ml.inference import Success

if TYPE_CHECKING:
    from leafscan.ml.inference import InferenceInvoker, InvocationOutcome
    from leafscan.ml.preprocessing import ImageInput

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


class ConfidenceLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def format_disease_name(label: str) -> str:
    """Turn a class label such as ``Tomato___Late_blight`` into display text."""
    return label.replace("_", " ").replace("(", "\n(")


def confidence_level(confidence: float) -> ConfidenceLevel:
    if confidence > HIGH_CONFIDENCE:
        return ConfidenceLevel.HIGH
    if confidence > MEDIUM_CONFIDENCE:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def confidence_percent(confidence: float) -> int:
    return int(confidence * 100)


@dataclass(frozen=True)
class ScanState:
    """What the scan screen shows: a busy indicator or the last result."""

    analyzing: bool = False
    result: str = ""
    confidence: float = 0.0
    failed: bool = False

    @classmethod
    def from_outcome(cls, outcome: InvocationOutcome) -> ScanState:
        if isinstance(outcome, Success):
            return cls(result=outcome.top_label, confidence=outcome.top_confidence)
        return cls(result=f"Error: {outcome.message}", failed=True)

    @property
    def display_name(self) -> str:
        return self.result if self.failed else format_disease_name(self.result)

    @property
    def level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)


class ScanSession:
    """Owns the display state of one scan screen.

    Starting a scan clears the previous result and shows the busy state.
    When scans overlap, only the most recently started one updates the
    display; earlier outcomes are discarded on arrival.
    """

    def __init__(self, invoker: InferenceInvoker) -> None:
        self._invoker = invoker
        self._state = ScanState()
        self._generation = 0

    @property
    def state(self) -> ScanState:
        return self._state

    async def scan(self, image: ImageInput) -> InvocationOutcome:
        """Classify ``image`` and update the display state with its outcome."""
        self._generation += 1
        generation = self._generation
        self._state = ScanState(analyzing=True)

        outcome = await self._invoker.classify(image)
        if generation == self._generation:
            self._state = ScanState.from_outcome(outcome)
        return outcome
