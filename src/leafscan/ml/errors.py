"""Classification error taxonomy.

Every error is terminal for the invocation that raised it. The inference
invoker converts them into ``Failure`` outcomes carrying ``reason``.
"""

from __future__ import annotations

from typing import ClassVar


class ClassificationError(Exception):
    """Base class for errors raised while classifying a single image."""

    reason: ClassVar[str] = "classification failure"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        """Human-readable message: the reason, followed by detail if any."""
        if self.detail:
            return f"{self.reason}: {self.detail}"
        return self.reason


class DecodeError(ClassificationError):
    reason = "image decode failure"


class ModelLoadError(ClassificationError):
    reason = "model load failure"


class InferenceError(ClassificationError):
    reason = "inference failure"


class EmptyResultError(ClassificationError):
    reason = "no results"
