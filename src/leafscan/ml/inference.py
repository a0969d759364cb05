"""Inference invoker: one classification pass, exactly one outcome.

Architecture:
    caller (event loop / UI thread) -> submit() -> ThreadPoolExecutor -> decode + classify
    worker -> Future[InvocationOutcome] -> caller awaits it, or a sink is scheduled on the caller's loop

Every error raised while decoding or classifying is converted into a
``Failure`` outcome; the future never carries an exception. There is no
cancellation and no timeout.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TypeAlias

from leafscan.ml.errors import ClassificationError, EmptyResultError, InferenceError
from leafscan.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from leafscan.config import Settings
    from leafscan.ml.image_classifier import ClassificationResult, ImageClassifier
    from leafscan.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    """A classification that produced a ranked list."""

    top_label: str
    top_confidence: float
    ranked: tuple[ClassificationResult, ...]


@dataclass(frozen=True)
class Failure:
    """A classification that ended with an error."""

    reason: str
    detail: str | None = None

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.reason}: {self.detail}"
        return self.reason


InvocationOutcome: TypeAlias = "Success | Failure"
OutcomeSink: TypeAlias = "Callable[[InvocationOutcome], object]"


class InvokerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


class InferenceInvoker:
    """Runs classifications on worker threads and hands back their outcomes."""

    def __init__(self, classifier: ImageClassifier, settings: Settings) -> None:
        self._classifier = classifier
        self._max_pixels = settings.max_image_pixels
        self._debug_top_k = settings.debug_top_k
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="leafscan-inference",
        )
        self._active_count: int = 0
        self._counter_lock = threading.Lock()

    @property
    def classifier(self) -> ImageClassifier:
        return self._classifier

    def submit(
        self,
        image: ImageInput,
        sink: OutcomeSink | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Future[InvocationOutcome]:
        """Start classifying ``image`` in the background and return immediately.

        Args:
            image: Encoded bytes, a Pillow image, or a uint8 pixel array.
            sink: Optional callback receiving the outcome exactly once.
            loop: If given, ``sink`` is scheduled on this loop's thread
                instead of running on the worker thread.

        Returns:
            A future that always resolves to an ``InvocationOutcome``.
        """
        # The returned future is marked running up front so callers cannot cancel
        # it; only the worker resolves it.
        outcome: Future[InvocationOutcome] = Future()
        outcome.set_running_or_notify_cancel()

        with self._counter_lock:
            self._active_count += 1
        try:
            self._executor.submit(self._resolve, image, outcome)
        except RuntimeError:
            with self._counter_lock:
                self._active_count -= 1
            raise

        if sink is not None:
            outcome.add_done_callback(lambda done: _deliver(sink, done.result(), loop))
        return outcome

    async def classify(self, image: ImageInput) -> InvocationOutcome:
        """Classify ``image`` without blocking the running event loop."""
        return await asyncio.shield(asyncio.wrap_future(self.submit(image)))

    @property
    def active_count(self) -> int:
        """Number of invocations that have not produced an outcome yet."""
        with self._counter_lock:
            return self._active_count

    @property
    def state(self) -> InvokerState:
        return InvokerState.RUNNING if self.active_count else InvokerState.IDLE

    def shutdown(self) -> None:
        """Wait for in-flight invocations, then stop the worker threads."""
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    def _resolve(self, image: ImageInput, outcome: Future[InvocationOutcome]) -> None:
        outcome.set_result(self._invoke(image))

    def _invoke(self, image: ImageInput) -> InvocationOutcome:
        try:
            pixels = decode_image(image, self._max_pixels)
            ranked = _validate(self._classifier.classify(pixels))
        except ClassificationError as exc:
            logger.warning("Classification with %s failed: %s", self._classifier.model_name, exc.message)
            return Failure(reason=exc.reason, detail=exc.detail)
        except Exception as exc:
            logger.exception("Unexpected error from %s", self._classifier.model_name)
            return Failure(reason=InferenceError.reason, detail=str(exc) or type(exc).__name__)
        finally:
            with self._counter_lock:
                self._active_count -= 1

        self._log_top(pixels.shape, ranked)
        top = ranked[0]
        return Success(top_label=top.label, top_confidence=top.confidence, ranked=ranked)

    def _log_top(self, shape: tuple[int, ...], ranked: Sequence[ClassificationResult]) -> None:
        if not self._debug_top_k or not logger.isEnabledFor(logging.DEBUG):
            return
        lines = [
            f"{index}. {result.label}: {int(result.confidence * 100)}%"
            for index, result in enumerate(ranked[: self._debug_top_k], start=1)
        ]
        logger.debug("Classified %dx%d image, top predictions:\n%s", shape[1], shape[0], "\n".join(lines))


def _validate(results: Sequence[ClassificationResult]) -> tuple[ClassificationResult, ...]:
    """Sort results descending and reject empty or malformed rankings."""
    if not results:
        raise EmptyResultError()

    ranked = tuple(sorted(results, key=lambda result: result.confidence, reverse=True))
    confidences = [result.confidence for result in ranked]
    if not all(math.isfinite(value) for value in confidences):
        raise InferenceError("model returned non-finite confidences")
    if confidences[-1] < 0:
        raise InferenceError("model returned negative confidences")
    if len(confidences) > 1 and confidences[0] == confidences[-1]:
        raise InferenceError("model returned identical confidences for every class")
    return ranked


def _deliver(sink: OutcomeSink, outcome: InvocationOutcome, loop: asyncio.AbstractEventLoop | None) -> None:
    if loop is None:
        sink(outcome)
    else:
        loop.call_soon_threadsafe(sink, outcome)
