"""Model manager: load, cache, and evict the bundled ONNX classifiers.

Models ship with the application as an ONNX file plus a labels file in
``settings.models_dir``. Sessions are created lazily on first use, at most
once per model even under concurrent first use, and shared read-only by all
inference threads afterwards.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from leafscan.ml.errors import ModelLoadError
from leafscan.ml.preprocessing import IMAGENET_MEAN, IMAGENET_STD

if TYPE_CHECKING:
    from leafscan.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_model(self, model_name: str) -> LoadedModel:
        """Return a cached or newly loaded model."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single bundled classifier."""

    name: str
    filename: str
    labels_filename: str
    description: str
    input_size: tuple[int, int] = (224, 224)
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    outputs_probabilities: bool = False


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "leafscan_v1": ModelSpec(
        name="leafscan_v1",
        filename="leafscan_v1.onnx",
        labels_filename="plantvillage_labels.txt",
        description="PlantVillage 38-class leaf disease classifier (first release)",
    ),
    "leafscan_v2": ModelSpec(
        name="leafscan_v2",
        filename="leafscan_v2.onnx",
        labels_filename="plantvillage_labels.txt",
        description="PlantVillage 38-class leaf disease classifier, softmax head",
        outputs_probabilities=True,
    ),
}


@dataclass
class LoadedModel:
    """A ready-to-run session together with its labels."""

    spec: ModelSpec
    session: InferenceSession
    labels: tuple[str, ...]
    input_name: str
    last_used: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads, caches, and evicts ONNX inference sessions for bundled models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._load_locks: dict[str, threading.Lock] = {}
        self._models: dict[str, LoadedModel] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def model_path(self, model_name: str) -> Path:
        """Return where the ONNX file for ``model_name`` is expected."""
        return self._models_dir / self._get_spec(model_name).filename

    def is_available(self, model_name: str) -> bool:
        """Whether both the model and its labels file are present on disk."""
        spec = self._get_spec(model_name)
        return (self._models_dir / spec.filename).is_file() and (self._models_dir / spec.labels_filename).is_file()

    def get_model(self, model_name: str) -> LoadedModel:
        """Return a cached model, loading it if needed.

        Raises:
            ModelLoadError: If the model is unknown, its files are missing or
                unreadable, or its labels do not match the output size.
        """
        spec = self._get_spec(model_name)

        with self._lock:
            cached = self._models.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached
            load_lock = self._load_locks.setdefault(model_name, threading.Lock())

        with load_lock:
            # Another thread may have finished loading while we waited.
            with self._lock:
                cached = self._models.get(model_name)
                if cached is not None:
                    cached.last_used = time.monotonic()
                    return cached

            loaded = self._load(spec)

            with self._lock:
                self._models[model_name] = loaded
            logger.info("Loaded session for %s (%d labels)", model_name, len(loaded.labels))
            return loaded

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._models.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._models.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._models[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._models.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelLoadError(f"unknown model '{model_name}'") from None

    def _load(self, spec: ModelSpec) -> LoadedModel:
        model_path = self._models_dir / spec.filename
        if not model_path.is_file():
            raise ModelLoadError(f"model file not found: {model_path}")

        labels = self._read_labels(self._models_dir / spec.labels_filename)

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # onnxruntime raises its own pybind exception types
            raise ModelLoadError(f"cannot open {model_path.name}: {exc}") from exc

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if len(inputs) != 1 or not outputs:
            raise ModelLoadError(f"{spec.name} must have one image input and at least one output")

        class_count = outputs[0].shape[-1] if outputs[0].shape else None
        if isinstance(class_count, int) and class_count != len(labels):
            raise ModelLoadError(f"{spec.name} outputs {class_count} classes but has {len(labels)} labels")

        return LoadedModel(spec=spec, session=session, labels=labels, input_name=inputs[0].name)

    @staticmethod
    def _read_labels(path: Path) -> tuple[str, ...]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ModelLoadError(f"cannot read labels file {path}: {exc}") from exc

        labels = tuple(line.strip() for line in text.splitlines() if line.strip())
        if not labels:
            raise ModelLoadError(f"labels file {path} is empty")
        return labels

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        if self._settings.device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
