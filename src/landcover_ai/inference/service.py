from __future__ import annotations

import contextvars
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

from torch import Tensor

from ..config import Limits, Settings
from ..errors import (
    InferenceError,
    InferenceTimeoutError,
    LoadError,
    ModelLoadError,
    StartupError,
)
from ..logging import get_logger, log_event
from ..preprocess import preprocess_bytes, preprocess_signature
from .labels import LabelMap
from .manifest import ModelManifest
from .model import ModelHandle
from .types import ClassifyOutput


class Classifier(Protocol):
    @property
    def manifest(self) -> ModelManifest: ...
    @property
    def model_id(self) -> str: ...
    @property
    def input_size(self) -> int: ...
    @property
    def n_outputs(self) -> int: ...
    def infer(self, tensor: Tensor) -> list[float]: ...
    def close(self) -> None: ...


class InferenceService:
    """One model plus its label map, shared by every request in the process.

    Decoding and resizing run on the caller's thread; only the forward pass
    holds ``_model_lock``, so at most one ``infer`` runs at a time.
    """

    def __init__(self, handle: Classifier, labels: LabelMap, settings: Settings) -> None:
        if len(labels) != handle.n_outputs:
            raise StartupError(
                f"label map has {len(labels)} names but model has {handle.n_outputs} outputs"
            )
        self._handle = handle
        self._labels = labels
        self._settings = settings
        self._limits = Limits.from_settings(settings)
        self._model_lock = threading.Lock()
        self._pool = _make_pool(settings)

    @classmethod
    def create(cls, model_path: Path, labels_path: Path, *, settings: Settings) -> InferenceService:
        try:
            labels = LabelMap.load(labels_path)
        except LoadError as exc:
            raise StartupError(f"label map load failed: {exc}") from exc
        manifest = _resolve_manifest(model_path, settings)
        try:
            handle = ModelHandle.load(model_path, manifest)
        except ModelLoadError as exc:
            raise StartupError(f"model load failed: {exc}") from exc
        try:
            return cls(handle, labels, settings)
        except StartupError:
            handle.close()
            raise

    @property
    def labels(self) -> LabelMap:
        return self._labels

    @property
    def model_id(self) -> str:
        return self._handle.model_id

    def classify(self, image_bytes: bytes) -> str:
        return self.classify_detailed(image_bytes).label

    def classify_detailed(self, image_bytes: bytes) -> ClassifyOutput:
        tensor = preprocess_bytes(
            image_bytes, self._handle.input_size, max_side_px=self._limits.max_side_px
        )
        scores = self._infer_exclusive(tensor)
        if len(scores) != len(self._labels):
            raise IndexError(
                f"model returned {len(scores)} scores for {len(self._labels)} labels"
            )
        idx = _argmax(scores)
        return ClassifyOutput(
            label=self._labels.name_for(idx),
            index=idx,
            score=scores[idx],
            model_id=self._handle.model_id,
        )

    def submit_classify(self, image_bytes: bytes) -> Future[ClassifyOutput]:
        # Carry the request id into the worker thread for log correlation
        ctx = contextvars.copy_context()
        return self._pool.submit(ctx.run, self.classify_detailed, image_bytes)

    def describe(self) -> dict[str, object]:
        man = self._handle.manifest
        return {
            "model_id": man.model_id,
            "arch": man.arch,
            "n_classes": self._handle.n_outputs,
            "input_size": man.input_size,
            "schema_version": man.schema_version,
            "created_at": man.created_at.isoformat() if man.created_at is not None else None,
            "preprocess": preprocess_signature(),
        }

    def close(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)
        with self._model_lock:
            self._handle.close()

    def _infer_exclusive(self, tensor: Tensor) -> list[float]:
        timeout = float(self._settings.model.predict_timeout_seconds)
        if timeout > 0:
            acquired = self._model_lock.acquire(timeout=timeout)
        else:
            acquired = self._model_lock.acquire()
        if not acquired:
            raise InferenceTimeoutError(f"model busy for more than {timeout:g}s")
        try:
            return self._handle.infer(tensor)
        except InferenceError:
            raise
        except (RuntimeError, ValueError, TypeError) as exc:
            raise InferenceError("model inference failed") from exc
        finally:
            self._model_lock.release()


def _argmax(scores: list[float]) -> int:
    if not scores:
        raise InferenceError("model returned an empty score vector")
    top_idx = 0
    best = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best:
            best = scores[i]
            top_idx = i
    return top_idx


def _resolve_manifest(model_path: Path, settings: Settings) -> ModelManifest:
    cfg = settings.model
    explicit = cfg.manifest_path
    path = explicit if explicit is not None else model_path.with_name("manifest.json")
    if not path.exists():
        if explicit is not None:
            raise StartupError(f"manifest not found: {path}")
        return ModelManifest.implicit(model_path, arch=cfg.arch, input_size=cfg.input_size)
    try:
        manifest = ModelManifest.from_path(path)
    except (OSError, ValueError) as exc:
        raise StartupError(f"invalid manifest: {path}") from exc
    if manifest.preprocess_hash is not None and manifest.preprocess_hash != preprocess_signature():
        raise StartupError("manifest preprocess signature does not match this server")
    return manifest


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="classify")


_SERVICE: InferenceService | None = None
_SERVICE_LOCK = threading.Lock()


def init_service(settings: Settings) -> InferenceService:
    """Create the process-wide service. Called once at startup."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is not None:
            raise StartupError("inference service already initialized")
        svc = InferenceService.create(
            settings.model.model_path, settings.model.labels_path, settings=settings
        )
        _SERVICE = svc
    log_event(
        "service_started",
        fields={"model_id": svc.model_id, "n_classes": len(svc.labels)},
    )
    return svc


def get_service() -> InferenceService:
    svc = _SERVICE
    if svc is None:
        raise RuntimeError("inference service not initialized")
    return svc


def shutdown_service() -> None:
    global _SERVICE
    with _SERVICE_LOCK:
        svc = _SERVICE
        _SERVICE = None
    if svc is not None:
        svc.close()
        get_logger().info("service_stopped model_id=%s", svc.model_id)
