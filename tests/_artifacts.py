from __future__ import annotations

import json
import threading
import time
from io import BytesIO
from pathlib import Path
from typing import Final

import torch
from PIL import Image
from torch import Tensor

from landcover_ai.config import AppConfig, ModelConfig, SecurityConfig, Settings
from landcover_ai.inference.manifest import ModelManifest
from landcover_ai.inference.model import build_fresh_state_dict
from landcover_ai.preprocess import preprocess_signature

EUROSAT_LABELS: Final[list[str]] = [
    "AnnualCrop",
    "Forest",
    "HerbaceousVegetation",
    "Highway",
    "Industrial",
    "Pasture",
    "PermanentCrop",
    "Residential",
    "River",
    "SeaLake",
]
RGB_LABELS: Final[list[str]] = ["Red", "Green", "Blue"]


def image_bytes(
    color: tuple[int, int, int] = (120, 130, 140),
    size: tuple[int, int] = (64, 64),
    fmt: str = "PNG",
) -> bytes:
    img = Image.new("RGB", size, color)
    # A diagonal stripe so the tile is not perfectly flat
    for i in range(min(size)):
        img.putpixel((i, i), (255 - color[0], 255 - color[1], 255 - color[2]))
    b = BytesIO()
    img.save(b, format=fmt)
    return b.getvalue()


def write_labels(path: Path, names: list[str] | None = None) -> Path:
    path.write_text(json.dumps(names if names is not None else EUROSAT_LABELS), encoding="utf-8")
    return path


def write_resnet_artifact(
    model_dir: Path,
    *,
    n_classes: int = 10,
    input_size: int = 32,
    fixed_class: int | None = None,
    manifest: bool = True,
    preprocess_hash: str | None = None,
) -> Path:
    """Save a resnet18 state dict; ``fixed_class`` makes the head always pick that index."""
    model_dir.mkdir(parents=True, exist_ok=True)
    torch.manual_seed(0)
    sd = build_fresh_state_dict("resnet18", n_classes)
    if fixed_class is not None:
        sd["fc.weight"] = torch.zeros_like(sd["fc.weight"])
        bias = torch.zeros_like(sd["fc.bias"])
        bias[fixed_class] = 10.0
        sd["fc.bias"] = bias
    model_path = model_dir / "model.pt"
    torch.save(sd, model_path.as_posix())
    if manifest:
        man = {
            "schema_version": "v1",
            "model_id": model_dir.name,
            "arch": "resnet18",
            "n_classes": n_classes,
            "input_size": input_size,
            "preprocess_hash": preprocess_hash or preprocess_signature(),
            "created_at": "2026-01-15T10:00:00+00:00",
        }
        (model_dir / "manifest.json").write_text(json.dumps(man), encoding="utf-8")
    return model_path


def make_settings(
    model_path: Path | None = None,
    labels_path: Path | None = None,
    *,
    threads: int = 4,
    timeout_s: float = 5.0,
    api_key: str = "",
    max_image_mb: int = 4,
) -> Settings:
    m = ModelConfig(predict_timeout_seconds=timeout_s, max_image_mb=max_image_mb)
    if model_path is not None:
        m = ModelConfig(
            model_path=model_path,
            labels_path=labels_path or m.labels_path,
            predict_timeout_seconds=timeout_s,
            max_image_mb=max_image_mb,
        )
    return Settings(
        app=AppConfig(threads=threads), model=m, security=SecurityConfig(api_key=api_key)
    )


class StubHandle:
    """Classifier double: scores are the per-channel means of the input tensor.

    Records how many ``infer`` calls overlap so tests can check serialization.
    """

    def __init__(
        self,
        n_outputs: int = 3,
        input_size: int = 16,
        delay_s: float = 0.0,
        extra_scores: int = 0,
    ) -> None:
        self._n = n_outputs
        self._extra = extra_scores
        self._delay_s = delay_s
        self._manifest = ModelManifest(
            schema_version="v1",
            model_id="stub",
            arch="stub",
            n_classes=n_outputs,
            input_size=input_size,
            preprocess_hash=None,
            created_at=None,
        )
        self._counter_lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self.closed = False
        self.entered = threading.Event()
        self.gate: threading.Event | None = None

    @property
    def manifest(self) -> ModelManifest:
        return self._manifest

    @property
    def model_id(self) -> str:
        return self._manifest.model_id

    @property
    def input_size(self) -> int:
        return self._manifest.input_size

    @property
    def n_outputs(self) -> int:
        return self._n

    def infer(self, tensor: Tensor) -> list[float]:
        with self._counter_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls += 1
        try:
            self.entered.set()
            if self.gate is not None:
                self.gate.wait(5.0)
            if self._delay_s:
                time.sleep(self._delay_s)
            means = [float(tensor[0, c].mean().item()) for c in range(3)]
            scores = (means + [-1e9] * self._n)[: self._n]
            return scores + [0.0] * self._extra
        finally:
            with self._counter_lock:
                self.active -= 1

    def close(self) -> None:
        self.closed = True
