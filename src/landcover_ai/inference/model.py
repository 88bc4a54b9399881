from __future__ import annotations

import pickle
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..errors import InferenceError, ModelLoadError
from ..logging import get_logger
from .manifest import ModelManifest

_SUPPORTED_ARCHS: Final[tuple[str, ...]] = (
    "resnet18",
    "resnet34",
    "resnet50",
    "mobilenet_v3_small",
    "efficientnet_b0",
)
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


class ModelHandle:
    """A loaded classifier on CPU.

    ``infer`` is not safe to call from several threads at once; callers
    serialize access (see ``InferenceService``).
    """

    def __init__(self, model: TorchModel, manifest: ModelManifest, n_outputs: int) -> None:
        self._model: TorchModel | None = model
        self._manifest = manifest
        self._n_outputs = n_outputs

    @staticmethod
    def load(path: Path, manifest: ModelManifest) -> ModelHandle:
        if manifest.arch not in _SUPPORTED_ARCHS:
            raise ModelLoadError(f"unsupported architecture: {manifest.arch}")
        if not path.is_file():
            raise ModelLoadError(f"model artifact not found: {path}")
        try:
            sd = _load_state_dict_file(path)
        except _LOAD_ERRORS as exc:
            raise ModelLoadError("model artifact is not a readable state dict") from exc
        n_classes = manifest.n_classes if manifest.n_classes is not None else _infer_n_classes(sd)
        torch.set_num_threads(1)
        model = _build_model(arch=manifest.arch, n_classes=n_classes)
        try:
            model.load_state_dict(sd)
        except (RuntimeError, ValueError, TypeError) as exc:
            raise ModelLoadError("weights do not match the declared architecture") from exc
        model.eval()
        n_outputs = _probe_outputs(model, manifest.input_size)
        if n_outputs != n_classes:
            raise ModelLoadError("model output size does not match n_classes")
        get_logger().info(
            "model_loaded model_id=%s arch=%s n_classes=%d input_size=%d",
            manifest.model_id,
            manifest.arch,
            n_outputs,
            manifest.input_size,
        )
        return ModelHandle(model, manifest, n_outputs)

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
        return self._n_outputs

    def infer(self, tensor: Tensor) -> list[float]:
        model = self._model
        if model is None:
            raise InferenceError("model has been released")
        batch = _as_batch(tensor, self.input_size)
        try:
            with torch.no_grad():
                logits = model(batch)
        except RuntimeError as exc:
            raise InferenceError("model forward pass failed") from exc
        if logits.ndim != 2 or int(logits.shape[0]) != 1:
            raise InferenceError("unexpected model output shape")
        row = logits[0]
        return [float(row[i].item()) for i in range(int(row.shape[0]))]

    def close(self) -> None:
        self._model = None


def _as_batch(x: Tensor, input_size: int) -> Tensor:
    t = x.unsqueeze(0) if x.ndim == 3 else x
    expected = (1, 3, input_size, input_size)
    if tuple(int(d) for d in t.shape) != expected:
        raise InferenceError(f"input tensor shape {tuple(t.shape)} != {expected}")
    return t.to(dtype=torch.float32)


def _probe_outputs(model: TorchModel, input_size: int) -> int:
    try:
        with torch.no_grad():
            out = model(torch.zeros((1, 3, input_size, input_size), dtype=torch.float32))
    except RuntimeError as exc:
        raise ModelLoadError("model rejects the configured input size") from exc
    if out.ndim != 2:
        raise ModelLoadError("model output is not a score vector")
    return int(out.shape[1])


def _infer_n_classes(sd: dict[str, Tensor]) -> int:
    # Classifier head is the last 2-D weight in every supported architecture
    heads = [v for k, v in sd.items() if k.endswith(".weight") and v.ndim == 2]
    if not heads:
        raise ModelLoadError("state dict has no classifier head")
    return int(heads[-1].shape[0])


if TYPE_CHECKING:

    def _build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def _build_model(arch: str, n_classes: int) -> TorchModel:
        import importlib

        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, arch, None)
        if not callable(fn_obj):
            raise ModelLoadError(f"torchvision.models.{arch} is not callable")
        return fn_obj(weights=None, num_classes=int(n_classes))


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
        m = _build_model(arch=arch, n_classes=n_classes)
        return {k: v for k, v in m.state_dict().items() if torch.is_tensor(v)}


if TYPE_CHECKING:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError("state dict file did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise ValueError("invalid state dict entry")
        return out
