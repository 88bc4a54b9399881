from __future__ import annotations

from pathlib import Path

import pytest
import torch
from _artifacts import write_resnet_artifact

from landcover_ai.errors import InferenceError, ModelLoadError
from landcover_ai.inference.manifest import ModelManifest
from landcover_ai.inference.model import ModelHandle


def _manifest(**over: object) -> ModelManifest:
    d: dict[str, object] = {
        "schema_version": "v1",
        "model_id": "m",
        "arch": "resnet18",
        "n_classes": 10,
        "input_size": 32,
    }
    d.update(over)
    return ModelManifest.from_dict(d)


def test_load_and_infer_returns_one_score_per_class(tmp_path: Path) -> None:
    model_path = write_resnet_artifact(tmp_path / "m", manifest=False)
    h = ModelHandle.load(model_path, _manifest())
    assert h.n_outputs == 10
    assert h.input_size == 32
    scores = h.infer(torch.zeros((1, 3, 32, 32), dtype=torch.float32))
    assert len(scores) == 10 and all(isinstance(s, float) for s in scores)
    # 3-D input gets a batch axis
    assert len(h.infer(torch.zeros((3, 32, 32)))) == 10


def test_n_classes_read_from_weights_without_manifest_count(tmp_path: Path) -> None:
    model_path = write_resnet_artifact(tmp_path / "m", n_classes=7, manifest=False)
    man = ModelManifest.implicit(model_path, arch="resnet18", input_size=32)
    assert ModelHandle.load(model_path, man).n_outputs == 7


def test_fixed_head_always_selects_same_index(tmp_path: Path) -> None:
    model_path = write_resnet_artifact(tmp_path / "m", fixed_class=4, manifest=False)
    h = ModelHandle.load(model_path, _manifest())
    x = torch.randn((1, 3, 32, 32), generator=torch.Generator().manual_seed(3))
    scores = h.infer(x)
    assert max(range(10), key=lambda i: scores[i]) == 4


def test_infer_rejects_wrong_shape(tmp_path: Path) -> None:
    h = ModelHandle.load(write_resnet_artifact(tmp_path / "m", manifest=False), _manifest())
    with pytest.raises(InferenceError):
        h.infer(torch.zeros((1, 3, 16, 16)))
    with pytest.raises(InferenceError):
        h.infer(torch.zeros((1, 1, 32, 32)))


def test_infer_after_close_raises(tmp_path: Path) -> None:
    h = ModelHandle.load(write_resnet_artifact(tmp_path / "m", manifest=False), _manifest())
    h.close()
    with pytest.raises(InferenceError):
        h.infer(torch.zeros((1, 3, 32, 32)))


def test_load_failures_raise_model_load_error(tmp_path: Path) -> None:
    with pytest.raises(ModelLoadError):
        ModelHandle.load(tmp_path / "missing.pt", _manifest())

    garbage = tmp_path / "garbage.pt"
    garbage.write_bytes(b"\x00\x01 not a torch file")
    with pytest.raises(ModelLoadError):
        ModelHandle.load(garbage, _manifest())

    good = write_resnet_artifact(tmp_path / "m", manifest=False)
    with pytest.raises(ModelLoadError):
        ModelHandle.load(good, _manifest(arch="vgg_unknown"))
    # Head size disagrees with the declared class count
    with pytest.raises(ModelLoadError):
        ModelHandle.load(good, _manifest(n_classes=5))
    # Weights for a different architecture
    with pytest.raises(ModelLoadError):
        ModelHandle.load(good, _manifest(arch="resnet34"))
