from __future__ import annotations

import os
from pathlib import Path

import pytest

from landcover_ai.config import Limits, Settings


def _load_with_env(env: dict[str, str]) -> Settings:
    # Settings.load reads os.environ directly; swap it wholesale and restore
    old = os.environ.copy()
    try:
        os.environ.clear()
        os.environ.update(env)
        return Settings.load()
    finally:
        os.environ.clear()
        os.environ.update(old)


def test_defaults_without_env_or_toml(tmp_path: Path) -> None:
    s = _load_with_env({"LANDCOVER_CONFIG": (tmp_path / "missing.toml").as_posix()})
    assert s.app.port == 8080
    assert s.model.arch == "resnet18"
    assert s.model.input_size == 64
    assert s.security.api_key == ""


def test_env_overrides(tmp_path: Path) -> None:
    s = _load_with_env(
        {
            "LANDCOVER_CONFIG": (tmp_path / "missing.toml").as_posix(),
            "MODEL__PATH": (tmp_path / "w" / "model.pt").as_posix(),
            "MODEL__LABELS_PATH": (tmp_path / "labels.txt").as_posix(),
            "MODEL__ARCH": "resnet50",
            "MODEL__INPUT_SIZE": "224",
            "MODEL__PREDICT_TIMEOUT_SECONDS": "0.5",
            "MODEL__MAX_IMAGE_MB": "1",
            "APP__PORT": "9000",
            "APP__THREADS": "3",
            "SECURITY__API_KEY": "k",
        }
    )
    assert s.model.model_path.as_posix().endswith("w/model.pt")
    assert s.model.labels_path.name == "labels.txt"
    assert s.model.arch == "resnet50" and s.model.input_size == 224
    assert s.model.predict_timeout_seconds == 0.5
    assert Limits.from_settings(s).max_bytes == 1024 * 1024
    assert s.app.port == 9000 and s.app.threads == 3
    assert s.security.api_key == "k"


def test_toml_overrides_env(tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text(
        """
[model]
labels_path = "/etc/landcover/labels.json"
input_size = 96

[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
        encoding="utf-8",
    )
    s = _load_with_env({"LANDCOVER_CONFIG": p.as_posix(), "MODEL__INPUT_SIZE": "32"})
    assert s.model.labels_path == Path("/etc/landcover/labels.json")
    assert s.model.input_size == 96
    assert s.security.api_key == ""


def test_invalid_values_raise(tmp_path: Path) -> None:
    missing = (tmp_path / "missing.toml").as_posix()
    with pytest.raises(RuntimeError):
        _load_with_env({"LANDCOVER_CONFIG": missing, "APP__PORT": "70000"})
    with pytest.raises(RuntimeError):
        _load_with_env({"LANDCOVER_CONFIG": missing, "MODEL__INPUT_SIZE": "2"})
    bad = tmp_path / "bad.toml"
    bad.write_text("[model\ninput_size = ", encoding="utf-8")
    with pytest.raises(RuntimeError):
        _load_with_env({"LANDCOVER_CONFIG": bad.as_posix()})

