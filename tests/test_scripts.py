from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import scripts.classify_tile as ct
import scripts.serve as sv
from _artifacts import image_bytes, write_labels, write_resnet_artifact

from landcover_ai.client import ClassificationClient
from landcover_ai.inference.service import shutdown_service


def test_classify_tile_reads_file_and_returns_label(tmp_path: Path) -> None:
    tile = tmp_path / "tile.png"
    tile.write_bytes(image_bytes())
    args = ct.parse_args([tile.as_posix(), "--url", "http://svc", "--timeout", "2"])
    assert args.image == tile and args.timeout_s == 2.0

    transport = httpx.MockTransport(lambda req: httpx.Response(200, text="Forest\n"))
    client = ClassificationClient(args.url, transport=transport)
    assert ct.classify_tile(args, client=client) == "Forest"


def test_classify_tile_missing_image_exits(tmp_path: Path) -> None:
    args = ct.parse_args([(tmp_path / "nope.png").as_posix()])
    with pytest.raises(SystemExit):
        ct.classify_tile(args)


def test_serve_returns_nonzero_on_startup_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LANDCOVER_CONFIG", (tmp_path / "missing.toml").as_posix())
    monkeypatch.setenv("MODEL__PATH", (tmp_path / "absent.pt").as_posix())
    monkeypatch.setenv("MODEL__LABELS_PATH", write_labels(tmp_path / "l.json").as_posix())
    called: list[object] = []
    monkeypatch.setattr(sv.uvicorn, "run", lambda *a, **k: called.append(a))
    assert sv.run(sv.parse_args([])) == 1
    assert called == []


def test_serve_runs_uvicorn_with_loaded_app(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    model_path = write_resnet_artifact(tmp_path / "m")
    monkeypatch.setenv("LANDCOVER_CONFIG", (tmp_path / "missing.toml").as_posix())
    monkeypatch.setenv("MODEL__PATH", model_path.as_posix())
    monkeypatch.setenv("MODEL__LABELS_PATH", write_labels(tmp_path / "l.json").as_posix())
    seen: dict[str, object] = {}

    def _fake_run(app: object, host: str, port: int, log_level: str) -> None:
        seen["host"] = host
        seen["port"] = port

    monkeypatch.setattr(sv.uvicorn, "run", _fake_run)
    try:
        assert sv.run(sv.parse_args(["--port", "9123"])) == 0
    finally:
        shutdown_service()
    assert seen == {"host": "0.0.0.0", "port": 9123}
