from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_classes: int | None
    input_size: int
    preprocess_hash: str | None
    created_at: datetime | None

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        if not schema_version or not model_id or not arch:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        if "input_size" not in d:
            raise ValueError("manifest is missing input_size")
        input_size = int(str(d["input_size"]))
        if input_size < 8:
            raise ValueError("input_size must be >= 8")
        n_classes: int | None = None
        if d.get("n_classes") is not None:
            n_classes = int(str(d["n_classes"]))
            if n_classes < 2:
                raise ValueError("n_classes must be >= 2")
        ph = str(d.get("preprocess_hash", "")).strip()
        created_str = str(d.get("created_at", "")).strip()
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_classes=n_classes,
            input_size=input_size,
            preprocess_hash=ph or None,
            created_at=datetime.fromisoformat(created_str) if created_str else None,
        )

    @staticmethod
    def implicit(model_path: Path, arch: str, input_size: int) -> ModelManifest:
        """Manifest used when no manifest file ships beside the weights."""
        return ModelManifest(
            schema_version=_ALLOWED_SCHEMA_VERSIONS[-1],
            model_id=model_path.stem if model_path.stem != "model" else model_path.parent.name,
            arch=arch,
            n_classes=None,
            input_size=input_size,
            preprocess_hash=None,
            created_at=None,
        )
