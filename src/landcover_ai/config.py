from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/landcover.toml")


@dataclass(frozen=True)
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    threads: int = 0


@dataclass(frozen=True)
class ModelConfig:
    model_path: Path = Path("/data/models/eurosat_resnet18/model.pt")
    labels_path: Path = Path("/data/models/eurosat_resnet18/labels.json")
    # None means "manifest.json next to the weights, if present"
    manifest_path: Path | None = None
    arch: str = "resnet18"
    input_size: int = 64
    predict_timeout_seconds: float = 5.0
    max_image_mb: int = 4
    max_image_side_px: int = 4096


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("LANDCOVER_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML overrides when the file exists.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    host = os.getenv("APP__HOST")
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if host:
        a = replace(a, host=host)
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT"))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    mp = os.getenv("MODEL__PATH")
    lp = os.getenv("MODEL__LABELS_PATH")
    man = os.getenv("MODEL__MANIFEST_PATH")
    arch = os.getenv("MODEL__ARCH")
    size = os.getenv("MODEL__INPUT_SIZE")
    to = os.getenv("MODEL__PREDICT_TIMEOUT_SECONDS")
    mb = os.getenv("MODEL__MAX_IMAGE_MB")
    mx = os.getenv("MODEL__MAX_IMAGE_SIDE_PX")
    if mp:
        m = replace(m, model_path=Path(mp))
    if lp:
        m = replace(m, labels_path=Path(lp))
    if man:
        m = replace(m, manifest_path=Path(man))
    if arch:
        m = replace(m, arch=arch.strip())
    if size is not None:
        m = replace(m, input_size=_check_input_size(int(size)))
    if to is not None:
        m = replace(m, predict_timeout_seconds=float(to))
    if mb is not None:
        m = replace(m, max_image_mb=int(mb))
    if mx is not None:
        m = replace(m, max_image_side_px=int(mx))
    return m


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "host" in data:
        out = replace(out, host=str(data["host"]))
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"])), "port"))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "model_path" in data:
        out = replace(out, model_path=Path(str(data["model_path"])))
    if "labels_path" in data:
        out = replace(out, labels_path=Path(str(data["labels_path"])))
    if "manifest_path" in data:
        out = replace(out, manifest_path=Path(str(data["manifest_path"])))
    if "arch" in data:
        out = replace(out, arch=str(data["arch"]).strip())
    if "input_size" in data:
        out = replace(out, input_size=_check_input_size(int(str(data["input_size"]))))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=float(str(data["predict_timeout_seconds"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _check_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _check_input_size(size: int) -> int:
    if size < 8:
        raise RuntimeError("input_size must be >= 8")
    return size


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.model.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.model.max_image_side_px),
        )
