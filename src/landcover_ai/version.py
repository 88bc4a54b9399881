from __future__ import annotations

import importlib.metadata
import os
from dataclasses import dataclass
from typing import Final

_DIST_NAME: Final[str] = "landcover-ai"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    """Installed distribution version plus build metadata injected by CI."""
    try:
        dist_version = importlib.metadata.version(_DIST_NAME)
    except importlib.metadata.PackageNotFoundError as exc:
        from .logging import get_logger

        get_logger().warning("pkg_version_missing dist=%s", _DIST_NAME)
        raise RuntimeError(f"{_DIST_NAME} is not installed") from exc
    return VersionInfo(
        service=_DIST_NAME,
        version=dist_version,
        build=os.getenv("BUILD_ID") or None,
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA") or None,
    )
