from __future__ import annotations

import argparse
from dataclasses import dataclass

import uvicorn

from landcover_ai.api.app import create_app
from landcover_ai.config import Settings
from landcover_ai.errors import StartupError
from landcover_ai.logging import get_logger


@dataclass(frozen=True)
class ServeArgs:
    host: str | None
    port: int | None


def parse_args(argv: list[str] | None = None) -> ServeArgs:
    ap = argparse.ArgumentParser(description="Serve the land-cover classifier over HTTP")
    ap.add_argument("--host", default=None, help="Bind address (overrides APP__HOST)")
    ap.add_argument("--port", type=int, default=None, help="Bind port (overrides APP__PORT)")
    a = ap.parse_args(argv)
    return ServeArgs(
        host=str(a.host) if a.host is not None else None,
        port=int(a.port) if a.port is not None else None,
    )


def run(args: ServeArgs) -> int:
    settings = Settings.load()
    try:
        app = create_app(settings)
    except StartupError as exc:
        get_logger().error("serve_aborted error=%s", exc)
        return 1
    uvicorn.run(
        app,
        host=args.host or settings.app.host,
        port=args.port or settings.app.port,
        log_level="info",
    )
    return 0


def main() -> None:  # pragma: no cover - tiny glue
    raise SystemExit(run(parse_args()))


if __name__ == "__main__":
    main()
