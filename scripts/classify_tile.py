from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path

from landcover_ai.client import ClassificationClient, ClientError
from landcover_ai.logging import get_logger, init_logging


@dataclass(frozen=True)
class ClassifyArgs:
    image: Path
    url: str
    api_key: str | None
    timeout_s: float


def parse_args(argv: list[str] | None = None) -> ClassifyArgs:
    ap = argparse.ArgumentParser(description="Classify a map tile and print its label")
    ap.add_argument("image", help="Path to a PNG/JPEG snapshot")
    ap.add_argument("--url", default="http://localhost:8080", help="Classifier base URL")
    ap.add_argument("--api-key", default=os.getenv("SECURITY__API_KEY"), help="X-API-Key value")
    ap.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")
    a = ap.parse_args(argv)
    return ClassifyArgs(
        image=Path(str(a.image)),
        url=str(a.url),
        api_key=str(a.api_key) if a.api_key else None,
        timeout_s=float(a.timeout),
    )


def classify_tile(args: ClassifyArgs, client: ClassificationClient | None = None) -> str:
    if not args.image.is_file():
        raise SystemExit(f"Image not found: {args.image.as_posix()}")
    c = client or ClassificationClient(args.url, api_key=args.api_key, timeout_s=args.timeout_s)
    with c:
        label = c.classify_file(args.image)
    get_logger().info("tile_classified image=%s label=%s", args.image.name, label)
    return label


def main() -> None:  # pragma: no cover - tiny glue
    init_logging()
    args = parse_args()
    try:
        label = classify_tile(args)
    except ClientError as exc:
        kind = "bad input" if exc.bad_input else "server error"
        raise SystemExit(f"Classification failed ({kind}): {exc.message}") from None
    print(label)


if __name__ == "__main__":
    main()
