from __future__ import annotations

import base64
from pathlib import Path
from typing import Final

import httpx

from .logging import get_logger

_DEFAULT_TIMEOUT_S: Final[float] = 30.0


class ClientError(Exception):
    """The server answered with a non-success status, or could not be reached."""

    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message

    @property
    def bad_input(self) -> bool:
        return 400 <= self.status < 500


def encode_image(raw: bytes) -> dict[str, str]:
    return {"data": base64.b64encode(raw).decode("ascii")}


def _headers(api_key: str | None) -> dict[str, str]:
    return {"X-API-Key": api_key} if api_key else {}


def _label_or_raise(r: httpx.Response) -> str:
    if r.status_code == 200:
        label = r.text.strip()
        if not label:
            raise ClientError(r.status_code, "empty_label", "server returned an empty label")
        return label
    code = "http_error"
    message = r.text
    try:
        body: object = r.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("code", code))
        message = str(body.get("message", message))
    raise ClientError(r.status_code, code, message)


class ClassificationClient:
    """Blocking client for ``POST /v1/classify``."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers=_headers(api_key),
            timeout=timeout_s,
            transport=transport,
        )

    def classify_bytes(self, raw: bytes) -> str:
        try:
            r = self._client.post("/v1/classify", json=encode_image(raw))
        except (httpx.TimeoutException, httpx.RequestError) as exc:
            get_logger().info("client_http_error type=%s", type(exc).__name__)
            raise ClientError(0, "unreachable", str(exc)) from exc
        return _label_or_raise(r)

    def classify_file(self, path: Path) -> str:
        return self.classify_bytes(path.read_bytes())

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ClassificationClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class AsyncClassificationClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=_headers(api_key),
            timeout=timeout_s,
            transport=transport,
        )

    async def classify_bytes(self, raw: bytes) -> str:
        try:
            r = await self._client.post("/v1/classify", json=encode_image(raw))
        except (httpx.TimeoutException, httpx.RequestError) as exc:
            get_logger().info("client_http_error type=%s", type(exc).__name__)
            raise ClientError(0, "unreachable", str(exc)) from exc
        return _label_or_raise(r)

    async def classify_file(self, path: Path) -> str:
        return await self.classify_bytes(path.read_bytes())

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AsyncClassificationClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
