from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Final

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from ..config import Limits, Settings
from ..errors import (
    AppError,
    ErrorCode,
    InferenceError,
    InferenceTimeoutError,
    PreprocessError,
    StartupError,
    app_error,
    new_error,
)
from ..inference.service import InferenceService, init_service, shutdown_service
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ActiveModelResponse, ClassifyRequest

_RAW_CONTENT_TYPES: Final[frozenset[str]] = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/tiff", "application/octet-stream"}
)
_DATA_URL_MARKER: Final[str] = ";base64,"
# Room for the JSON envelope and a data URL prefix around the base64 text
_JSON_ENVELOPE_BYTES: Final[int] = 1024


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid)
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _decode_b64_payload(data: str, limits: Limits) -> bytes:
    text = data.strip()
    # Accept data URLs as produced by canvas.toDataURL()
    if text.startswith("data:") and _DATA_URL_MARKER in text:
        text = text.split(_DATA_URL_MARKER, 1)[1]
    text = "".join(text.split())
    if len(text) > _b64_text_limit(limits):
        raise app_error(ErrorCode.too_large)
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise app_error(ErrorCode.invalid_image, "Payload is not valid base64.") from None
    if not raw:
        raise app_error(ErrorCode.invalid_image, "Empty image payload.")
    return raw


def _b64_text_limit(limits: Limits) -> int:
    return (limits.max_bytes * 4) // 3 + 4


def _json_body_limit(limits: Limits) -> int:
    return _b64_text_limit(limits) + _JSON_ENVELOPE_BYTES


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large)


async def _run_classify(service: InferenceService, raw: bytes) -> PlainTextResponse:
    t0 = time.perf_counter()
    fut = service.submit_classify(raw)
    try:
        out = await asyncio.wrap_future(fut)
    except PreprocessError as exc:
        get_logger().info("classify_rejected reason=%s", type(exc).__name__)
        raise app_error(ErrorCode.invalid_image) from None
    except InferenceTimeoutError:
        log_event(
            "classify_failed", fields={"code": ErrorCode.timeout.value}, level=logging.WARNING
        )
        raise app_error(ErrorCode.timeout) from None
    except InferenceError:
        get_logger().exception("classify_inference_failed")
        raise app_error(ErrorCode.inference_failed) from None
    except IndexError:
        get_logger().exception("classify_label_mismatch")
        raise app_error(ErrorCode.internal_error) from None

    dt_ms = int((time.perf_counter() - t0) * 1000.0)
    log_event(
        "classify_finished",
        fields={
            "latency_ms": dt_ms,
            "label": out.label,
            "index": out.index,
            "score": out.score,
            "model_id": out.model_id,
        },
    )
    return PlainTextResponse(out.label)


def _register_basic(app: FastAPI, provide_service: Callable[[], InferenceService]) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        svc = provide_service()
        return {"status": "ready", "model_id": svc.model_id}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, provide_service: Callable[[], InferenceService]) -> None:
    async def _model_active() -> dict[str, object]:
        return provide_service().describe()

    async def _labels() -> list[str]:
        return list(provide_service().labels.names)

    app.add_api_route(
        "/v1/models/active",
        _model_active,
        methods=["GET"],
        response_model=ActiveModelResponse,
    )
    app.add_api_route("/v1/labels", _labels, methods=["GET"])


def _register_classify(
    app: FastAPI,
    dep_api_key: DependsParamType,
    provide_service: Callable[[], InferenceService],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _classify(
        request: Request,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> PlainTextResponse:
        limits = provide_limits()
        body_limit = _json_body_limit(limits)
        if content_length is not None and content_length > body_limit:
            raise app_error(ErrorCode.too_large)
        payload = await request.body()
        if len(payload) > body_limit:
            raise app_error(ErrorCode.too_large)
        try:
            body = ClassifyRequest.model_validate_json(payload)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors(include_url=False)) from None
        raw = _decode_b64_payload(body.data, limits)
        _raise_if_too_large(raw, limits)
        return await _run_classify(provide_service(), raw)

    async def _classify_raw(
        request: Request,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> PlainTextResponse:
        limits = provide_limits()
        ctype = (request.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        if ctype not in _RAW_CONTENT_TYPES:
            raise app_error(
                ErrorCode.unsupported_media_type, "Only PNG, JPEG and TIFF are supported."
            )
        if content_length is not None and content_length > limits.max_bytes:
            raise app_error(ErrorCode.too_large)
        raw = await request.body()
        _raise_if_too_large(raw, limits)
        if not raw:
            raise app_error(ErrorCode.invalid_image, "Empty image payload.")
        return await _run_classify(provide_service(), raw)

    app.add_api_route(
        "/v1/classify",
        _classify,
        methods=["POST"],
        response_class=PlainTextResponse,
        openapi_extra={
            "requestBody": {
                "required": True,
                "content": {"application/json": {"schema": ClassifyRequest.model_json_schema()}},
            }
        },
        dependencies=[dep_api_key],
    )
    app.add_api_route(
        "/v1/classify/raw",
        _classify_raw,
        methods=["POST"],
        response_class=PlainTextResponse,
        dependencies=[dep_api_key],
    )


def create_app(
    settings: Settings | None = None,
    service_provider: Callable[[], InferenceService] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, ``Settings.load()``.
    - `service_provider`: Optional provider for a prebuilt `InferenceService`
      (primarily for tests). When omitted the process-wide service is created
      here, so a broken model or label file fails app construction with
      `StartupError` instead of serving degraded; it is released on shutdown.

    Usable directly as a uvicorn factory: ``uvicorn --factory landcover_ai.api.app:create_app``.
    """
    s = settings or Settings.load()
    init_logging()

    owns_service = service_provider is None
    if service_provider is None:
        try:
            service = init_service(s)
        except StartupError as exc:
            log_event("startup_failed", fields={"error": str(exc)}, level=logging.ERROR)
            raise
    else:
        service = service_provider()

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_service:
            shutdown_service()

    app = FastAPI(title="landcover-ai", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    limits = Limits.from_settings(s)

    def _provide_service() -> InferenceService:
        return service

    def _provide_limits() -> Limits:
        return limits

    app.state.provide_service = _provide_service
    app.state.provide_limits = _provide_limits

    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, _provide_service)
    _register_models(app, _provide_service)
    _register_classify(app, api_dep, _provide_service, _provide_limits)
    return app
