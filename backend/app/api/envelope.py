from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from app.core.logging import get_correlation_id, get_request_id
from app.domain.queue.errors import QueueError, QueueFullError
from app.utils.clock import iso, utcnow


def response_meta(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "request_id": get_request_id() or None,
        "correlation_id": get_correlation_id() or None,
        "timestamp": iso(utcnow()),
    }
    if extra:
        meta.update(extra)
    return meta


def success_envelope(
    data: Any,
    *,
    status_code: int = 200,
    meta: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": True, "data": data, "error": None, "meta": response_meta(meta)},
    )


def error_envelope(
    *,
    code: str,
    message: str,
    status_code: int = 400,
    details: Any = None,
    meta: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "ok": False,
            "data": None,
            "error": {"code": code, "message": message, "details": details},
            "meta": response_meta(meta),
        },
        headers=headers,
    )


def queue_error_envelope(exc: QueueError, *, path: str | None = None) -> JSONResponse:
    headers = None
    if isinstance(exc, QueueFullError):
        # Retry-After is whole seconds.
        headers = {"Retry-After": str(max(1, exc.retry_after_ms // 1000))}
    return error_envelope(
        code=exc.code,
        message=str(exc),
        status_code=exc.status_code,
        details=exc.details(),
        meta={"path": path} if path else None,
        headers=headers,
    )
