"""Response envelope helpers shared by every endpoint."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .domain_errors import DomainError


def request_metadata(request: Request | None) -> dict[str, Any]:
    """Envelope metadata from the request timing state."""
    state = getattr(request, "state", None)
    request_id = getattr(state, "request_id", None)
    started = getattr(state, "request_start", None)
    processing_time = None
    if started is not None:
        processing_time = round((time.perf_counter() - started) * 1000, 1)
    return {
        "request_id": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "processing_time": processing_time,
    }


def success_response(request: Request | None, data: Any, *, status_code: int = 200) -> JSONResponse:
    """Wrap a payload into the success envelope."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": True,
            "data": jsonable_encoder(data),
            "metadata": request_metadata(request),
        },
    )


def error_payload(*, message: str, code: str, retryable: bool, details: dict[str, Any] | None = None) -> dict:
    error: dict[str, Any] = {"message": message, "code": code, "retryable": retryable}
    if details is not None:
        error["details"] = jsonable_encoder(details)
    return {"success": False, "error": error}


def build_error_response(exc: DomainError) -> JSONResponse:
    """Render DomainError as the failure envelope with its stable code."""
    return JSONResponse(
        status_code=exc.http_status,
        content=error_payload(
            message=exc.message,
            code=exc.code,
            retryable=exc.retryable,
            details=exc.details,
        ),
    )
