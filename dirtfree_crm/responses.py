"""
JSON envelope shared by every JSON route

success: {"success": true, "data": ..., "version": "v1", "timestamp": "..."}
error:   {"success": false, "error": {"code": ..., "message": ...}, "version": ..., "timestamp": ...}
"""

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .config import API_VERSION

ERROR_CODES = {
    400: "validation_failed",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    422: "validation_failed",
    429: "rate_limited",
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_code_for_status(status_code: int) -> str:
    if status_code in ERROR_CODES:
        return ERROR_CODES[status_code]
    return "server_error" if status_code >= 500 else "validation_failed"


def ok(data: Any = None) -> dict:
    """Success envelope; FastAPI serializes the dict"""
    return {
        "success": True,
        "data": jsonable_encoder(data),
        "version": API_VERSION,
        "timestamp": _timestamp(),
    }


def error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code or error_code_for_status(status_code), "message": message},
            "version": API_VERSION,
            "timestamp": _timestamp(),
        },
        headers=headers,
    )
