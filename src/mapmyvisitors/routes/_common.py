"""
Helpers shared by the widget API routes.
"""
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from ..core.models import is_valid_widget_id
from ..models import ErrorResponse, WireModel

__all__ = [
    "client_ip", "cors_headers", "error_response", "is_valid_page_url",
    "is_valid_widget_id", "json_response", "preflight_response",
]

MAX_URL_LENGTH = 2048
FALLBACK_IP = "127.0.0.1"


def cors_headers(methods: str) -> dict[str, str]:
    """Headers for endpoints called from arbitrary third-party pages."""
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


def json_response(body: WireModel, headers: dict[str, str], status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=body.to_json(), status_code=status_code, headers=headers)


def error_response(status_code: int, message: str, headers: dict[str, str]) -> JSONResponse:
    return json_response(ErrorResponse(error=message), headers, status_code=status_code)


def preflight_response(headers: dict[str, str]) -> Response:
    return Response(status_code=200, headers=headers)


def is_valid_page_url(value) -> bool:
    """Absolute URL of at most 2048 characters."""
    if not isinstance(value, str) or not value or len(value) > MAX_URL_LENGTH:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)


def client_ip(request: Request) -> str:
    """Caller IP from proxy headers: first X-Forwarded-For hop, then X-Real-IP."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return FALLBACK_IP
