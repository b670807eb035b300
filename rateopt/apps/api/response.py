from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_PREFIX = "/v1"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_PREFIX.lstrip("/")


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def request_id_for(request: Request) -> str:
    # The middleware normally assigns one; handlers invoked outside it still get an id.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def wants_envelope(request: Request) -> bool:
    # Health checks such as /health stay unwrapped for load balancers.
    return request.url.path.startswith(API_PREFIX)


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return data


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    payload = _dump(data)
    if not wants_envelope(request):
        return payload
    return {"data": payload, "meta": ResponseMeta(request_id=request_id_for(request)).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {
        "error": body.model_dump(exclude_none=True),
        "meta": ResponseMeta(request_id=request_id_for(request)).model_dump(),
    }
