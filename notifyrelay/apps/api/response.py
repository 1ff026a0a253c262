from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    # Row count for list payloads so clients can tell a full history page from a short one.
    count: int | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    # The request middleware assigns one; handlers reached outside it still get a stable id.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
        request.state.request_id = request_id
    return request_id


def response_meta(request: Request, data: Any = None) -> dict[str, Any]:
    count = len(data) if isinstance(data, list) else None
    return ResponseMeta(request_id=request_id_for(request), count=count).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Only /health is served unversioned, as a bare payload for load balancers.
    if not request.url.path.startswith(f"/{API_VERSION}"):
        return data
    return {"data": data, "meta": response_meta(request, data)}
