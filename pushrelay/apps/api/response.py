from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class PageInfo(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool

    @classmethod
    def for_slice(cls, *, limit: int, offset: int, total: int) -> "PageInfo":
        return cls(limit=limit, offset=offset, total=total, has_more=offset + limit < total)


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    page: PageInfo | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    # The middleware assigns one per request; handlers invoked outside it still get a stable id.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request, page: PageInfo | None = None) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request), page=page).model_dump(exclude_none=True)


def envelope(request: Request, data: Any, *, page: PageInfo | None = None) -> Any:
    """Wrap ``data`` as ``{data, meta}`` on /v1 routes.

    Unversioned routes (``/health`` for load balancers) return the bare payload.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request, page)}


def error_envelope(
    request: Request,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"error": error, "meta": _meta(request)}
