import uuid
from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from glasswallet.shared.timeutils import utcnow


def _resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request_id: str, pagination: dict[str, int] | None = None) -> dict[str, Any]:
    meta: dict[str, Any] = {"timestamp": utcnow().isoformat(), "requestId": request_id}
    if pagination is not None:
        meta["pagination"] = pagination
    return meta


def success(
    request: Request,
    data: Any = None,
    *,
    status_code: int = status.HTTP_200_OK,
    pagination: dict[str, int] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _resolve_request_id(request)
    content = {
        "success": True,
        "data": jsonable_encoder(data, by_alias=True),
        "meta": _meta(request_id, pagination),
    }
    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
    retryable: bool | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _resolve_request_id(request)
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = jsonable_encoder(details)
    if retryable is not None:
        error["retryable"] = retryable
    content = {"success": False, "error": error, "meta": _meta(request_id)}
    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    response.headers.setdefault("X-Request-ID", request_id)
    return response
