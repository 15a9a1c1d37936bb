"""Helper utilities for API handlers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Type, TypeVar
from uuid import UUID

import structlog
from aiohttp import web
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from backend_common.aiohttp_app import read_json as read_json  # noqa: F401
from webhook_service.core.exceptions import (
    CancellationError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
    WebhookServiceError,
)

logger = structlog.get_logger(__name__)

TModel = TypeVar("TModel", bound=BaseModel)

_STATUS_BY_ERROR: list[tuple[type[WebhookServiceError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStatusTransitionError, 409),
    (CancellationError, 409),
]


def error_payload(code: str, message: str) -> dict[str, str]:
    return {"error": code, "message": message}


def json_error(status: int, code: str, message: str) -> web.Response:
    return web.json_response(error_payload(code, message), status=status)


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value if isinstance(value, str) else str(value))
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid {label}") from exc


def parse_bool(value: str | None, label: str) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValidationError(f"Invalid {label}")


def parse_datetime(value: str | None, label: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}") from exc


def parse_model(model: Type[TModel], body: dict[str, Any]) -> TModel:
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(details) from exc


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise ValidationError("limit and offset must be integers") from exc
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    if offset < 0:
        offset = 0
    return limit, offset


def paginated_response(
    items: list[Any],
    *,
    limit: int,
    offset: int,
    key: str,
    total: int,
) -> dict[str, Any]:
    page = offset // limit + 1 if limit else 1
    return {
        key: items,
        "total": total,
        "page": page,
        "pageSize": limit,
    }


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render domain errors and aiohttp 400s as ``{error, message}`` JSON."""
    try:
        return await handler(request)
    except WebhookServiceError as exc:
        for error_type, status in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                return json_error(status, exc.code, str(exc))
        logger.exception("Unhandled webhook service error", path=request.path)
        return json_error(500, exc.code, "Internal server error")
    except web.HTTPBadRequest as exc:
        if exc.content_type == "application/json":
            raise
        return json_error(400, ValidationError.code, exc.text or exc.reason)
