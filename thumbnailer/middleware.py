import logging
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from thumbnailer.exceptions import QueueError, StoreUnavailable

logger = logging.getLogger(__name__)


async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _envelope(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message},
            "request_id": getattr(request.state, "request_id", None),
        },
    )


async def error_envelope_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Wrap errors that escaped the controllers in the standard envelope.

    HTTPExceptions raised by routes and dependencies never reach this point:
    FastAPI renders them as ``{"detail": ...}``, the documented error shape.
    Only ones raised by other middleware arrive here.
    """
    try:
        return await call_next(request)
    except StarletteHTTPException as exc:
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return _envelope(request, exc.status_code, "http_error", detail)
    except (StoreUnavailable, QueueError):
        logger.exception("Backend unavailable")
        return _envelope(
            request,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "backend_unavailable",
            "A storage or queue backend is temporarily unavailable",
        )
    except Exception:
        logger.exception("Unhandled exception")
        return _envelope(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred",
        )
