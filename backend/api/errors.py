"""Exception handlers mapping pipeline errors to JSON responses.

Every failure leaves the API as ``{"error": "<message>"}`` with the status
code carried by the error class:

- ValidationError and request body validation failures -> 400
- NotFoundError -> 404
- UpstreamServiceError and any other RelayError -> 500
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from errors import RelayError

logger = structlog.get_logger(__name__)


def _describe_validation_error(exc: RequestValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(problems) or "Invalid request"


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        path=request.url.path,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    message = _describe_validation_error(exc)
    logger.warning("request_invalid", path=request.url.path, error=message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers on ``app``."""
    app.add_exception_handler(RelayError, relay_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError, request_validation_handler  # type: ignore[arg-type]
    )
