"""Translation of negotiation errors into HTTP responses."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from ..domain.errors import (
    InvalidStateError,
    MarketplaceError,
    NetworkError,
    NotFoundError,
    OperationTimeoutError,
    ParseError,
    ValidationError,
)

logger = get_logger()

# Checked in order, so subclasses must precede their bases.
STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
    (OperationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (ParseError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(error: MarketplaceError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Render a MarketplaceError as {"error", "message", "details"}."""
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("request_rejected", path=request.url.path, error=exc.code, message=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
