"""Domain exception to HTTP response mapping"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dunning_scheduler.domain.exceptions import (
    ChannelDeliveryError,
    ConfigurationError,
    DomainException,
    DuplicatePlanError,
    NotFoundError,
    QueueError,
    UpstreamLookupError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
STATUS_CODES = [
    (DuplicatePlanError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (UpstreamLookupError, 502),
    (ChannelDeliveryError, 502),
    (QueueError, 503),
    (ConfigurationError, 500),
]


def status_code_for(exc: DomainException) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render domain errors as {"detail", "error"}"""
    status_code = status_code_for(exc) if isinstance(exc, DomainException) else 500
    if status_code >= 500:
        logger.error(
            "Request failed",
            extra={"path": request.url.path, "error": str(exc), "error_type": type(exc).__name__},
        )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainException, domain_exception_handler)
