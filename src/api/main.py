"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.api.observability import setup_observability
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.routers.rebalance_http_errors import (
    HTTP_422_UNPROCESSABLE,
    rebalance_error_response,
)
from src.api.routers.rebalance_requests import router as rebalance_requests_router
from src.api.scheduler import start_reconciliation_scheduler, stop_reconciliation_scheduler
from src.core.rebalance_requests import RebalanceCoordinationError, RebalanceErrorResponse


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    start_reconciliation_scheduler()
    try:
        yield
    finally:
        stop_reconciliation_scheduler()


app = FastAPI(
    title="Rebalance Coordination API",
    version="0.1.0",
    description=(
        "Coordinates multi-ticker portfolio rebalance requests.\n\n"
        "A request moves through `pending`, `evaluating`, `filtering`, `analyzing`, "
        "`aggregating` and `finalizing` to one of `completed`, `failed` or `canceled`."
    ),
    openapi_tags=[
        {
            "name": "Rebalance Requests",
            "description": "Start, observe, retry, complete and cancel rebalance requests.",
        },
        {
            "name": "Health",
            "description": "Liveness and readiness probes.",
        },
    ],
    lifespan=_app_lifespan,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

setup_observability(app)
app.include_router(rebalance_requests_router)


@app.exception_handler(RebalanceCoordinationError)
async def rebalance_error_to_envelope(
    _request: Request, exc: RebalanceCoordinationError
) -> JSONResponse:
    return rebalance_error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_error_to_envelope(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    body = RebalanceErrorResponse(
        error="REBALANCE_PAYLOAD_INVALID",
        details=jsonable_encoder(exc.errors()),
    )
    return JSONResponse(status_code=HTTP_422_UNPROCESSABLE, content=body.model_dump(mode="json"))


@app.exception_handler(StarletteHTTPException)
async def http_exception_to_envelope(
    _request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    body = RebalanceErrorResponse(error=str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_to_envelope(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception while serving request",
        exc_info=exc,
        extra={"extra_fields": {"endpoint": request.url.path}},
    )
    body = RebalanceErrorResponse(error="REBALANCE_INTERNAL_ERROR")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(mode="json", exclude_none=True),
    )


@app.get("/health", tags=["Health"], summary="Health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live", tags=["Health"], summary="Liveness")
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready", tags=["Health"], summary="Readiness")
def health_ready() -> dict[str, str]:
    return {"status": "ready"}
