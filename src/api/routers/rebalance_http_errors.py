from fastapi import status
from fastapi.responses import JSONResponse

from src.core.rebalance_requests import (
    ExternalWorkerError,
    RebalanceCanceledError,
    RebalanceCanceledResponse,
    RebalanceConfigurationError,
    RebalanceCoordinationError,
    RebalanceErrorResponse,
    RebalanceInvalidStateError,
    RebalanceNotFoundError,
    RebalanceValidationError,
    RebalanceVersionConflictError,
    SynthesisError,
)

CANCELED_MESSAGE = "Rebalance request was canceled."

# Older Starlette releases only define HTTP_422_UNPROCESSABLE_ENTITY.
HTTP_422_UNPROCESSABLE = getattr(
    status, "HTTP_422_UNPROCESSABLE_CONTENT", status.HTTP_422_UNPROCESSABLE_ENTITY
)


def rebalance_error_status(exc: RebalanceCoordinationError) -> int:
    if isinstance(exc, RebalanceConfigurationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, RebalanceValidationError):
        return HTTP_422_UNPROCESSABLE
    if isinstance(exc, RebalanceNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (RebalanceInvalidStateError, RebalanceVersionConflictError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ExternalWorkerError, SynthesisError)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def rebalance_error_response(exc: RebalanceCoordinationError) -> JSONResponse:
    if isinstance(exc, RebalanceCanceledError):
        body = RebalanceCanceledResponse(message=CANCELED_MESSAGE)
    else:
        body = RebalanceErrorResponse(error=str(exc))
    return JSONResponse(
        status_code=rebalance_error_status(exc),
        content=body.model_dump(mode="json", exclude_none=True),
    )
