from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, status

from src.api.routers.rebalance_requests_config import build_repository, build_service, env_flag
from src.core.rebalance_requests import (
    AnalysisCompletedRequest,
    OpportunityCompletedRequest,
    RebalanceActionResponse,
    RebalanceCanceledResponse,
    RebalanceCoordinatorService,
    RebalanceErrorResponse,
    RebalanceRequestDetailResponse,
    ReconciliationResponse,
    StartRebalanceRequest,
)

router = APIRouter(tags=["Rebalance Requests"])

_REPOSITORY = None
_SERVICE: Optional[RebalanceCoordinatorService] = None

_ERROR_RESPONSES = {
    400: {"model": RebalanceErrorResponse, "description": "Constraints over limit or denied."},
    404: {"model": RebalanceErrorResponse, "description": "Unknown rebalance request."},
    409: {
        "model": RebalanceCanceledResponse,
        "description": "Action not allowed in the current status, or request canceled.",
    },
    422: {"model": RebalanceErrorResponse, "description": "Malformed payload."},
    502: {"model": RebalanceErrorResponse, "description": "Worker or synthesis failure."},
}

RequestId = Annotated[
    str,
    Path(description="Rebalance request identifier.", examples=["rbr_0f3c9a1b2d4e"]),
]


def _assert_actions_enabled() -> None:
    if not env_flag("REBALANCE_ACTIONS_ENABLED", True):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="REBALANCE_ACTIONS_DISABLED",
        )


def get_rebalance_coordinator_service() -> RebalanceCoordinatorService:
    global _REPOSITORY
    global _SERVICE
    if _REPOSITORY is None:
        _REPOSITORY = build_repository()
    if _SERVICE is None:
        _SERVICE = build_service(repository=_REPOSITORY)
    return _SERVICE


def reset_rebalance_coordinator_for_tests() -> None:
    global _REPOSITORY
    global _SERVICE
    _REPOSITORY = None
    _SERVICE = None


@router.post(
    "/rebalance-requests",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Start Rebalance",
    description=(
        "Resolves constraints against the user's role limits, evaluates portfolio drift, "
        "and either completes without action, runs the opportunity filter, or dispatches "
        "one analysis job per selected ticker."
    ),
)
def start_rebalance(
    payload: StartRebalanceRequest,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.start_rebalance(payload)


@router.post(
    "/rebalance-requests/reconcile",
    response_model=ReconciliationResponse,
    status_code=status.HTTP_200_OK,
    summary="Run Reconciliation Sweep",
    description=(
        "Re-derives completion for every running request, applies pending cancellations "
        "and recovers requests idle past the staleness window."
    ),
)
def reconcile_rebalance_requests(
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> ReconciliationResponse:
    _assert_actions_enabled()
    return ReconciliationResponse(summary=service.reconcile())


@router.get(
    "/rebalance-requests/{rebalance_request_id}",
    response_model=RebalanceRequestDetailResponse,
    status_code=status.HTTP_200_OK,
    responses={404: _ERROR_RESPONSES[404]},
    summary="Get Rebalance Request",
    description="Returns the current request aggregate with its analysis jobs.",
)
def get_rebalance_request(
    rebalance_request_id: RequestId,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceRequestDetailResponse:
    return service.get_request(rebalance_request_id=rebalance_request_id)


@router.post(
    "/rebalance-requests/{rebalance_request_id}/analysis-completed",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERROR_RESPONSES,
    summary="Report Analysis Completion",
    description=(
        "Records the outcome of one ticker's analysis. Duplicate or late callbacks are "
        "acknowledged with accepted=false and change nothing."
    ),
)
def analysis_completed(
    rebalance_request_id: RequestId,
    payload: AnalysisCompletedRequest,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.analysis_completed(rebalance_request_id=rebalance_request_id, payload=payload)


@router.post(
    "/rebalance-requests/{rebalance_request_id}/retry",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERROR_RESPONSES,
    summary="Retry Rebalance",
    description=(
        "Re-dispatches failed or missing analyses; succeeded analyses are kept. A request "
        "that failed during synthesis is finalized again."
    ),
)
def retry_rebalance(
    rebalance_request_id: RequestId,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.retry_rebalance(rebalance_request_id=rebalance_request_id)


@router.post(
    "/rebalance-requests/{rebalance_request_id}/complete",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERROR_RESPONSES,
    summary="Complete Rebalance",
    description="Finalizes the request when every analysis job has reached a terminal status.",
)
def complete_rebalance(
    rebalance_request_id: RequestId,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.complete_rebalance(rebalance_request_id=rebalance_request_id)


@router.post(
    "/rebalance-requests/{rebalance_request_id}/opportunity-completed",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERROR_RESPONSES,
    summary="Report Opportunity Evaluation",
    description=(
        "Delivers an asynchronous opportunity evaluation. A failed evaluation selects every "
        "candidate ticker."
    ),
)
def opportunity_completed(
    rebalance_request_id: RequestId,
    payload: OpportunityCompletedRequest,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.opportunity_completed(
        rebalance_request_id=rebalance_request_id, payload=payload
    )


@router.post(
    "/rebalance-requests/{rebalance_request_id}/cancel",
    response_model=RebalanceActionResponse,
    status_code=status.HTTP_200_OK,
    responses=_ERROR_RESPONSES,
    summary="Cancel Rebalance",
    description=(
        "Flags the request as canceled. The request moves to canceled once no analysis "
        "dispatch is in flight; a canceled request is never completed."
    ),
)
def cancel_rebalance(
    rebalance_request_id: RequestId,
    service: Annotated[
        RebalanceCoordinatorService, Depends(get_rebalance_coordinator_service)
    ] = None,
) -> RebalanceActionResponse:
    _assert_actions_enabled()
    return service.cancel_rebalance(rebalance_request_id=rebalance_request_id)
