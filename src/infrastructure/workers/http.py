import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from src.core.rebalance_requests.errors import ExternalWorkerError, SynthesisError
from src.core.rebalance_requests.models import (
    AnalysisDispatchRequest,
    DecisionSynthesisRequest,
    OpportunityDecision,
    OpportunityEvaluationRequest,
    RoleLimits,
    TradeAction,
)

DEFAULT_WORKER_TIMEOUT_SECONDS = 30.0

logger = logging.getLogger(__name__)


def build_worker_client(
    *,
    base_url: str,
    timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        timeout=httpx.Timeout(timeout_seconds),
        transport=transport,
    )


class _WorkerEndpoint:
    def __init__(self, *, client: httpx.Client, error_code: str) -> None:
        self._client = client
        self._error_code = error_code

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict[str, Any]] = None,
        error_type: type[Exception] = ExternalWorkerError,
    ) -> Any:
        try:
            response = self._client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise error_type(f"{self._error_code}_TIMEOUT") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "rebalance.worker_rejected",
                extra={
                    "extra_fields": {
                        "path": path,
                        "status_code": exc.response.status_code,
                    }
                },
            )
            raise error_type(f"{self._error_code}_HTTP_{exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise error_type(f"{self._error_code}_UNAVAILABLE") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise error_type(f"{self._error_code}_INVALID_RESPONSE") from exc


class HttpAnalysisWorker(_WorkerEndpoint):
    """Hands analysis jobs to the remote worker; results come back as callbacks."""

    def __init__(self, *, client: httpx.Client) -> None:
        super().__init__(client=client, error_code="ANALYSIS_WORKER")

    def dispatch(self, request: AnalysisDispatchRequest) -> None:
        self._request("POST", "/analysis-jobs", payload=request.model_dump(mode="json"))


class HttpOpportunityWorker(_WorkerEndpoint):
    def __init__(self, *, client: httpx.Client) -> None:
        super().__init__(client=client, error_code="OPPORTUNITY_WORKER")

    def evaluate(self, request: OpportunityEvaluationRequest) -> OpportunityDecision:
        body = self._request(
            "POST", "/opportunity-evaluations", payload=request.model_dump(mode="json")
        )
        try:
            return OpportunityDecision.model_validate(body or {})
        except ValidationError as exc:
            raise ExternalWorkerError("OPPORTUNITY_WORKER_INVALID_RESPONSE") from exc

    def submit(self, request: OpportunityEvaluationRequest) -> None:
        self._request(
            "POST", "/opportunity-evaluations/async", payload=request.model_dump(mode="json")
        )


class HttpDecisionRoutine(_WorkerEndpoint):
    def __init__(self, *, client: httpx.Client) -> None:
        super().__init__(client=client, error_code="SYNTHESIS_WORKER")

    def synthesize(self, request: DecisionSynthesisRequest) -> list[TradeAction]:
        body = self._request(
            "POST",
            "/portfolio-decisions",
            payload=request.model_dump(mode="json"),
            error_type=SynthesisError,
        )
        if not isinstance(body, dict) or not isinstance(body.get("trade_actions"), list):
            raise SynthesisError("SYNTHESIS_WORKER_INVALID_RESPONSE")
        try:
            return [TradeAction.model_validate(item) for item in body["trade_actions"]]
        except ValidationError as exc:
            raise SynthesisError("SYNTHESIS_WORKER_INVALID_RESPONSE") from exc


class HttpRoleLimitsProvider(_WorkerEndpoint):
    def __init__(self, *, client: httpx.Client) -> None:
        super().__init__(client=client, error_code="ROLE_LIMITS_SERVICE")

    def get_role_limits(self, *, user_id: str) -> RoleLimits:
        body = self._request("GET", f"/users/{user_id}/role-limits")
        try:
            return RoleLimits.model_validate(body or {})
        except ValidationError as exc:
            raise ExternalWorkerError("ROLE_LIMITS_SERVICE_INVALID_RESPONSE") from exc
