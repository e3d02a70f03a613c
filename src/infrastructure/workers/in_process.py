import json
from collections import deque
from threading import Lock
from typing import Optional

from pydantic import ValidationError

from src.core.rebalance_requests.models import (
    AnalysisDispatchRequest,
    OpportunityDecision,
    OpportunityEvaluationRequest,
    OpportunitySelection,
    RoleLimits,
)

LOCAL_ROLE_LIMITS = RoleLimits(
    max_rebalance_stocks=20,
    max_parallel_analysis=5,
    rebalance_access=True,
    opportunity_agent_access=True,
)


class QueuedAnalysisWorker:
    """Accepts every dispatch and parks it until something drains the queue.

    Used when no remote worker is configured: jobs are reported back through the
    analysis-completed action by whoever consumes the queue.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._queue: deque[AnalysisDispatchRequest] = deque()

    def dispatch(self, request: AnalysisDispatchRequest) -> None:
        with self._lock:
            self._queue.append(request.model_copy(deep=True))

    def pending(self) -> list[AnalysisDispatchRequest]:
        with self._lock:
            return list(self._queue)

    def drain(self) -> list[AnalysisDispatchRequest]:
        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
        return drained


class SelectAllOpportunityWorker:
    def __init__(self) -> None:
        self._lock = Lock()
        self._submitted: list[OpportunityEvaluationRequest] = []

    def evaluate(self, request: OpportunityEvaluationRequest) -> OpportunityDecision:
        return OpportunityDecision(
            selections=[
                OpportunitySelection(ticker=ticker, reason="No opportunity filter configured.")
                for ticker in request.candidate_tickers
            ],
            reasoning="All candidates selected.",
        )

    def submit(self, request: OpportunityEvaluationRequest) -> None:
        with self._lock:
            self._submitted.append(request.model_copy(deep=True))

    def submitted(self) -> list[OpportunityEvaluationRequest]:
        with self._lock:
            return list(self._submitted)


class StaticRoleLimitsProvider:
    def __init__(
        self,
        *,
        limits_by_user: Optional[dict[str, RoleLimits]] = None,
        default_limits: RoleLimits = LOCAL_ROLE_LIMITS,
    ) -> None:
        self._limits_by_user = dict(limits_by_user or {})
        self._default_limits = default_limits

    @classmethod
    def from_json(cls, raw: str) -> "StaticRoleLimitsProvider":
        """Parse ``{"*": {...}, "<user_id>": {...}}``; ``*`` overrides the local default."""
        if not raw.strip():
            return cls()
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuntimeError("REBALANCE_ROLE_LIMITS_JSON_INVALID") from exc
        if not isinstance(document, dict):
            raise RuntimeError("REBALANCE_ROLE_LIMITS_JSON_INVALID")
        try:
            limits = {
                str(user_id): RoleLimits.model_validate(value)
                for user_id, value in document.items()
            }
        except ValidationError as exc:
            raise RuntimeError("REBALANCE_ROLE_LIMITS_JSON_INVALID") from exc
        default_limits = limits.pop("*", LOCAL_ROLE_LIMITS)
        return cls(limits_by_user=limits, default_limits=default_limits)

    def get_role_limits(self, *, user_id: str) -> RoleLimits:
        return self._limits_by_user.get(user_id, self._default_limits).model_copy()
