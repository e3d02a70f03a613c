import logging
from datetime import datetime
from typing import Optional

from src.core.rebalance_requests.errors import ExternalWorkerError
from src.core.rebalance_requests.models import (
    OpportunityCompletedRequest,
    OpportunityDecision,
    OpportunityEvaluation,
    OpportunityEvaluationRequest,
    OpportunityMode,
    OpportunitySelection,
    RebalanceRequestRecord,
)
from src.core.rebalance_requests.timeouts import call_with_timeout
from src.core.rebalance_requests.workers import OpportunityWorker

DEFAULT_OPPORTUNITY_TIMEOUT_SECONDS = 180.0

logger = logging.getLogger(__name__)


class OpportunityFilterGateway:
    """Narrows candidate tickers through the opportunity worker.

    The gateway fails open: a timeout or worker error selects every candidate and
    records the reason in ``OpportunityEvaluation.error``. A broken filtering
    service never blocks a rebalance.
    """

    def __init__(
        self,
        *,
        worker: OpportunityWorker,
        mode: OpportunityMode = "SYNC",
        timeout_seconds: float = DEFAULT_OPPORTUNITY_TIMEOUT_SECONDS,
    ) -> None:
        self._worker = worker
        self._mode = mode
        self._timeout_seconds = timeout_seconds

    @property
    def mode(self) -> OpportunityMode:
        return self._mode

    def evaluate(self, *, request: RebalanceRequestRecord, now: datetime) -> OpportunityEvaluation:
        try:
            decision = call_with_timeout(
                self._worker.evaluate,
                _evaluation_request(request),
                timeout_seconds=self._timeout_seconds,
                thread_name_prefix="rebalance-opportunity",
            )
        except TimeoutError:
            return self.fail_open(
                request=request, error="OPPORTUNITY_WORKER_TIMEOUT", now=now, mode="SYNC"
            )
        except Exception as exc:
            return self._fail_open_on_error(request=request, exc=exc, now=now, mode="SYNC")
        return build_evaluation(
            candidates=request.candidate_tickers,
            decision=decision,
            mode="SYNC",
            submitted_at=now,
            completed_at=now,
        )

    def submit(self, *, request: RebalanceRequestRecord, now: datetime) -> OpportunityEvaluation:
        try:
            call_with_timeout(
                self._worker.submit,
                _evaluation_request(request),
                timeout_seconds=self._timeout_seconds,
                thread_name_prefix="rebalance-opportunity",
            )
        except TimeoutError:
            return self.fail_open(
                request=request, error="OPPORTUNITY_WORKER_TIMEOUT", now=now, mode="ASYNC"
            )
        except Exception as exc:
            return self._fail_open_on_error(request=request, exc=exc, now=now, mode="ASYNC")
        return OpportunityEvaluation(mode="ASYNC", submitted_at=now)

    def complete(
        self,
        *,
        request: RebalanceRequestRecord,
        payload: OpportunityCompletedRequest,
        now: datetime,
    ) -> OpportunityEvaluation:
        pending = request.opportunity_evaluation
        submitted_at = pending.submitted_at if pending is not None else now
        if not payload.success:
            return self.fail_open(
                request=request,
                error=f"OPPORTUNITY_WORKER_FAILED: {payload.error or 'unknown error'}",
                now=now,
                mode="ASYNC",
                submitted_at=submitted_at,
            )
        return build_evaluation(
            candidates=request.candidate_tickers,
            decision=OpportunityDecision(selections=payload.selections, reasoning=payload.reasoning),
            mode="ASYNC",
            submitted_at=submitted_at,
            completed_at=now,
        )

    def _fail_open_on_error(
        self,
        *,
        request: RebalanceRequestRecord,
        exc: Exception,
        now: datetime,
        mode: OpportunityMode,
    ) -> OpportunityEvaluation:
        if not isinstance(exc, ExternalWorkerError):
            logger.error(
                "rebalance.opportunity_worker_crashed",
                exc_info=exc,
                extra={"extra_fields": {"rebalance_request_id": request.rebalance_request_id}},
            )
        return self.fail_open(
            request=request, error=f"OPPORTUNITY_WORKER_FAILED: {exc}", now=now, mode=mode
        )

    def fail_open(
        self,
        *,
        request: RebalanceRequestRecord,
        error: str,
        now: datetime,
        mode: Optional[OpportunityMode] = None,
        submitted_at: Optional[datetime] = None,
    ) -> OpportunityEvaluation:
        logger.warning(
            "rebalance.opportunity_failed_open",
            extra={
                "extra_fields": {
                    "rebalance_request_id": request.rebalance_request_id,
                    "error": error,
                }
            },
        )
        return OpportunityEvaluation(
            mode=mode or self._mode,
            selected_tickers=list(request.candidate_tickers),
            excluded_tickers=[],
            reasoning="Opportunity evaluation unavailable; analyzing every candidate.",
            fell_back_to_all=True,
            error=error,
            submitted_at=submitted_at or now,
            completed_at=now,
        )


def build_evaluation(
    *,
    candidates: list[str],
    decision: OpportunityDecision,
    mode: OpportunityMode,
    submitted_at: datetime,
    completed_at: datetime,
) -> OpportunityEvaluation:
    """Intersect the worker's selection with the candidates, keeping candidate order."""
    by_ticker: dict[str, OpportunitySelection] = {}
    for selection in decision.selections:
        symbol = selection.ticker.strip().upper()
        if symbol in by_ticker:
            continue
        if symbol not in candidates:
            logger.warning(
                "rebalance.opportunity_ticker_ignored",
                extra={"extra_fields": {"ticker": symbol}},
            )
            continue
        by_ticker[symbol] = selection.model_copy(update={"ticker": symbol})
    selected = [ticker for ticker in candidates if ticker in by_ticker]
    return OpportunityEvaluation(
        mode=mode,
        selected_tickers=selected,
        excluded_tickers=[ticker for ticker in candidates if ticker not in by_ticker],
        selections=[by_ticker[ticker] for ticker in selected],
        reasoning=decision.reasoning,
        submitted_at=submitted_at,
        completed_at=completed_at,
    )


def _evaluation_request(request: RebalanceRequestRecord) -> OpportunityEvaluationRequest:
    return OpportunityEvaluationRequest(
        rebalance_request_id=request.rebalance_request_id,
        user_id=request.user_id,
        candidate_tickers=list(request.candidate_tickers),
        portfolio_snapshot=request.portfolio_snapshot,
        threshold_evaluation=request.threshold_evaluation,
    )
