import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from src.core.rebalance_requests.cancellation import CancellationManager
from src.core.rebalance_requests.constraints import (
    DEFAULT_MAX_POSITION_SIZE_PCT,
    DEFAULT_MIN_POSITION_SIZE_PCT,
    DEFAULT_REBALANCE_THRESHOLD_PCT,
    normalize_tickers,
    resolve_constraints,
)
from src.core.rebalance_requests.dispatcher import (
    DEFAULT_DISPATCH_TIMEOUT_SECONDS,
    DEFAULT_MAX_PARALLEL_DISPATCH,
    AnalysisDispatcher,
    DispatchOutcome,
)
from src.core.rebalance_requests.errors import RebalanceCanceledError
from src.core.rebalance_requests.finalizer import (
    DEFAULT_MIN_SUCCESS_RATIO,
    DEFAULT_SYNTHESIS_TIMEOUT_SECONDS,
    DecisionFinalizer,
)
from src.core.rebalance_requests.models import (
    AnalysisCompletedRequest,
    OpportunityCompletedRequest,
    OpportunityEvaluation,
    OpportunityMode,
    RebalanceActionResponse,
    RebalanceRequestDetailResponse,
    RebalanceRequestRecord,
    ReconciliationSummary,
    StartRebalanceRequest,
)
from src.core.rebalance_requests.opportunity import (
    DEFAULT_OPPORTUNITY_TIMEOUT_SECONDS,
    OpportunityFilterGateway,
)
from src.core.rebalance_requests.reconciliation import (
    DEFAULT_MAX_DISPATCH_ATTEMPTS,
    DEFAULT_STALE_AFTER,
    ReconciliationSweep,
)
from src.core.rebalance_requests.repository import RebalanceRequestRepository
from src.core.rebalance_requests.retry import RetryCoordinator
from src.core.rebalance_requests.state_machine import (
    apply_cancellation,
    has_queued_jobs,
    transition,
)
from src.core.rebalance_requests.threshold import evaluate_threshold
from src.core.rebalance_requests.tracker import RebalanceStateTracker
from src.core.rebalance_requests.workers import (
    AnalysisWorker,
    OpportunityWorker,
    PortfolioDecisionRoutine,
    RoleLimitsProvider,
)

THRESHOLD_NOT_EXCEEDED_REASON = "THRESHOLD_NOT_EXCEEDED"

logger = logging.getLogger(__name__)


class RebalanceCoordinatorService:
    def __init__(
        self,
        *,
        repository: RebalanceRequestRepository,
        role_limits: RoleLimitsProvider,
        analysis_worker: AnalysisWorker,
        opportunity_worker: OpportunityWorker,
        decision_routine: PortfolioDecisionRoutine,
        opportunity_mode: OpportunityMode = "SYNC",
        opportunity_timeout_seconds: float = DEFAULT_OPPORTUNITY_TIMEOUT_SECONDS,
        dispatch_timeout_seconds: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS,
        synthesis_timeout_seconds: float = DEFAULT_SYNTHESIS_TIMEOUT_SECONDS,
        max_parallel_dispatch: int = DEFAULT_MAX_PARALLEL_DISPATCH,
        min_success_ratio: Decimal = DEFAULT_MIN_SUCCESS_RATIO,
        default_threshold_pct: Decimal = DEFAULT_REBALANCE_THRESHOLD_PCT,
        default_min_position_pct: Decimal = DEFAULT_MIN_POSITION_SIZE_PCT,
        default_max_position_pct: Decimal = DEFAULT_MAX_POSITION_SIZE_PCT,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        max_dispatch_attempts: int = DEFAULT_MAX_DISPATCH_ATTEMPTS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._role_limits = role_limits
        self._default_threshold_pct = default_threshold_pct
        self._default_min_position_pct = default_min_position_pct
        self._default_max_position_pct = default_max_position_pct
        self._tracker = RebalanceStateTracker(repository=repository, clock=clock)
        self._cancellation = CancellationManager(tracker=self._tracker)
        self._gateway = OpportunityFilterGateway(
            worker=opportunity_worker,
            mode=opportunity_mode,
            timeout_seconds=opportunity_timeout_seconds,
        )
        self._dispatcher = AnalysisDispatcher(
            tracker=self._tracker,
            worker=analysis_worker,
            max_parallel=max_parallel_dispatch,
            timeout_seconds=dispatch_timeout_seconds,
        )
        self._finalizer = DecisionFinalizer(
            tracker=self._tracker,
            routine=decision_routine,
            min_success_ratio=min_success_ratio,
            timeout_seconds=synthesis_timeout_seconds,
        )
        self._retry = RetryCoordinator(tracker=self._tracker, dispatcher=self._dispatcher)
        self._sweep = ReconciliationSweep(
            tracker=self._tracker,
            dispatcher=self._dispatcher,
            finalizer=self._finalizer,
            gateway=self._gateway,
            stale_after=stale_after,
            max_dispatch_attempts=max_dispatch_attempts,
        )

    def start_rebalance(self, request: StartRebalanceRequest) -> RebalanceActionResponse:
        tickers = normalize_tickers(request.tickers)
        constraints = resolve_constraints(
            raw=request.constraints,
            tickers=tickers,
            role_limits=self._role_limits.get_role_limits(user_id=request.user_id),
            default_threshold_pct=self._default_threshold_pct,
            default_min_position_pct=self._default_min_position_pct,
            default_max_position_pct=self._default_max_position_pct,
        )
        evaluation = evaluate_threshold(
            snapshot=request.portfolio_snapshot, constraints=constraints, tickers=tickers
        )
        now = self._tracker.now()
        record = self._tracker.create(
            RebalanceRequestRecord(
                rebalance_request_id=f"rbr_{uuid.uuid4().hex[:12]}",
                user_id=request.user_id,
                status="pending",
                constraints=constraints,
                candidate_tickers=tickers,
                portfolio_snapshot=request.portfolio_snapshot,
                created_at=now,
                updated_at=now,
            )
        )
        request_id = record.rebalance_request_id
        logger.info(
            "rebalance.started",
            extra={
                "extra_fields": {
                    "rebalance_request_id": request_id,
                    "user_id": request.user_id,
                    "tickers": tickers,
                    "max_drift_pct": str(evaluation.max_drift_pct),
                    "force_full_analysis": evaluation.force_full_analysis,
                }
            },
        )

        def _route(current: RebalanceRequestRecord, _now: datetime) -> str:
            if apply_cancellation(current):
                return "canceled"
            transition(current, "evaluating")
            current.threshold_evaluation = evaluation
            if evaluation.force_full_analysis:
                return "dispatch"
            if constraints.skip_opportunity_agent:
                current.selected_tickers = []
                transition(current, "completed", reason=THRESHOLD_NOT_EXCEEDED_REASON)
                return "no_action"
            transition(current, "filtering")
            return "filter"

        record, route = self._tracker.mutate(rebalance_request_id=request_id, mutation=_route)
        if route == "dispatch":
            outcome = self._dispatcher.dispatch(
                rebalance_request_id=request_id, selection=list(tickers)
            )
            record = self._finish_dispatch(outcome)
        elif route == "filter":
            record = self._run_opportunity_filter(record)
        return _action_response(record, message=_start_message(record))

    def analysis_completed(
        self, *, rebalance_request_id: str, payload: AnalysisCompletedRequest
    ) -> RebalanceActionResponse:
        outcome = self._tracker.record_analysis_result(
            rebalance_request_id=rebalance_request_id,
            ticker=payload.ticker,
            success=payload.success,
            result=payload.result,
            error=payload.error,
            job_id=payload.job_id,
        )
        record = outcome.request
        if outcome.ready_to_finalize:
            record = self._finalizer.finalize(rebalance_request_id=rebalance_request_id)
        elif outcome.accepted and has_queued_jobs(record):
            record = self._finish_dispatch(
                self._dispatcher.launch_queued(rebalance_request_id=rebalance_request_id)
            )
        if outcome.accepted:
            message = "Analysis recorded."
        else:
            message = "Duplicate or superseded callback discarded."
        return _action_response(record, accepted=outcome.accepted, message=message)

    def retry_rebalance(self, *, rebalance_request_id: str) -> RebalanceActionResponse:
        outcome = self._retry.retry(rebalance_request_id=rebalance_request_id)
        record = self._finish_dispatch(outcome)
        if outcome.claimed:
            message = f"Retrying {len(outcome.claimed)} analyses."
        else:
            message = "Retrying finalization."
        return _action_response(record, message=message)

    def complete_rebalance(self, *, rebalance_request_id: str) -> RebalanceActionResponse:
        self._cancellation.checkpoint(
            rebalance_request_id=rebalance_request_id, boundary="complete-rebalance"
        )
        record, ready = self._tracker.check_completion(rebalance_request_id=rebalance_request_id)
        if record.status == "canceled":
            raise RebalanceCanceledError("REBALANCE_REQUEST_CANCELED")
        if ready or record.status == "aggregating":
            record = self._finalizer.finalize(rebalance_request_id=rebalance_request_id)
        return _action_response(record, message="Finalization check complete.")

    def opportunity_completed(
        self, *, rebalance_request_id: str, payload: OpportunityCompletedRequest
    ) -> RebalanceActionResponse:
        record = self._tracker.load(rebalance_request_id=rebalance_request_id)
        if record.status == "canceled":
            raise RebalanceCanceledError("REBALANCE_REQUEST_CANCELED")
        if record.status != "filtering":
            return _action_response(
                record,
                accepted=False,
                message="Request is not awaiting opportunity evaluation.",
            )
        evaluation = self._gateway.complete(
            request=record, payload=payload, now=self._tracker.now()
        )
        record, accepted = self._apply_opportunity_evaluation(record, evaluation)
        if accepted:
            message = f"Opportunity evaluation selected {len(evaluation.selected_tickers)} tickers."
        else:
            message = "Request is not awaiting opportunity evaluation."
        return _action_response(record, accepted=accepted, message=message)

    def cancel_rebalance(self, *, rebalance_request_id: str) -> RebalanceActionResponse:
        record = self._cancellation.request_cancel(rebalance_request_id=rebalance_request_id)
        if record.status == "canceled":
            message = "Rebalance canceled."
        else:
            message = "Cancellation requested; the request stops at its next checkpoint."
        return _action_response(record, message=message)

    def get_request(self, *, rebalance_request_id: str) -> RebalanceRequestDetailResponse:
        record = self._tracker.load(rebalance_request_id=rebalance_request_id)
        return RebalanceRequestDetailResponse(
            request=record,
            total_stocks=record.total_stocks,
            stocks_analyzed=record.stocks_analyzed,
        )

    def reconcile(self, *, now: Optional[datetime] = None) -> ReconciliationSummary:
        return self._sweep.run(now=now)

    def _run_opportunity_filter(self, record: RebalanceRequestRecord) -> RebalanceRequestRecord:
        now = self._tracker.now()
        if self._gateway.mode == "SYNC":
            evaluation = self._gateway.evaluate(request=record, now=now)
            record, _ = self._apply_opportunity_evaluation(record, evaluation)
            return record
        evaluation = self._gateway.submit(request=record, now=now)
        if evaluation.completed_at is not None:
            record, _ = self._apply_opportunity_evaluation(record, evaluation)
            return record

        def _await(current: RebalanceRequestRecord, _now: datetime) -> None:
            if current.status == "filtering" and current.opportunity_evaluation is None:
                current.opportunity_evaluation = evaluation
            # Post-filter checkpoint.
            apply_cancellation(current)

        record, _ = self._tracker.mutate(
            rebalance_request_id=record.rebalance_request_id, mutation=_await
        )
        return record

    def _apply_opportunity_evaluation(
        self, record: RebalanceRequestRecord, evaluation: OpportunityEvaluation
    ) -> tuple[RebalanceRequestRecord, bool]:
        outcome = self._dispatcher.dispatch(
            rebalance_request_id=record.rebalance_request_id,
            selection=evaluation.selected_tickers,
            opportunity_evaluation=evaluation,
        )
        return self._finish_dispatch(outcome), outcome.accepted

    def _finish_dispatch(self, outcome: DispatchOutcome) -> RebalanceRequestRecord:
        if outcome.ready_to_finalize:
            return self._finalizer.finalize(
                rebalance_request_id=outcome.request.rebalance_request_id
            )
        return outcome.request


def _action_response(
    record: RebalanceRequestRecord,
    *,
    accepted: bool = True,
    message: Optional[str] = None,
) -> RebalanceActionResponse:
    return RebalanceActionResponse(
        rebalance_request_id=record.rebalance_request_id,
        status=record.status,
        accepted=accepted,
        message=message,
        status_reason=record.status_reason,
        selected_tickers=record.selected_tickers,
    )


def _start_message(record: RebalanceRequestRecord) -> str:
    if record.status == "completed" and not record.trade_actions:
        return "No rebalance action needed."
    if record.status == "filtering":
        return "Awaiting opportunity evaluation."
    if record.status == "analyzing":
        queued = sum(1 for job in record.analysis_jobs.values() if job.status == "queued")
        dispatched = len(record.analysis_jobs) - queued
        if queued:
            return f"Dispatched {dispatched} analyses; {queued} queued."
        return f"Dispatched {dispatched} analyses."
    return f"Rebalance request is {record.status}."
