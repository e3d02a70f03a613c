import logging
from datetime import datetime, timedelta
from typing import Optional

from src.core.rebalance_requests.dispatcher import AnalysisDispatcher
from src.core.rebalance_requests.errors import RebalanceCoordinationError
from src.core.rebalance_requests.finalizer import DecisionFinalizer
from src.core.rebalance_requests.models import ReconciliationSummary, RebalanceRequestRecord
from src.core.rebalance_requests.opportunity import OpportunityFilterGateway
from src.core.rebalance_requests.state_machine import (
    apply_cancellation,
    jobs_resolved,
    transition,
)
from src.core.rebalance_requests.tracker import RebalanceStateTracker

DEFAULT_STALE_AFTER = timedelta(seconds=210)
DEFAULT_MAX_DISPATCH_ATTEMPTS = 2
DEFAULT_SWEEP_BATCH_SIZE = 200
RUNNING_STATUSES = {"pending", "evaluating", "filtering", "analyzing", "aggregating", "finalizing"}

logger = logging.getLogger(__name__)


class ReconciliationSweep:
    """Low-frequency safety net for lost callbacks and stalled requests.

    The push path (analysis-completed) remains the primary completion route. The
    sweep re-reads every running request from the store, re-derives completion,
    applies pending cancellations and recovers requests idle past the staleness
    window.
    """

    def __init__(
        self,
        *,
        tracker: RebalanceStateTracker,
        dispatcher: AnalysisDispatcher,
        finalizer: DecisionFinalizer,
        gateway: OpportunityFilterGateway,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        max_dispatch_attempts: int = DEFAULT_MAX_DISPATCH_ATTEMPTS,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
    ) -> None:
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._finalizer = finalizer
        self._gateway = gateway
        self._stale_after = stale_after
        self._max_dispatch_attempts = max_dispatch_attempts
        self._batch_size = batch_size

    def run(self, *, now: Optional[datetime] = None) -> ReconciliationSummary:
        now = now or self._tracker.now()
        summary = ReconciliationSummary()
        requests = self._tracker.repository.list_requests(
            statuses=set(RUNNING_STATUSES), limit=self._batch_size
        )
        for request in requests:
            summary.scanned += 1
            try:
                self._reconcile(request, now=now, summary=summary)
            except RebalanceCoordinationError:
                summary.errors += 1
                logger.exception(
                    "rebalance.reconcile_failed",
                    extra={"extra_fields": {"rebalance_request_id": request.rebalance_request_id}},
                )
        logger.info("rebalance.reconciled", extra={"extra_fields": summary.model_dump()})
        return summary

    def _reconcile(
        self, request: RebalanceRequestRecord, *, now: datetime, summary: ReconciliationSummary
    ) -> None:
        request_id = request.rebalance_request_id
        stale_before = now - self._stale_after
        stale = request.updated_at <= stale_before

        if request.is_canceled:
            current, canceled_now = self._tracker.mutate(
                rebalance_request_id=request_id,
                mutation=lambda record, _now: apply_cancellation(record),
            )
            if canceled_now:
                summary.canceled += 1
                return
            request = current

        if request.status == "analyzing":
            if jobs_resolved(request):
                _, ready = self._tracker.check_completion(rebalance_request_id=request_id)
                if ready:
                    self._finalize(request_id, summary)
                return
            outcome = self._dispatcher.redispatch_stale(
                rebalance_request_id=request_id,
                stale_before=stale_before,
                max_attempts=self._max_dispatch_attempts,
            )
            summary.redispatched += len(outcome.claimed)
            summary.jobs_failed += len(outcome.expired) + len(outcome.failed)
            if outcome.request.status == "canceled":
                summary.canceled += 1
            if outcome.ready_to_finalize:
                self._finalize(request_id, summary)
            return

        if request.status == "aggregating":
            self._finalize(request_id, summary)
            return

        if not stale:
            return

        if request.status == "filtering":
            evaluation = self._gateway.fail_open(
                request=request,
                error="OPPORTUNITY_EVALUATION_STALE",
                now=now,
                submitted_at=(
                    request.opportunity_evaluation.submitted_at
                    if request.opportunity_evaluation is not None
                    else None
                ),
            )
            outcome = self._dispatcher.dispatch(
                rebalance_request_id=request_id,
                selection=evaluation.selected_tickers,
                opportunity_evaluation=evaluation,
            )
            summary.failed_open += 1
            if outcome.ready_to_finalize:
                self._finalize(request_id, summary)
            return

        reason = "FINALIZATION_STALE" if request.status == "finalizing" else "REQUEST_STALE"
        expected_status = request.status

        def _fail(record: RebalanceRequestRecord, _now: datetime) -> bool:
            if record.status != expected_status:
                return False
            transition(record, "failed", reason=reason)
            return True

        _, failed = self._tracker.mutate(rebalance_request_id=request_id, mutation=_fail)
        if failed:
            summary.failed += 1

    def _finalize(self, request_id: str, summary: ReconciliationSummary) -> None:
        finalized = self._finalizer.finalize(rebalance_request_id=request_id)
        if finalized.status == "completed":
            summary.finalized += 1
        elif finalized.status == "failed":
            summary.failed += 1
        elif finalized.status == "canceled":
            summary.canceled += 1
