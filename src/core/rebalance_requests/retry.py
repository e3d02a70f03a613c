import logging

from src.core.rebalance_requests.dispatcher import AnalysisDispatcher, DispatchOutcome
from src.core.rebalance_requests.errors import (
    RebalanceCanceledError,
    RebalanceInvalidStateError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.core.rebalance_requests.tracker import RebalanceStateTracker

RETRYABLE_STATUSES = {"failed", "analyzing"}

logger = logging.getLogger(__name__)


def retry_targets(request: RebalanceRequestRecord) -> list[str]:
    """Selected tickers whose job failed or was never created."""
    tickers = (
        request.selected_tickers
        if request.selected_tickers is not None
        else request.candidate_tickers
    )
    targets: list[str] = []
    for ticker in tickers:
        job = request.analysis_jobs.get(ticker)
        if job is None or job.status == "failed":
            targets.append(ticker)
    return targets


class RetryCoordinator:
    def __init__(self, *, tracker: RebalanceStateTracker, dispatcher: AnalysisDispatcher) -> None:
        self._tracker = tracker
        self._dispatcher = dispatcher

    def retry(self, *, rebalance_request_id: str) -> DispatchOutcome:
        """Re-dispatch failed or missing jobs, leaving succeeded jobs untouched.

        A ``failed`` request with nothing to re-dispatch failed in synthesis; it
        re-enters ``analyzing`` and moves straight on to aggregation.
        """
        request = self._tracker.load(rebalance_request_id=rebalance_request_id)
        if request.status == "canceled" or request.is_canceled:
            raise RebalanceCanceledError("REBALANCE_REQUEST_CANCELED")
        if request.status not in RETRYABLE_STATUSES:
            raise RebalanceInvalidStateError(f"REBALANCE_RETRY_NOT_ALLOWED:{request.status}")
        targets = retry_targets(request)
        if not targets and request.status == "analyzing":
            raise RebalanceInvalidStateError("REBALANCE_RETRY_NOTHING_TO_RETRY")

        outcome = self._dispatcher.dispatch(rebalance_request_id=rebalance_request_id)
        logger.info(
            "rebalance.retried",
            extra={
                "extra_fields": {
                    "rebalance_request_id": rebalance_request_id,
                    "targets": targets,
                    "claimed": outcome.claimed,
                    "refinalize": not targets,
                }
            },
        )
        return outcome
