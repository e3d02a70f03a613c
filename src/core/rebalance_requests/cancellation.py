import logging
from datetime import datetime

from src.core.rebalance_requests.errors import (
    RebalanceCanceledError,
    RebalanceInvalidStateError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.core.rebalance_requests.state_machine import apply_cancellation
from src.core.rebalance_requests.tracker import RebalanceStateTracker

logger = logging.getLogger(__name__)


class CancellationManager:
    """Cooperative cancellation.

    Cancel only raises the flag. In-flight analysis jobs keep running on the
    worker side; the request moves to ``canceled`` at the next checkpoint where no
    job is mid-dispatch, and the decision finalizer is never reached after that.
    """

    def __init__(self, *, tracker: RebalanceStateTracker) -> None:
        self._tracker = tracker

    def request_cancel(self, *, rebalance_request_id: str) -> RebalanceRequestRecord:
        def _apply(request: RebalanceRequestRecord, _now: datetime) -> bool:
            if request.status == "canceled" or request.is_canceled:
                raise RebalanceCanceledError("REBALANCE_REQUEST_CANCELED")
            if request.status in {"completed", "failed"}:
                raise RebalanceInvalidStateError(f"REBALANCE_CANCEL_NOT_ALLOWED:{request.status}")
            request.is_canceled = True
            return apply_cancellation(request)

        request, canceled_now = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_apply
        )
        logger.info(
            "rebalance.cancel_requested",
            extra={
                "extra_fields": {
                    "rebalance_request_id": rebalance_request_id,
                    "canceled_now": canceled_now,
                    "status": request.status,
                }
            },
        )
        return request

    def checkpoint(self, *, rebalance_request_id: str, boundary: str) -> RebalanceRequestRecord:
        request, canceled_now = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id,
            mutation=lambda current, _now: apply_cancellation(current),
        )
        if canceled_now:
            logger.info(
                "rebalance.canceled_at_checkpoint",
                extra={
                    "extra_fields": {
                        "rebalance_request_id": rebalance_request_id,
                        "boundary": boundary,
                    }
                },
            )
        return request
