import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from src.core.rebalance_requests.errors import (
    RebalanceNotFoundError,
    RebalanceValidationError,
    RebalanceVersionConflictError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.core.rebalance_requests.repository import RebalanceRequestRepository
from src.core.rebalance_requests.state_machine import mark_job_terminal, settle

DEFAULT_MAX_WRITE_ATTEMPTS = 5

logger = logging.getLogger(__name__)

T = TypeVar("T")
Mutation = Callable[[RebalanceRequestRecord, datetime], T]


@dataclass(frozen=True)
class CallbackOutcome:
    request: RebalanceRequestRecord
    accepted: bool
    ready_to_finalize: bool


class RebalanceStateTracker:
    """Owns every read-modify-write of a rebalance request.

    A mutation receives a private copy of the aggregate plus the write timestamp,
    edits it in place and returns a value. The copy is saved with a
    compare-and-swap on ``version``; on conflict the aggregate is re-read and the
    mutation re-run, so mutations must not call external services. Mutations that
    leave the aggregate unchanged do not write.
    """

    def __init__(
        self,
        *,
        repository: RebalanceRequestRepository,
        clock: Optional[Callable[[], datetime]] = None,
        max_write_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now
        self._max_write_attempts = max_write_attempts

    @property
    def repository(self) -> RebalanceRequestRepository:
        return self._repository

    def now(self) -> datetime:
        return self._clock()

    def create(self, request: RebalanceRequestRecord) -> RebalanceRequestRecord:
        return self._repository.create_request(request)

    def load(self, *, rebalance_request_id: str) -> RebalanceRequestRecord:
        request = self._repository.get_request(rebalance_request_id=rebalance_request_id)
        if request is None:
            raise RebalanceNotFoundError("REBALANCE_REQUEST_NOT_FOUND")
        return request

    def mutate(
        self, *, rebalance_request_id: str, mutation: Mutation[T]
    ) -> tuple[RebalanceRequestRecord, T]:
        for attempt in range(1, self._max_write_attempts + 1):
            current = self.load(rebalance_request_id=rebalance_request_id)
            working = current.model_copy(deep=True)
            now = self._clock()
            outcome = mutation(working, now)
            if working == current:
                return current, outcome
            working.updated_at = now
            try:
                saved = self._repository.save_request(working, expected_version=current.version)
            except RebalanceVersionConflictError:
                logger.info(
                    "rebalance.write_conflict",
                    extra={
                        "extra_fields": {
                            "rebalance_request_id": rebalance_request_id,
                            "attempt": attempt,
                        }
                    },
                )
                continue
            if saved.status != current.status:
                logger.info(
                    "rebalance.status_changed",
                    extra={
                        "extra_fields": {
                            "rebalance_request_id": rebalance_request_id,
                            "from_status": current.status,
                            "to_status": saved.status,
                            "status_reason": saved.status_reason,
                        }
                    },
                )
            return saved, outcome
        raise RebalanceVersionConflictError("REBALANCE_REQUEST_VERSION_CONFLICT")

    def record_analysis_result(
        self,
        *,
        rebalance_request_id: str,
        ticker: str,
        success: bool,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> CallbackOutcome:
        symbol = ticker.strip().upper()
        if not symbol:
            raise RebalanceValidationError("ANALYSIS_CALLBACK_TICKER_REQUIRED")

        def _apply(request: RebalanceRequestRecord, now: datetime) -> tuple[bool, bool]:
            job = request.analysis_jobs.get(symbol)
            if job is None:
                return False, False
            if job_id is not None and job.job_id != job_id:
                return False, False
            if job.status == "queued":
                return False, False
            recorded = mark_job_terminal(
                request,
                ticker=symbol,
                job_id=job.job_id,
                succeeded=success,
                now=now,
                result=result,
                error=error,
            )
            if not recorded:
                return False, False
            return True, settle(request)

        request, (accepted, ready) = self.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_apply
        )
        if not accepted:
            logger.warning(
                "rebalance.callback_discarded",
                extra={
                    "extra_fields": {
                        "rebalance_request_id": rebalance_request_id,
                        "ticker": symbol,
                        "job_id": job_id,
                    }
                },
            )
        return CallbackOutcome(request=request, accepted=accepted, ready_to_finalize=ready)

    def check_completion(
        self, *, rebalance_request_id: str
    ) -> tuple[RebalanceRequestRecord, bool]:
        return self.mutate(
            rebalance_request_id=rebalance_request_id,
            mutation=lambda request, _now: settle(request),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
