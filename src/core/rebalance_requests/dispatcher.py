import logging
import math
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from src.core.rebalance_requests.errors import (
    ExternalWorkerError,
    RebalanceInvalidStateError,
    RebalanceValidationError,
)
from src.core.rebalance_requests.models import (
    AnalysisDispatchRequest,
    AnalysisJob,
    OpportunityEvaluation,
    RebalanceRequestRecord,
)
from src.core.rebalance_requests.state_machine import (
    apply_cancellation,
    free_dispatch_slots,
    has_queued_jobs,
    mark_job_terminal,
    settle,
    transition,
)
from src.core.rebalance_requests.tracker import RebalanceStateTracker
from src.core.rebalance_requests.workers import AnalysisWorker

DEFAULT_MAX_PARALLEL_DISPATCH = 5
DEFAULT_DISPATCH_TIMEOUT_SECONDS = 30.0
DISPATCHABLE_STATUSES = {"evaluating", "filtering", "analyzing", "failed"}
NO_OPPORTUNITIES_REASON = "NO_OPPORTUNITIES_SELECTED"
STALE_JOB_REASON = "ANALYSIS_STALE"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    request: RebalanceRequestRecord
    accepted: bool = True
    claimed: list[str] = field(default_factory=list)
    launched: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    expired: list[str] = field(default_factory=list)
    ready_to_finalize: bool = False


class AnalysisDispatcher:
    """Fans selected tickers out to the analysis worker pool.

    Each job is claimed (persisted with a coordinator-generated ``job_id`` and no
    ``dispatched_at``) before the worker is called, so a restarted coordinator
    never launches a ticker twice. Acknowledged jobs get ``dispatched_at``;
    launch failures mark that job failed and never abort the request. At most
    ``constraints.max_parallel_analysis`` jobs run at once; the rest wait as
    ``queued`` until a completion or failure frees a slot.
    """

    def __init__(
        self,
        *,
        tracker: RebalanceStateTracker,
        worker: AnalysisWorker,
        max_parallel: int = DEFAULT_MAX_PARALLEL_DISPATCH,
        timeout_seconds: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS,
    ) -> None:
        self._tracker = tracker
        self._worker = worker
        self._max_parallel = max(1, max_parallel)
        self._timeout_seconds = timeout_seconds

    def dispatch(
        self,
        *,
        rebalance_request_id: str,
        selection: Optional[list[str]] = None,
        opportunity_evaluation: Optional[OpportunityEvaluation] = None,
    ) -> DispatchOutcome:
        """Claim selected tickers lacking a live or succeeded job; launch those within quota.

        ``selection`` fixes ``selected_tickers`` the first time it is set and is
        ignored afterwards. An empty selection completes the request with no
        action. ``opportunity_evaluation`` is accepted only while filtering.
        """

        def _claim(
            request: RebalanceRequestRecord, now: datetime
        ) -> tuple[bool, list[AnalysisJob], bool]:
            if opportunity_evaluation is not None:
                if request.status != "filtering":
                    return False, [], False
                request.opportunity_evaluation = opportunity_evaluation
            # Post-filter checkpoint.
            if apply_cancellation(request) or request.is_canceled:
                return True, [], False
            if request.status not in DISPATCHABLE_STATUSES:
                raise RebalanceInvalidStateError(f"REBALANCE_DISPATCH_NOT_ALLOWED:{request.status}")
            if request.selected_tickers is None:
                chosen = list(request.candidate_tickers) if selection is None else list(selection)
                unknown = [ticker for ticker in chosen if ticker not in request.candidate_tickers]
                if unknown:
                    raise RebalanceValidationError(
                        f"REBALANCE_SELECTION_NOT_IN_CANDIDATES:{','.join(unknown)}"
                    )
                request.selected_tickers = chosen
                if not chosen:
                    transition(request, "completed", reason=NO_OPPORTUNITIES_REASON)
                    return True, [], False
            claims = claim_jobs(request, tickers=request.selected_tickers, now=now)
            if request.status != "analyzing":
                transition(request, "analyzing")
            ready = False if claims else settle(request)
            return True, claims, ready

        request, (accepted, claims, ready) = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_claim
        )
        if not claims:
            return DispatchOutcome(request=request, accepted=accepted, ready_to_finalize=ready)
        return self._launch(request=request, claims=claims)

    def redispatch_stale(
        self,
        *,
        rebalance_request_id: str,
        stale_before: datetime,
        max_attempts: int,
    ) -> DispatchOutcome:
        """Replace jobs with no callback since ``stale_before``.

        A stale job under ``max_attempts`` gets a fresh claim with a new ``job_id``
        (late callbacks for the old id are discarded); otherwise it is failed.
        """

        def _claim(
            request: RebalanceRequestRecord, now: datetime
        ) -> tuple[list[AnalysisJob], list[str], bool]:
            if request.status != "analyzing":
                return [], [], False
            claims: list[AnalysisJob] = []
            expired: list[str] = []
            for ticker in request.selected_tickers or []:
                job = request.analysis_jobs.get(ticker)
                if job is None or job.status != "dispatched":
                    continue
                if (job.dispatched_at or job.created_at) > stale_before:
                    continue
                if request.is_canceled or job.attempt >= max_attempts:
                    mark_job_terminal(
                        request,
                        ticker=ticker,
                        job_id=job.job_id,
                        succeeded=False,
                        now=now,
                        error=STALE_JOB_REASON,
                    )
                    expired.append(ticker)
                    continue
                replacement = AnalysisJob(
                    ticker=ticker,
                    job_id=new_job_id(),
                    status="dispatched",
                    attempt=job.attempt + 1,
                    created_at=now,
                )
                request.analysis_jobs[ticker] = replacement
                claims.append(replacement)
            if not request.is_canceled:
                claims.extend(claim_jobs(request, tickers=queued_tickers(request), now=now))
            ready = False if claims else settle(request)
            return claims, expired, ready

        request, (claims, expired, ready) = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_claim
        )
        if not claims:
            return DispatchOutcome(request=request, expired=expired, ready_to_finalize=ready)
        outcome = self._launch(request=request, claims=claims)
        return DispatchOutcome(
            request=outcome.request,
            claimed=outcome.claimed,
            launched=outcome.launched,
            failed=outcome.failed,
            expired=expired,
            ready_to_finalize=outcome.ready_to_finalize,
        )

    def launch_queued(self, *, rebalance_request_id: str) -> DispatchOutcome:
        """Start queued jobs while the role quota has free slots."""

        def _claim(request: RebalanceRequestRecord, now: datetime) -> list[AnalysisJob]:
            if request.status != "analyzing" or request.is_canceled:
                return []
            return claim_jobs(request, tickers=queued_tickers(request), now=now)

        request, claims = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_claim
        )
        if not claims:
            return DispatchOutcome(request=request)
        return self._launch(request=request, claims=claims)

    def _launch(
        self, *, request: RebalanceRequestRecord, claims: list[AnalysisJob]
    ) -> DispatchOutcome:
        workers = min(self._max_parallel, len(claims))
        # Queued launches wait for a free slot, so the overall deadline scales with waves.
        deadline = time.monotonic() + self._timeout_seconds * math.ceil(len(claims) / workers)
        acknowledged: list[str] = []
        failures: dict[str, str] = {}
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rebalance-dispatch")
        try:
            futures: dict[str, Future] = {
                job.ticker: pool.submit(
                    self._worker.dispatch,
                    AnalysisDispatchRequest(
                        rebalance_request_id=request.rebalance_request_id,
                        user_id=request.user_id,
                        ticker=job.ticker,
                        job_id=job.job_id,
                        attempt=job.attempt,
                    ),
                )
                for job in claims
            }
            for ticker, future in futures.items():
                try:
                    future.result(timeout=max(0.0, deadline - time.monotonic()))
                except TimeoutError:
                    failures[ticker] = "ANALYSIS_DISPATCH_TIMEOUT"
                except ExternalWorkerError as exc:
                    failures[ticker] = f"ANALYSIS_DISPATCH_FAILED: {exc}"
                except Exception as exc:
                    logger.exception(
                        "rebalance.dispatch_crashed",
                        extra={
                            "extra_fields": {
                                "rebalance_request_id": request.rebalance_request_id,
                                "ticker": ticker,
                            }
                        },
                    )
                    failures[ticker] = f"ANALYSIS_DISPATCH_FAILED: {exc}"
                else:
                    acknowledged.append(ticker)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        job_ids = {job.ticker: job.job_id for job in claims}

        def _record(current: RebalanceRequestRecord, now: datetime) -> bool:
            for ticker in acknowledged:
                job = current.analysis_jobs.get(ticker)
                if (
                    job is not None
                    and job.job_id == job_ids[ticker]
                    and job.status == "dispatched"
                    and job.dispatched_at is None
                ):
                    job.dispatched_at = now
            for ticker, reason in failures.items():
                mark_job_terminal(
                    current,
                    ticker=ticker,
                    job_id=job_ids[ticker],
                    succeeded=False,
                    now=now,
                    error=reason,
                )
            # Post-dispatch checkpoint.
            return settle(current)

        updated, ready = self._tracker.mutate(
            rebalance_request_id=request.rebalance_request_id, mutation=_record
        )
        logger.info(
            "rebalance.dispatched",
            extra={
                "extra_fields": {
                    "rebalance_request_id": request.rebalance_request_id,
                    "launched": acknowledged,
                    "failed": sorted(failures),
                }
            },
        )
        outcome = DispatchOutcome(
            request=updated,
            claimed=[job.ticker for job in claims],
            launched=acknowledged,
            failed=failures,
            ready_to_finalize=ready,
        )
        if not failures or ready or not has_queued_jobs(updated):
            return outcome
        # Failed launches free quota slots that no callback will release.
        follow_up = self.launch_queued(rebalance_request_id=request.rebalance_request_id)
        return DispatchOutcome(
            request=follow_up.request,
            claimed=outcome.claimed + follow_up.claimed,
            launched=outcome.launched + follow_up.launched,
            failed={**outcome.failed, **follow_up.failed},
            ready_to_finalize=follow_up.ready_to_finalize,
        )


def new_job_id() -> str:
    return f"aj_{uuid.uuid4().hex[:12]}"


def queued_tickers(request: RebalanceRequestRecord) -> list[str]:
    return [
        ticker
        for ticker in request.selected_tickers or []
        if ticker in request.analysis_jobs and request.analysis_jobs[ticker].status == "queued"
    ]


def claim_jobs(
    request: RebalanceRequestRecord, *, tickers: list[str], now: datetime
) -> list[AnalysisJob]:
    """Claim jobs for ``tickers`` lacking a live or succeeded job, in order.

    Claims beyond the role's parallel quota are stored as ``queued`` and are
    not returned; a queued job keeps its id and attempt when it is promoted.
    """
    slots = free_dispatch_slots(request)
    claims: list[AnalysisJob] = []
    for ticker in tickers:
        existing = request.analysis_jobs.get(ticker)
        if existing is not None and existing.status in {"dispatched", "succeeded"}:
            continue
        launch = slots is None or slots > 0
        if existing is not None and existing.status == "queued":
            if not launch:
                continue
            job = existing.model_copy(update={"status": "dispatched", "created_at": now})
        else:
            job = AnalysisJob(
                ticker=ticker,
                job_id=new_job_id(),
                status="dispatched" if launch else "queued",
                attempt=existing.attempt + 1 if existing is not None else 1,
                created_at=now,
            )
        request.analysis_jobs[ticker] = job
        if launch:
            claims.append(job)
            if slots is not None:
                slots -= 1
    return claims
