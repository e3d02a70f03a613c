import time
from datetime import timedelta
from threading import Event, Lock

import pytest

from src.core.rebalance_requests.dispatcher import AnalysisDispatcher
from src.core.rebalance_requests.errors import (
    RebalanceInvalidStateError,
    RebalanceValidationError,
)
from src.core.rebalance_requests.models import OpportunityEvaluation
from src.core.rebalance_requests.tracker import RebalanceStateTracker
from src.infrastructure.rebalance_requests import InMemoryRebalanceRequestRepository
from tests.factories import T0, FakeAnalysisWorker, FixedClock, seed_request

REQUEST_ID = "rbr_000000000001"


class _PeakTrackingWorker(FakeAnalysisWorker):
    def __init__(self) -> None:
        super().__init__()
        self._active_lock = Lock()
        self.active = 0
        self.peak = 0

    def dispatch(self, request) -> None:
        with self._active_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.02)
        with self._active_lock:
            self.active -= 1
        super().dispatch(request)


def _dispatcher(worker=None, **options):
    repository = InMemoryRebalanceRequestRepository()
    clock = FixedClock()
    tracker = RebalanceStateTracker(repository=repository, clock=clock)
    worker = worker or FakeAnalysisWorker()
    return repository, worker, clock, AnalysisDispatcher(tracker=tracker, worker=worker, **options)


def test_dispatch_claims_and_acknowledges_every_selected_ticker():
    repository, worker, _, dispatcher = _dispatcher()
    seed_request(repository)

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert outcome.claimed == ["AAPL", "MSFT", "NVDA"]
    assert sorted(outcome.launched) == ["AAPL", "MSFT", "NVDA"]
    request = repository.get_request(rebalance_request_id=REQUEST_ID)
    assert request.status == "analyzing"
    assert request.selected_tickers == ["AAPL", "MSFT", "NVDA"]
    assert all(job.job_id.startswith("aj_") for job in request.analysis_jobs.values())
    assert all(job.dispatched_at == T0 for job in request.analysis_jobs.values())
    assert {item.job_id for item in worker.dispatched} == set(request.analysis_ids)


def test_second_dispatch_never_relaunches_live_jobs():
    repository, worker, _, dispatcher = _dispatcher()
    seed_request(repository)

    dispatcher.dispatch(rebalance_request_id=REQUEST_ID)
    again = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert again.claimed == []
    assert again.accepted is True
    assert len(worker.dispatched) == 3


def test_launch_failure_marks_only_that_job_failed():
    repository, _, _, dispatcher = _dispatcher(FakeAnalysisWorker(failures={"MSFT": "queue full"}))
    seed_request(repository)

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert outcome.failed == {"MSFT": "ANALYSIS_DISPATCH_FAILED: queue full"}
    request = outcome.request
    assert request.status == "analyzing"
    assert request.analysis_jobs["MSFT"].status == "failed"
    assert request.analysis_jobs["MSFT"].error == "ANALYSIS_DISPATCH_FAILED: queue full"
    assert request.analysis_jobs["AAPL"].status == "dispatched"
    assert outcome.ready_to_finalize is False


def test_every_launch_failing_moves_request_to_aggregating():
    worker = FakeAnalysisWorker(failures={"AAPL": "down", "MSFT": "down"})
    repository, _, _, dispatcher = _dispatcher(worker)
    seed_request(repository, tickers=("AAPL", "MSFT"))

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert outcome.request.status == "aggregating"
    assert outcome.ready_to_finalize is True


def test_launch_timeout_fails_the_job():
    release = Event()
    repository, _, _, dispatcher = _dispatcher(
        FakeAnalysisWorker(block=release), timeout_seconds=0.05
    )
    seed_request(repository, tickers=("AAPL",))
    try:
        outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)
    finally:
        release.set()

    assert outcome.failed == {"AAPL": "ANALYSIS_DISPATCH_TIMEOUT"}
    assert outcome.request.analysis_jobs["AAPL"].status == "failed"


def test_parallel_launches_respect_the_cap():
    worker = _PeakTrackingWorker()
    repository, _, _, dispatcher = _dispatcher(worker, max_parallel=2)
    seed_request(repository, tickers=("AAPL", "MSFT", "NVDA", "AMZN"))

    dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert worker.peak <= 2
    assert worker.tickers() == ["AAPL", "AMZN", "MSFT", "NVDA"]


def test_empty_selection_completes_without_action():
    repository, worker, _, dispatcher = _dispatcher()
    seed_request(repository, status="filtering")

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID, selection=[])

    assert outcome.request.status == "completed"
    assert outcome.request.status_reason == "NO_OPPORTUNITIES_SELECTED"
    assert outcome.request.selected_tickers == []
    assert worker.dispatched == []


def test_selection_must_come_from_candidates():
    repository, _, _, dispatcher = _dispatcher()
    seed_request(repository)

    with pytest.raises(RebalanceValidationError) as exc:
        dispatcher.dispatch(rebalance_request_id=REQUEST_ID, selection=["AAPL", "TSLA"])

    assert str(exc.value) == "REBALANCE_SELECTION_NOT_IN_CANDIDATES:TSLA"


def test_dispatch_rejected_for_completed_request():
    repository, _, _, dispatcher = _dispatcher()
    seed_request(repository, status="completed")

    with pytest.raises(RebalanceInvalidStateError) as exc:
        dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert str(exc.value) == "REBALANCE_DISPATCH_NOT_ALLOWED:completed"


def test_opportunity_evaluation_is_ignored_outside_filtering():
    repository, worker, _, dispatcher = _dispatcher()
    seed_request(repository, status="analyzing", selected_tickers=["AAPL"])

    outcome = dispatcher.dispatch(
        rebalance_request_id=REQUEST_ID,
        selection=["AAPL"],
        opportunity_evaluation=OpportunityEvaluation(mode="ASYNC", submitted_at=T0),
    )

    assert outcome.accepted is False
    assert outcome.request.opportunity_evaluation is None
    assert worker.dispatched == []


def test_flagged_request_is_canceled_instead_of_dispatched():
    repository, worker, _, dispatcher = _dispatcher()
    seed_request(repository, status="filtering", is_canceled=True)

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID, selection=["AAPL"])

    assert outcome.request.status == "canceled"
    assert outcome.request.status_reason == "CANCELED_BY_USER"
    assert worker.dispatched == []


def test_stale_job_is_replaced_with_a_new_job_id():
    repository, worker, clock, dispatcher = _dispatcher()
    seed_request(repository, tickers=("AAPL", "MSFT"))
    first = dispatcher.dispatch(rebalance_request_id=REQUEST_ID).request
    clock.advance(minutes=5)

    outcome = dispatcher.redispatch_stale(
        rebalance_request_id=REQUEST_ID,
        stale_before=clock() - timedelta(minutes=1),
        max_attempts=2,
    )

    assert outcome.claimed == ["AAPL", "MSFT"]
    replaced = outcome.request.analysis_jobs["AAPL"]
    assert replaced.attempt == 2
    assert replaced.job_id != first.analysis_jobs["AAPL"].job_id
    assert len(worker.dispatched) == 4


def test_stale_job_at_max_attempts_is_failed():
    repository, worker, clock, dispatcher = _dispatcher()
    seed_request(repository, tickers=("AAPL",))
    dispatcher.dispatch(rebalance_request_id=REQUEST_ID)
    clock.advance(minutes=5)

    outcome = dispatcher.redispatch_stale(
        rebalance_request_id=REQUEST_ID, stale_before=clock(), max_attempts=1
    )

    assert outcome.expired == ["AAPL"]
    assert outcome.request.analysis_jobs["AAPL"].error == "ANALYSIS_STALE"
    assert outcome.request.status == "aggregating"
    assert outcome.ready_to_finalize is True
    assert len(worker.dispatched) == 1


def test_recent_jobs_are_not_redispatched():
    repository, worker, clock, dispatcher = _dispatcher()
    seed_request(repository, tickers=("AAPL",))
    dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    outcome = dispatcher.redispatch_stale(
        rebalance_request_id=REQUEST_ID,
        stale_before=clock() - timedelta(minutes=1),
        max_attempts=3,
    )

    assert outcome.claimed == []
    assert outcome.expired == []
    assert len(worker.dispatched) == 1


class _CrashingWorker(FakeAnalysisWorker):
    def __init__(self, ticker: str) -> None:
        super().__init__()
        self.crash_ticker = ticker

    def dispatch(self, request) -> None:
        if request.ticker == self.crash_ticker:
            raise RuntimeError("connection pool exhausted")
        super().dispatch(request)


def test_unexpected_launch_error_fails_only_that_job():
    repository, worker, _, dispatcher = _dispatcher(_CrashingWorker("MSFT"))
    seed_request(repository)

    outcome = dispatcher.dispatch(rebalance_request_id=REQUEST_ID)

    assert outcome.failed == {"MSFT": "ANALYSIS_DISPATCH_FAILED: connection pool exhausted"}
    assert sorted(outcome.launched) == ["AAPL", "NVDA"]
    request = repository.get_request(rebalance_request_id=REQUEST_ID)
    assert request.status == "analyzing"
    assert request.analysis_jobs["MSFT"].status == "failed"
    assert request.analysis_jobs["AAPL"].dispatched_at == T0
    assert worker.tickers() == ["AAPL", "NVDA"]
