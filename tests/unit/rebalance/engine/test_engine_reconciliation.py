from src.core.rebalance_requests.errors import RebalanceVersionConflictError
from src.core.rebalance_requests.models import AnalysisJob
from src.infrastructure.rebalance_requests import InMemoryRebalanceRequestRepository
from tests.factories import (
    T0,
    CoordinatorHarness,
    analysis_done,
    seed_request,
    start_request,
)

SEEDED_ID = "rbr_000000000001"


class _AlwaysConflictingRepository(InMemoryRebalanceRequestRepository):
    def save_request(self, request, *, expected_version):
        raise RebalanceVersionConflictError("REBALANCE_REQUEST_VERSION_CONFLICT")


def _job(ticker: str, status: str = "dispatched") -> AnalysisJob:
    return AnalysisJob(
        ticker=ticker,
        job_id=f"aj_{ticker.lower()}",
        status=status,
        result={"intent": "BUILD", "confidence": 80} if status == "succeeded" else None,
        created_at=T0,
        dispatched_at=T0,
        completed_at=T0 if status != "dispatched" else None,
    )


def _dispatched(harness: CoordinatorHarness, tickers=("AAPL", "MSFT")) -> str:
    return harness.service.start_rebalance(
        start_request(tickers, skip_threshold_check=True)
    ).rebalance_request_id


def test_fresh_requests_are_left_alone(harness):
    request_id = _dispatched(harness)

    summary = harness.service.reconcile()

    assert summary.scanned == 1
    assert summary.redispatched == 0
    assert harness.load(request_id).status == "analyzing"
    assert len(harness.analysis_worker.dispatched) == 2


def test_stale_jobs_are_redispatched(harness):
    request_id = _dispatched(harness)
    original = harness.analysis_worker.job_id("AAPL")
    harness.clock.advance(minutes=5)

    summary = harness.service.reconcile()

    assert summary.redispatched == 2
    stored = harness.load(request_id)
    assert stored.analysis_jobs["AAPL"].attempt == 2
    assert stored.analysis_jobs["AAPL"].job_id != original
    assert len(harness.analysis_worker.dispatched) == 4


def test_stale_job_past_max_attempts_fails_and_request_finalizes():
    harness = CoordinatorHarness(max_dispatch_attempts=1)
    request_id = _dispatched(harness)
    harness.service.analysis_completed(rebalance_request_id=request_id, payload=analysis_done("AAPL"))
    harness.clock.advance(minutes=5)

    summary = harness.service.reconcile()

    assert summary.jobs_failed == 1
    assert summary.finalized == 1
    stored = harness.load(request_id)
    assert stored.status == "completed"
    assert stored.analysis_jobs["MSFT"].error == "ANALYSIS_STALE"
    assert [action.ticker for action in stored.trade_actions] == ["AAPL"]


def test_lost_completion_is_recovered(harness):
    seed_request(
        harness.repository,
        status="analyzing",
        tickers=("AAPL", "MSFT"),
        selected_tickers=["AAPL", "MSFT"],
        analysis_jobs={"AAPL": _job("AAPL", "succeeded"), "MSFT": _job("MSFT", "failed")},
    )

    summary = harness.service.reconcile()

    assert summary.finalized == 1
    assert harness.load(SEEDED_ID).status == "completed"
    assert len(harness.decision_routine.calls) == 1


def test_aggregating_request_is_finalized(harness):
    seed_request(
        harness.repository,
        status="aggregating",
        tickers=("AAPL",),
        selected_tickers=["AAPL"],
        analysis_jobs={"AAPL": _job("AAPL", "succeeded")},
    )

    summary = harness.service.reconcile()

    assert summary.finalized == 1
    assert harness.load(SEEDED_ID).status == "completed"


def test_stale_async_filtering_fails_open():
    harness = CoordinatorHarness(opportunity_mode="ASYNC")
    response = harness.service.start_rebalance(start_request(["AAPL", "MSFT"]))
    assert response.status == "filtering"
    harness.clock.advance(minutes=5)

    summary = harness.service.reconcile()

    assert summary.failed_open == 1
    stored = harness.load(response.rebalance_request_id)
    assert stored.status == "analyzing"
    assert stored.selected_tickers == ["AAPL", "MSFT"]
    assert stored.opportunity_evaluation.error == "OPPORTUNITY_EVALUATION_STALE"
    assert stored.opportunity_evaluation.fell_back_to_all is True
    assert stored.opportunity_evaluation.submitted_at == T0
    assert harness.analysis_worker.tickers() == ["AAPL", "MSFT"]


def test_stale_pending_request_fails(harness):
    seed_request(harness.repository, status="pending")
    harness.clock.advance(minutes=5)

    summary = harness.service.reconcile()

    assert summary.failed == 1
    stored = harness.load(SEEDED_ID)
    assert stored.status == "failed"
    assert stored.status_reason == "REQUEST_STALE"


def test_stale_finalizing_request_fails(harness):
    seed_request(
        harness.repository,
        status="finalizing",
        tickers=("AAPL",),
        selected_tickers=["AAPL"],
        analysis_jobs={"AAPL": _job("AAPL", "succeeded")},
    )
    harness.clock.advance(minutes=5)

    harness.service.reconcile()

    assert harness.load(SEEDED_ID).status_reason == "FINALIZATION_STALE"
    assert harness.decision_routine.calls == []


def test_pending_cancellation_is_applied(harness):
    seed_request(
        harness.repository,
        status="analyzing",
        tickers=("AAPL",),
        selected_tickers=["AAPL"],
        analysis_jobs={"AAPL": _job("AAPL")},
        is_canceled=True,
    )

    summary = harness.service.reconcile()

    assert summary.canceled == 1
    assert harness.load(SEEDED_ID).status == "canceled"


def test_terminal_requests_are_not_scanned(harness):
    seed_request(harness.repository, status="completed", selected_tickers=[])
    seed_request(harness.repository, status="canceled", rebalance_request_id="rbr_000000000002")

    assert harness.service.reconcile().scanned == 0


def test_unreconcilable_request_is_counted_and_skipped():
    harness = CoordinatorHarness(repository=_AlwaysConflictingRepository())
    seed_request(harness.repository, status="pending")
    harness.clock.advance(minutes=5)

    summary = harness.service.reconcile()

    assert summary.scanned == 1
    assert summary.errors == 1
    assert harness.load(SEEDED_ID).status == "pending"
