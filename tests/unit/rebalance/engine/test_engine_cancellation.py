import pytest

from src.core.rebalance_requests.errors import (
    RebalanceCanceledError,
    RebalanceInvalidStateError,
    RebalanceNotFoundError,
)
from src.core.rebalance_requests.models import AnalysisJob, OpportunityCompletedRequest
from tests.factories import (
    T0,
    CoordinatorHarness,
    FakeAnalysisWorker,
    analysis_done,
    seed_request,
    start_request,
)


def _dispatched(harness: CoordinatorHarness, tickers=("AAPL", "MSFT")) -> str:
    response = harness.service.start_rebalance(
        start_request(tickers, skip_threshold_check=True)
    )
    assert response.status == "analyzing"
    return response.rebalance_request_id


def test_cancel_after_dispatch_records_callbacks_but_never_finalizes(harness):
    request_id = _dispatched(harness)

    canceled = harness.service.cancel_rebalance(rebalance_request_id=request_id)
    assert canceled.status == "canceled"
    assert canceled.message == "Rebalance canceled."

    for ticker in ("AAPL", "MSFT"):
        response = harness.service.analysis_completed(
            rebalance_request_id=request_id, payload=analysis_done(ticker)
        )
        assert response.accepted is True
        assert response.status == "canceled"

    stored = harness.load(request_id)
    assert stored.status == "canceled"
    assert stored.status_reason == "CANCELED_BY_USER"
    assert {job.status for job in stored.analysis_jobs.values()} == {"succeeded"}
    assert stored.trade_actions == []
    assert harness.decision_routine.calls == []


def test_cancel_waits_for_mid_dispatch_jobs(harness):
    seed_request(
        harness.repository,
        status="analyzing",
        tickers=("AAPL",),
        selected_tickers=["AAPL"],
        analysis_jobs={
            "AAPL": AnalysisJob(ticker="AAPL", job_id="aj_inflight", status="dispatched", created_at=T0)
        },
    )

    response = harness.service.cancel_rebalance(rebalance_request_id="rbr_000000000001")

    assert response.status == "analyzing"
    assert response.message.startswith("Cancellation requested")
    assert harness.load("rbr_000000000001").is_canceled is True

    harness.service.analysis_completed(
        rebalance_request_id="rbr_000000000001",
        payload=analysis_done("AAPL", job_id="aj_inflight"),
    )
    assert harness.load("rbr_000000000001").status == "canceled"
    assert harness.decision_routine.calls == []


def test_second_cancel_reports_canceled(harness):
    request_id = _dispatched(harness)
    harness.service.cancel_rebalance(rebalance_request_id=request_id)

    with pytest.raises(RebalanceCanceledError):
        harness.service.cancel_rebalance(rebalance_request_id=request_id)


def test_cancel_rejected_after_completion(harness):
    response = harness.service.start_rebalance(
        start_request(["AAPL"], skip_opportunity_agent=True)
    )
    assert response.status == "completed"

    with pytest.raises(RebalanceInvalidStateError) as exc:
        harness.service.cancel_rebalance(rebalance_request_id=response.rebalance_request_id)

    assert str(exc.value) == "REBALANCE_CANCEL_NOT_ALLOWED:completed"
    assert not isinstance(exc.value, RebalanceCanceledError)


def test_cancel_unknown_request():
    with pytest.raises(RebalanceNotFoundError):
        CoordinatorHarness().service.cancel_rebalance(rebalance_request_id="rbr_missing")


def test_canceled_request_rejects_late_opportunity_result():
    harness = CoordinatorHarness(opportunity_mode="ASYNC")
    response = harness.service.start_rebalance(start_request(["AAPL", "MSFT"]))
    assert response.status == "filtering"

    canceled = harness.service.cancel_rebalance(rebalance_request_id=response.rebalance_request_id)
    assert canceled.status == "canceled"

    with pytest.raises(RebalanceCanceledError):
        harness.service.opportunity_completed(
            rebalance_request_id=response.rebalance_request_id,
            payload=OpportunityCompletedRequest(),
        )
    assert harness.analysis_worker.dispatched == []


def test_complete_and_retry_reject_canceled_requests(harness):
    request_id = _dispatched(harness)
    harness.service.cancel_rebalance(rebalance_request_id=request_id)

    with pytest.raises(RebalanceCanceledError):
        harness.service.complete_rebalance(rebalance_request_id=request_id)
    with pytest.raises(RebalanceCanceledError):
        harness.service.retry_rebalance(rebalance_request_id=request_id)


class _CrashingWorker(FakeAnalysisWorker):
    def dispatch(self, request) -> None:
        if request.ticker == "MSFT":
            raise RuntimeError("connection pool exhausted")
        super().dispatch(request)


def test_unexpected_launch_error_leaves_request_cancelable():
    harness = CoordinatorHarness(analysis_worker=_CrashingWorker())
    request_id = _dispatched(harness)

    response = harness.service.cancel_rebalance(rebalance_request_id=request_id)

    assert response.status == "canceled"
    stored = harness.load(request_id)
    assert stored.analysis_jobs["MSFT"].error == "ANALYSIS_DISPATCH_FAILED: connection pool exhausted"
