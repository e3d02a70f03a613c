import re
from threading import Event

from src.core.rebalance_requests.models import (
    OpportunityCompletedRequest,
    OpportunitySelection,
    RoleLimits,
)
from tests.factories import (
    CoordinatorHarness,
    FakeOpportunityWorker,
    FakeRoleLimits,
    analysis_done,
    portfolio,
    position,
    start_request,
)

LOW_DRIFT = portfolio(position("AAPL", "23", "20"), position("MSFT", "10", "12"))
HIGH_DRIFT = portfolio(position("AAPL", "35", "20"), position("MSFT", "10", "12"))


class _StalledOpportunityWorker(FakeOpportunityWorker):
    def __init__(self) -> None:
        super().__init__()
        self.release = Event()

    def evaluate(self, request):
        self.release.wait(timeout=5)
        return super().evaluate(request)


def test_low_drift_runs_opportunity_filter_and_dispatches_selection():
    harness = CoordinatorHarness(opportunity_worker=FakeOpportunityWorker(selected=["AAPL"]))

    response = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT)
    )

    assert re.fullmatch(r"rbr_[0-9a-f]{12}", response.rebalance_request_id)
    assert response.status == "analyzing"
    assert response.selected_tickers == ["AAPL"]
    assert response.message == "Dispatched 1 analyses."
    assert len(harness.opportunity_worker.evaluated) == 1
    assert harness.analysis_worker.tickers() == ["AAPL"]
    stored = harness.load(response.rebalance_request_id)
    assert stored.threshold_evaluation.max_drift_pct == 3
    assert stored.threshold_evaluation.force_full_analysis is False
    assert stored.opportunity_evaluation.excluded_tickers == ["MSFT"]


def test_high_drift_skips_filter_and_dispatches_everything(harness):
    response = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=HIGH_DRIFT)
    )

    assert response.status == "analyzing"
    assert response.selected_tickers == ["AAPL", "MSFT"]
    assert harness.opportunity_worker.evaluated == []
    stored = harness.load(response.rebalance_request_id)
    assert stored.threshold_evaluation.threshold_exceeded is True
    assert stored.opportunity_evaluation is None


def test_opportunity_timeout_falls_back_to_every_candidate():
    worker = _StalledOpportunityWorker()
    harness = CoordinatorHarness(opportunity_worker=worker, opportunity_timeout_seconds=0.05)
    try:
        response = harness.service.start_rebalance(
            start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT)
        )
    finally:
        worker.release.set()

    assert response.status == "analyzing"
    assert response.selected_tickers == ["AAPL", "MSFT"]
    evaluation = harness.load(response.rebalance_request_id).opportunity_evaluation
    assert evaluation.error == "OPPORTUNITY_WORKER_TIMEOUT"
    assert evaluation.fell_back_to_all is True


def test_partial_analysis_failure_still_completes(harness):
    request_id = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=HIGH_DRIFT)
    ).rebalance_request_id

    first = harness.service.analysis_completed(
        rebalance_request_id=request_id, payload=analysis_done("AAPL")
    )
    assert first.status == "analyzing"
    second = harness.service.analysis_completed(
        rebalance_request_id=request_id,
        payload=analysis_done("MSFT", success=False, error="provider outage"),
    )

    assert second.status == "completed"
    detail = harness.service.get_request(rebalance_request_id=request_id)
    assert detail.total_stocks == 2
    assert detail.stocks_analyzed == 2
    assert [action.ticker for action in detail.request.trade_actions] == ["AAPL"]
    assert detail.request.analysis_jobs["MSFT"].error == "provider outage"
    assert harness.decision_routine.calls[0].failed_tickers == ["MSFT"]


def test_low_drift_without_filter_completes_with_no_action(harness):
    response = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT, skip_opportunity_agent=True)
    )

    assert response.status == "completed"
    assert response.status_reason == "THRESHOLD_NOT_EXCEEDED"
    assert response.message == "No rebalance action needed."
    assert response.selected_tickers == []
    assert harness.analysis_worker.dispatched == []
    assert harness.opportunity_worker.evaluated == []


def test_role_without_opportunity_access_never_filters():
    harness = CoordinatorHarness(
        role_limits=FakeRoleLimits(
            RoleLimits(
                max_rebalance_stocks=5,
                max_parallel_analysis=1,
                rebalance_access=True,
                opportunity_agent_access=False,
            )
        )
    )

    response = harness.service.start_rebalance(start_request(["AAPL"], snapshot=LOW_DRIFT))

    assert response.status_reason == "THRESHOLD_NOT_EXCEEDED"
    assert harness.opportunity_worker.evaluated == []


def test_empty_opportunity_selection_completes_with_no_action():
    harness = CoordinatorHarness(opportunity_worker=FakeOpportunityWorker(selected=[]))

    response = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT)
    )

    assert response.status == "completed"
    assert response.status_reason == "NO_OPPORTUNITIES_SELECTED"
    assert harness.analysis_worker.dispatched == []


def test_async_opportunity_result_drives_dispatch():
    harness = CoordinatorHarness(opportunity_mode="ASYNC")
    started = harness.service.start_rebalance(start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT))
    assert started.status == "filtering"
    assert started.message == "Awaiting opportunity evaluation."
    assert len(harness.opportunity_worker.submitted) == 1

    response = harness.service.opportunity_completed(
        rebalance_request_id=started.rebalance_request_id,
        payload=OpportunityCompletedRequest(selections=[OpportunitySelection(ticker="MSFT")]),
    )

    assert response.accepted is True
    assert response.status == "analyzing"
    assert response.selected_tickers == ["MSFT"]
    assert harness.analysis_worker.tickers() == ["MSFT"]

    repeat = harness.service.opportunity_completed(
        rebalance_request_id=started.rebalance_request_id,
        payload=OpportunityCompletedRequest(selections=[OpportunitySelection(ticker="AAPL")]),
    )
    assert repeat.accepted is False
    assert harness.analysis_worker.tickers() == ["MSFT"]


def test_complete_waits_for_outstanding_analyses(harness):
    request_id = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], skip_threshold_check=True)
    ).rebalance_request_id

    pending = harness.service.complete_rebalance(rebalance_request_id=request_id)
    assert pending.status == "analyzing"
    assert harness.decision_routine.calls == []

    harness.service.analysis_completed(rebalance_request_id=request_id, payload=analysis_done("AAPL"))
    harness.service.analysis_completed(rebalance_request_id=request_id, payload=analysis_done("MSFT"))
    done = harness.service.complete_rebalance(rebalance_request_id=request_id)

    assert done.status == "completed"
    assert len(harness.decision_routine.calls) == 1


def test_callback_for_unselected_ticker_is_discarded(harness):
    request_id = harness.service.start_rebalance(
        start_request(["AAPL"], skip_threshold_check=True)
    ).rebalance_request_id

    response = harness.service.analysis_completed(
        rebalance_request_id=request_id, payload=analysis_done("TSLA")
    )

    assert response.accepted is False
    assert response.message == "Duplicate or superseded callback discarded."
    assert response.status == "analyzing"


def test_malformed_opportunity_response_falls_back_to_every_candidate():
    harness = CoordinatorHarness(
        opportunity_worker=FakeOpportunityWorker(error=ValueError("bad json"))
    )

    response = harness.service.start_rebalance(
        start_request(["AAPL", "MSFT"], snapshot=LOW_DRIFT)
    )

    assert response.status == "analyzing"
    assert response.selected_tickers == ["AAPL", "MSFT"]
    assert harness.analysis_worker.tickers() == ["AAPL", "MSFT"]
    evaluation = harness.load(response.rebalance_request_id).opportunity_evaluation
    assert evaluation.fell_back_to_all is True
    assert evaluation.error == "OPPORTUNITY_WORKER_FAILED: bad json"
