import pytest

from src.core.rebalance_requests.errors import (
    RebalanceNotFoundError,
    RebalanceValidationError,
    RebalanceVersionConflictError,
)
from src.core.rebalance_requests.tracker import RebalanceStateTracker
from src.infrastructure.rebalance_requests import InMemoryRebalanceRequestRepository
from tests.factories import CoordinatorHarness, FixedClock, analysis_done, start_request


class _ConflictingRepository(InMemoryRebalanceRequestRepository):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.saves = 0

    def save_request(self, request, *, expected_version):
        self.saves += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise RebalanceVersionConflictError("REBALANCE_REQUEST_VERSION_CONFLICT")
        return super().save_request(request, expected_version=expected_version)


def _started(harness: CoordinatorHarness) -> str:
    return harness.service.start_rebalance(start_request(["AAPL", "MSFT"])).rebalance_request_id


def test_duplicate_callback_is_recorded_once(harness):
    request_id = _started(harness)
    tracker = RebalanceStateTracker(repository=harness.repository, clock=harness.clock)

    first = tracker.record_analysis_result(
        rebalance_request_id=request_id, ticker="AAPL", success=True, result={"intent": "ADD"}
    )
    version_after_first = first.request.version
    second = tracker.record_analysis_result(
        rebalance_request_id=request_id, ticker="aapl", success=False, error="late failure"
    )

    assert first.accepted is True
    assert second.accepted is False
    assert second.request.version == version_after_first
    job = second.request.analysis_jobs["AAPL"]
    assert job.status == "succeeded"
    assert job.result == {"intent": "ADD"}


def test_callback_for_superseded_job_id_is_discarded(harness):
    request_id = _started(harness)

    response = harness.service.analysis_completed(
        rebalance_request_id=request_id, payload=analysis_done("AAPL", job_id="aj_not_current")
    )

    assert response.accepted is False
    assert harness.load(request_id).analysis_jobs["AAPL"].status == "dispatched"


def test_callback_for_unknown_ticker_is_discarded(harness):
    request_id = _started(harness)
    response = harness.service.analysis_completed(
        rebalance_request_id=request_id, payload=analysis_done("TSLA")
    )
    assert response.accepted is False
    assert response.status == "analyzing"


def test_callback_requires_a_ticker(harness):
    request_id = _started(harness)
    tracker = RebalanceStateTracker(repository=harness.repository)
    with pytest.raises(RebalanceValidationError, match="ANALYSIS_CALLBACK_TICKER_REQUIRED"):
        tracker.record_analysis_result(rebalance_request_id=request_id, ticker=" ", success=True)


def test_mutation_retries_after_version_conflict():
    repository = _ConflictingRepository(conflicts=0)
    harness = CoordinatorHarness(repository=repository)
    request_id = _started(harness)
    repository.conflicts = 2
    repository.saves = 0
    tracker = RebalanceStateTracker(repository=repository, clock=FixedClock())

    outcome = tracker.record_analysis_result(
        rebalance_request_id=request_id, ticker="AAPL", success=True
    )

    assert outcome.accepted is True
    assert repository.saves == 3


def test_mutation_gives_up_after_max_write_attempts():
    repository = _ConflictingRepository(conflicts=0)
    harness = CoordinatorHarness(repository=repository)
    request_id = _started(harness)
    repository.conflicts = 10
    tracker = RebalanceStateTracker(repository=repository, max_write_attempts=3)

    with pytest.raises(RebalanceVersionConflictError, match="REBALANCE_REQUEST_VERSION_CONFLICT"):
        tracker.record_analysis_result(rebalance_request_id=request_id, ticker="AAPL", success=True)


def test_unchanged_mutation_does_not_write(harness):
    request_id = _started(harness)
    before = harness.load(request_id)
    tracker = RebalanceStateTracker(repository=harness.repository)

    after, value = tracker.mutate(
        rebalance_request_id=request_id, mutation=lambda record, _now: "noop"
    )

    assert value == "noop"
    assert after.version == before.version


def test_load_unknown_request_raises_not_found():
    tracker = RebalanceStateTracker(repository=InMemoryRebalanceRequestRepository())
    with pytest.raises(RebalanceNotFoundError, match="REBALANCE_REQUEST_NOT_FOUND"):
        tracker.load(rebalance_request_id="rbr_missing")
