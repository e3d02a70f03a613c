from decimal import Decimal

import pytest

from src.core.rebalance_requests.errors import RebalanceInvalidStateError
from src.core.rebalance_requests.models import (
    AnalysisJob,
    RebalanceConstraints,
    RebalanceRequestRecord,
)
from src.core.rebalance_requests.state_machine import (
    apply_cancellation,
    jobs_resolved,
    mark_job_terminal,
    settle,
    transition,
)
from tests.factories import T0


def _record(status="analyzing", selected=("AAPL", "MSFT"), **overrides) -> RebalanceRequestRecord:
    values = {
        "rebalance_request_id": "rbr_test",
        "user_id": "user_001",
        "status": status,
        "constraints": RebalanceConstraints(
            rebalance_threshold_pct=Decimal("10"),
            min_position_size_pct=Decimal("5"),
            max_position_size_pct=Decimal("25"),
            skip_threshold_check=False,
            skip_opportunity_agent=False,
        ),
        "candidate_tickers": list(selected),
        "selected_tickers": list(selected) if selected is not None else None,
        "created_at": T0,
        "updated_at": T0,
    }
    values.update(overrides)
    return RebalanceRequestRecord(**values)


def _job(ticker, status="dispatched", dispatched=True) -> AnalysisJob:
    return AnalysisJob(
        ticker=ticker,
        job_id=f"aj_{ticker.lower()}",
        status=status,
        created_at=T0,
        dispatched_at=T0 if dispatched else None,
    )


def test_terminal_statuses_reject_every_transition():
    for status in ("completed", "canceled"):
        record = _record(status=status)
        with pytest.raises(RebalanceInvalidStateError, match="REBALANCE_INVALID_TRANSITION"):
            transition(record, "analyzing")


def test_failed_may_only_reenter_analyzing():
    record = _record(status="failed")
    with pytest.raises(RebalanceInvalidStateError):
        transition(record, "completed")
    transition(record, "analyzing")
    assert record.status == "analyzing"


def test_canceled_flag_blocks_completion():
    record = _record(status="finalizing", is_canceled=True)
    with pytest.raises(RebalanceInvalidStateError, match="CANNOT_COMPLETE"):
        transition(record, "completed")


def test_jobs_resolved_requires_a_selection_and_terminal_jobs():
    assert jobs_resolved(_record(selected=None)) is False
    assert jobs_resolved(_record(selected=())) is True
    record = _record(analysis_jobs={"AAPL": _job("AAPL", "succeeded")})
    assert jobs_resolved(record) is False
    record.analysis_jobs["MSFT"] = _job("MSFT", "failed")
    assert jobs_resolved(record) is True


def test_cancellation_waits_while_a_job_is_mid_dispatch():
    record = _record(
        is_canceled=True,
        analysis_jobs={"AAPL": _job("AAPL", dispatched=False), "MSFT": _job("MSFT")},
    )
    assert apply_cancellation(record) is False
    assert record.status == "analyzing"

    record.analysis_jobs["AAPL"].dispatched_at = T0
    assert apply_cancellation(record) is True
    assert record.status == "canceled"
    assert record.status_reason == "CANCELED_BY_USER"


def test_settle_moves_to_aggregating_once():
    record = _record(
        analysis_jobs={"AAPL": _job("AAPL", "succeeded"), "MSFT": _job("MSFT", "failed")}
    )
    assert settle(record) is True
    assert record.status == "aggregating"
    assert settle(record) is False


def test_settle_prefers_cancellation_over_aggregation():
    record = _record(
        is_canceled=True,
        analysis_jobs={"AAPL": _job("AAPL", "succeeded"), "MSFT": _job("MSFT", "succeeded")},
    )
    assert settle(record) is False
    assert record.status == "canceled"


def test_mark_job_terminal_ignores_unknown_superseded_and_terminal_jobs():
    record = _record(analysis_jobs={"AAPL": _job("AAPL"), "MSFT": _job("MSFT", "succeeded")})

    assert mark_job_terminal(record, ticker="TSLA", job_id="aj_tsla", succeeded=True, now=T0) is False
    assert mark_job_terminal(record, ticker="AAPL", job_id="aj_old", succeeded=True, now=T0) is False
    assert mark_job_terminal(record, ticker="MSFT", job_id="aj_msft", succeeded=False, now=T0) is False
    assert (
        mark_job_terminal(
            record, ticker="AAPL", job_id="aj_aapl", succeeded=False, now=T0, error=None
        )
        is True
    )
    assert record.analysis_jobs["AAPL"].status == "failed"
    assert record.analysis_jobs["AAPL"].error == "ANALYSIS_FAILED"
    assert record.analysis_jobs["MSFT"].status == "succeeded"
