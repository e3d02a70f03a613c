from datetime import datetime
from typing import Optional

from src.core.rebalance_requests.errors import RebalanceInvalidStateError
from src.core.rebalance_requests.models import RebalanceRequestRecord, RebalanceStatus

TERMINAL_STATUSES: set[str] = {"completed", "canceled", "failed"}
TERMINAL_JOB_STATUSES: set[str] = {"succeeded", "failed"}
CANCELED_REASON = "CANCELED_BY_USER"

ALLOWED_TRANSITIONS: dict[RebalanceStatus, set[RebalanceStatus]] = {
    "pending": {"evaluating", "failed", "canceled"},
    "evaluating": {"filtering", "analyzing", "completed", "failed", "canceled"},
    "filtering": {"analyzing", "completed", "failed", "canceled"},
    "analyzing": {"aggregating", "failed", "canceled"},
    "aggregating": {"finalizing", "failed", "canceled"},
    "finalizing": {"completed", "failed", "canceled"},
    "failed": {"analyzing"},
    "completed": set(),
    "canceled": set(),
}


def transition(
    record: RebalanceRequestRecord,
    target: RebalanceStatus,
    *,
    reason: Optional[str] = None,
) -> None:
    if target not in ALLOWED_TRANSITIONS[record.status]:
        raise RebalanceInvalidStateError(f"REBALANCE_INVALID_TRANSITION:{record.status}->{target}")
    if target == "completed" and record.is_canceled:
        raise RebalanceInvalidStateError("REBALANCE_CANCELED_REQUEST_CANNOT_COMPLETE")
    record.status = target
    record.status_reason = reason


def is_terminal(record: RebalanceRequestRecord) -> bool:
    return record.status in TERMINAL_STATUSES


def jobs_resolved(record: RebalanceRequestRecord) -> bool:
    if record.selected_tickers is None:
        return False
    for ticker in record.selected_tickers:
        job = record.analysis_jobs.get(ticker)
        if job is None or job.status not in TERMINAL_JOB_STATUSES:
            return False
    return True


def has_mid_dispatch_jobs(record: RebalanceRequestRecord) -> bool:
    """True while a claimed job has not been acknowledged by the analysis worker."""
    return any(
        job.status == "dispatched" and job.dispatched_at is None
        for job in record.analysis_jobs.values()
    )


def has_queued_jobs(record: RebalanceRequestRecord) -> bool:
    return any(job.status == "queued" for job in record.analysis_jobs.values())


def free_dispatch_slots(record: RebalanceRequestRecord) -> Optional[int]:
    """Analyses that may still start under the role quota; None when unbounded."""
    quota = record.constraints.max_parallel_analysis
    if quota is None:
        return None
    running = sum(1 for job in record.analysis_jobs.values() if job.status == "dispatched")
    return max(0, quota - running)


def apply_cancellation(record: RebalanceRequestRecord) -> bool:
    """Cancellation checkpoint: move a flagged request to canceled when allowed."""
    if not record.is_canceled or is_terminal(record):
        return False
    if has_mid_dispatch_jobs(record):
        return False
    transition(record, "canceled", reason=CANCELED_REASON)
    return True


def settle(record: RebalanceRequestRecord) -> bool:
    """Apply cancellation, then move analyzing to aggregating once every job is terminal.

    Returns True only for the write that performed the move to aggregating; that
    writer owns the call into the decision finalizer.
    """
    if apply_cancellation(record) or record.is_canceled:
        return False
    if record.status != "analyzing" or not jobs_resolved(record):
        return False
    transition(record, "aggregating")
    return True


def mark_job_terminal(
    record: RebalanceRequestRecord,
    *,
    ticker: str,
    job_id: str,
    succeeded: bool,
    now: datetime,
    result: Optional[dict] = None,
    error: Optional[str] = None,
) -> bool:
    job = record.analysis_jobs.get(ticker)
    if job is None or job.job_id != job_id or job.status in TERMINAL_JOB_STATUSES:
        return False
    job.status = "succeeded" if succeeded else "failed"
    job.result = (result or {}) if succeeded else None
    job.error = None if succeeded else (error or "ANALYSIS_FAILED")
    job.completed_at = now
    return True
