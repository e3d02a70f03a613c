import json
from datetime import datetime
from typing import Any, Mapping, Optional

from src.core.rebalance_requests.models import AnalysisJob, RebalanceRequestRecord

_DOCUMENT_EXCLUDE = {"analysis_jobs", "version"}

REQUEST_COLUMNS = (
    "rebalance_request_id",
    "user_id",
    "status",
    "total_stocks",
    "stocks_analyzed",
    "selected_stocks_json",
    "analysis_ids_json",
    "opportunity_evaluation_json",
    "is_canceled",
    "version",
    "created_at",
    "updated_at",
    "request_json",
)
JOB_COLUMNS = (
    "rebalance_request_id",
    "ticker",
    "job_id",
    "status",
    "attempt",
    "result_json",
    "error",
    "created_at",
    "dispatched_at",
    "completed_at",
)


def request_row(request: RebalanceRequestRecord, *, version: int) -> dict[str, Any]:
    """Column values for ``rebalance_requests``; the document column rebuilds the aggregate."""
    return {
        "rebalance_request_id": request.rebalance_request_id,
        "user_id": request.user_id,
        "status": request.status,
        "total_stocks": request.total_stocks,
        "stocks_analyzed": request.stocks_analyzed,
        "selected_stocks_json": _optional_json(request.selected_tickers),
        "analysis_ids_json": _json_dump(request.analysis_ids),
        "opportunity_evaluation_json": _optional_json(
            request.opportunity_evaluation.model_dump(mode="json")
            if request.opportunity_evaluation is not None
            else None
        ),
        "is_canceled": request.is_canceled,
        "version": version,
        "created_at": request.created_at.isoformat(),
        "updated_at": request.updated_at.isoformat(),
        "request_json": _json_dump(
            request.model_dump(mode="json", exclude=_DOCUMENT_EXCLUDE)
        ),
    }


def job_rows(request: RebalanceRequestRecord) -> list[dict[str, Any]]:
    return [
        {
            "rebalance_request_id": request.rebalance_request_id,
            "ticker": job.ticker,
            "job_id": job.job_id,
            "status": job.status,
            "attempt": job.attempt,
            "result_json": _optional_json(job.result),
            "error": job.error,
            "created_at": job.created_at.isoformat(),
            "dispatched_at": _optional_iso(job.dispatched_at),
            "completed_at": _optional_iso(job.completed_at),
        }
        for job in request.analysis_jobs.values()
    ]


def to_record(
    row: Mapping[str, Any], jobs: list[Mapping[str, Any]]
) -> RebalanceRequestRecord:
    document = json.loads(row["request_json"])
    document["version"] = int(row["version"])
    document["analysis_jobs"] = {
        job["ticker"]: AnalysisJob(
            ticker=job["ticker"],
            job_id=job["job_id"],
            status=job["status"],
            attempt=int(job["attempt"]),
            result=_optional_load_json(job["result_json"]),
            error=job["error"],
            created_at=datetime.fromisoformat(job["created_at"]),
            dispatched_at=_optional_datetime(job["dispatched_at"]),
            completed_at=_optional_datetime(job["completed_at"]),
        )
        for job in jobs
    }
    return RebalanceRequestRecord.model_validate(document)


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _optional_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return _json_dump(value)


def _optional_load_json(value: Optional[str]) -> Optional[dict]:
    if value is None:
        return None
    return json.loads(value)


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)
