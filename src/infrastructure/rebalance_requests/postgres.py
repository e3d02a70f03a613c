from contextlib import closing
from datetime import datetime
from importlib.util import find_spec
from typing import Any, Optional

from src.core.rebalance_requests.errors import (
    RebalanceNotFoundError,
    RebalanceVersionConflictError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.infrastructure.postgres_migrations import apply_postgres_migrations
from src.infrastructure.rebalance_requests.rows import (
    JOB_COLUMNS,
    REQUEST_COLUMNS,
    job_rows,
    request_row,
    to_record,
)


class PostgresRebalanceRequestRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("REBALANCE_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("REBALANCE_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_request(self, request: RebalanceRequestRecord) -> RebalanceRequestRecord:
        row = request_row(request, version=1)
        query = f"""
            INSERT INTO rebalance_requests ({", ".join(REQUEST_COLUMNS)})
            VALUES ({", ".join("%s" for _ in REQUEST_COLUMNS)})
            ON CONFLICT (rebalance_request_id) DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(query, tuple(row[column] for column in REQUEST_COLUMNS))
            if cursor.rowcount != 1:
                connection.rollback()
                raise RebalanceVersionConflictError("REBALANCE_REQUEST_ALREADY_EXISTS")
            self._upsert_jobs(connection, request)
            connection.commit()
        return request.model_copy(deep=True, update={"version": 1})

    def get_request(self, *, rebalance_request_id: str) -> Optional[RebalanceRequestRecord]:
        with closing(self._connect()) as connection:
            return self._load(connection, rebalance_request_id)

    def save_request(
        self, request: RebalanceRequestRecord, *, expected_version: int
    ) -> RebalanceRequestRecord:
        row = request_row(request, version=expected_version + 1)
        updates = [column for column in REQUEST_COLUMNS if column != "rebalance_request_id"]
        query = f"""
            UPDATE rebalance_requests
            SET {", ".join(f"{column} = %s" for column in updates)}
            WHERE rebalance_request_id = %s AND version = %s
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    *(row[column] for column in updates),
                    request.rebalance_request_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                exists = connection.execute(
                    "SELECT 1 AS found FROM rebalance_requests WHERE rebalance_request_id = %s",
                    (request.rebalance_request_id,),
                ).fetchone()
                if exists is None:
                    raise RebalanceNotFoundError("REBALANCE_REQUEST_NOT_FOUND")
                raise RebalanceVersionConflictError("REBALANCE_REQUEST_VERSION_CONFLICT")
            self._upsert_jobs(connection, request)
            connection.commit()
        return request.model_copy(deep=True, update={"version": expected_version + 1})

    def list_requests(
        self,
        *,
        statuses: Optional[set[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[RebalanceRequestRecord]:
        clauses: list[str] = []
        args: list[Any] = []
        if statuses is not None:
            if not statuses:
                return []
            clauses.append("r.status = ANY(%s)")
            args.append(sorted(statuses))
        if updated_before is not None:
            clauses.append("r.updated_at <= %s")
            args.append(updated_before.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = _select_with_jobs(
            f"{where} ORDER BY r.updated_at ASC, r.rebalance_request_id ASC LIMIT %s"
        )
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (*args, limit)).fetchall()
        return [to_record(row, list(row["analysis_jobs"])) for row in rows]

    def _load(self, connection: Any, rebalance_request_id: str) -> Optional[RebalanceRequestRecord]:
        row = connection.execute(
            _select_with_jobs("WHERE r.rebalance_request_id = %s"),
            (rebalance_request_id,),
        ).fetchone()
        if row is None:
            return None
        return to_record(row, list(row["analysis_jobs"]))

    def _upsert_jobs(self, connection: Any, request: RebalanceRequestRecord) -> None:
        updates = [
            column for column in JOB_COLUMNS if column not in {"rebalance_request_id", "ticker"}
        ]
        query = f"""
            INSERT INTO rebalance_analysis_jobs ({", ".join(JOB_COLUMNS)})
            VALUES ({", ".join("%s" for _ in JOB_COLUMNS)})
            ON CONFLICT (rebalance_request_id, ticker) DO UPDATE SET
                {", ".join(f"{column}=excluded.{column}" for column in updates)}
        """
        for job in job_rows(request):
            connection.execute(query, tuple(job[column] for column in JOB_COLUMNS))

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="rebalance_requests")


def _select_with_jobs(tail: str) -> str:
    """Requests with their jobs aggregated in, so both come from one statement snapshot."""
    job_fields = ", ".join(f"'{column}', j.{column}" for column in JOB_COLUMNS)
    return f"""
        SELECT {", ".join(f"r.{column}" for column in REQUEST_COLUMNS)},
            COALESCE(
                (
                    SELECT json_agg(
                        json_build_object({job_fields}) ORDER BY j.created_at ASC, j.ticker ASC
                    )
                    FROM rebalance_analysis_jobs j
                    WHERE j.rebalance_request_id = r.rebalance_request_id
                ),
                '[]'::json
            ) AS analysis_jobs
        FROM rebalance_requests r
        {tail}
    """


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row
