import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from src.core.rebalance_requests.errors import (
    RebalanceNotFoundError,
    RebalanceVersionConflictError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.core.rebalance_requests.repository import RebalanceRequestRepository
from src.infrastructure.rebalance_requests.rows import (
    JOB_COLUMNS,
    REQUEST_COLUMNS,
    job_rows,
    request_row,
    to_record,
)


class SqliteRebalanceRequestRepository(RebalanceRequestRepository):
    def __init__(self, *, database_path: str) -> None:
        self._database_path = database_path
        self._lock = Lock()
        self._init_db()

    def create_request(self, request: RebalanceRequestRecord) -> RebalanceRequestRecord:
        row = request_row(request, version=1)
        query = f"""
            INSERT INTO rebalance_requests ({", ".join(REQUEST_COLUMNS)})
            VALUES ({", ".join("?" for _ in REQUEST_COLUMNS)})
        """
        with self._lock, closing(self._connect()) as connection:
            try:
                connection.execute(query, tuple(row[column] for column in REQUEST_COLUMNS))
            except sqlite3.IntegrityError as exc:
                raise RebalanceVersionConflictError("REBALANCE_REQUEST_ALREADY_EXISTS") from exc
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
            SET {", ".join(f"{column} = ?" for column in updates)}
            WHERE rebalance_request_id = ? AND version = ?
        """
        with self._lock, closing(self._connect()) as connection:
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
                    "SELECT 1 FROM rebalance_requests WHERE rebalance_request_id = ?",
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
        args: list[object] = []
        if statuses is not None:
            if not statuses:
                return []
            ordered = sorted(statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in ordered)})")
            args.extend(ordered)
        if updated_before is not None:
            clauses.append("updated_at <= ?")
            args.append(updated_before.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"""
            SELECT rebalance_request_id
            FROM rebalance_requests
            {where}
            ORDER BY updated_at ASC, rebalance_request_id ASC
            LIMIT ?
        """
        with closing(self._connect()) as connection:
            ids = [
                row["rebalance_request_id"]
                for row in connection.execute(query, (*args, limit)).fetchall()
            ]
            loaded = [self._load(connection, request_id) for request_id in ids]
        return [request for request in loaded if request is not None]

    def _load(
        self, connection: sqlite3.Connection, rebalance_request_id: str
    ) -> Optional[RebalanceRequestRecord]:
        row = connection.execute(
            f"""
            SELECT {", ".join(REQUEST_COLUMNS)}
            FROM rebalance_requests
            WHERE rebalance_request_id = ?
            """,
            (rebalance_request_id,),
        ).fetchone()
        if row is None:
            return None
        jobs = connection.execute(
            f"""
            SELECT {", ".join(JOB_COLUMNS)}
            FROM rebalance_analysis_jobs
            WHERE rebalance_request_id = ?
            ORDER BY created_at ASC, ticker ASC
            """,
            (rebalance_request_id,),
        ).fetchall()
        return to_record(row, list(jobs))

    def _upsert_jobs(self, connection: sqlite3.Connection, request: RebalanceRequestRecord) -> None:
        updates = [
            column for column in JOB_COLUMNS if column not in {"rebalance_request_id", "ticker"}
        ]
        query = f"""
            INSERT INTO rebalance_analysis_jobs ({", ".join(JOB_COLUMNS)})
            VALUES ({", ".join("?" for _ in JOB_COLUMNS)})
            ON CONFLICT(rebalance_request_id, ticker) DO UPDATE SET
                {", ".join(f"{column}=excluded.{column}" for column in updates)}
        """
        for job in job_rows(request):
            connection.execute(query, tuple(job[column] for column in JOB_COLUMNS))

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS rebalance_requests (
                    rebalance_request_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    total_stocks INTEGER NOT NULL,
                    stocks_analyzed INTEGER NOT NULL,
                    selected_stocks_json TEXT NULL,
                    analysis_ids_json TEXT NOT NULL,
                    opportunity_evaluation_json TEXT NULL,
                    is_canceled INTEGER NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    request_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_rebalance_requests_status_updated
                    ON rebalance_requests (status, updated_at);

                CREATE TABLE IF NOT EXISTS rebalance_analysis_jobs (
                    rebalance_request_id TEXT NOT NULL,
                    ticker TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    result_json TEXT NULL,
                    error TEXT NULL,
                    created_at TEXT NOT NULL,
                    dispatched_at TEXT NULL,
                    completed_at TEXT NULL,
                    PRIMARY KEY (rebalance_request_id, ticker)
                );
                """
            )
            connection.commit()
