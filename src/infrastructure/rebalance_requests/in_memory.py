from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional

from src.core.rebalance_requests.errors import (
    RebalanceNotFoundError,
    RebalanceVersionConflictError,
)
from src.core.rebalance_requests.models import RebalanceRequestRecord
from src.core.rebalance_requests.repository import RebalanceRequestRepository


class InMemoryRebalanceRequestRepository(RebalanceRequestRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests: dict[str, RebalanceRequestRecord] = {}

    def create_request(self, request: RebalanceRequestRecord) -> RebalanceRequestRecord:
        with self._lock:
            if request.rebalance_request_id in self._requests:
                raise RebalanceVersionConflictError("REBALANCE_REQUEST_ALREADY_EXISTS")
            stored = request.model_copy(deep=True, update={"version": 1})
            self._requests[request.rebalance_request_id] = stored
            return deepcopy(stored)

    def get_request(self, *, rebalance_request_id: str) -> Optional[RebalanceRequestRecord]:
        with self._lock:
            request = self._requests.get(rebalance_request_id)
            return deepcopy(request) if request is not None else None

    def save_request(
        self, request: RebalanceRequestRecord, *, expected_version: int
    ) -> RebalanceRequestRecord:
        with self._lock:
            current = self._requests.get(request.rebalance_request_id)
            if current is None:
                raise RebalanceNotFoundError("REBALANCE_REQUEST_NOT_FOUND")
            if current.version != expected_version:
                raise RebalanceVersionConflictError("REBALANCE_REQUEST_VERSION_CONFLICT")
            stored = request.model_copy(deep=True, update={"version": expected_version + 1})
            self._requests[request.rebalance_request_id] = stored
            return deepcopy(stored)

    def list_requests(
        self,
        *,
        statuses: Optional[set[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[RebalanceRequestRecord]:
        with self._lock:
            rows = list(self._requests.values())
            if statuses is not None:
                rows = [row for row in rows if row.status in statuses]
            if updated_before is not None:
                rows = [row for row in rows if row.updated_at <= updated_before]
            rows = sorted(rows, key=lambda row: (row.updated_at, row.rebalance_request_id))
            return [deepcopy(row) for row in rows[:limit]]
