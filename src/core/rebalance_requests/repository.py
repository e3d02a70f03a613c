from datetime import datetime
from typing import Optional, Protocol

from src.core.rebalance_requests.models import RebalanceRequestRecord


class RebalanceRequestRepository(Protocol):
    def create_request(self, request: RebalanceRequestRecord) -> RebalanceRequestRecord: ...

    def get_request(self, *, rebalance_request_id: str) -> Optional[RebalanceRequestRecord]: ...

    def save_request(
        self, request: RebalanceRequestRecord, *, expected_version: int
    ) -> RebalanceRequestRecord: ...

    def list_requests(
        self,
        *,
        statuses: Optional[set[str]] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[RebalanceRequestRecord]: ...
