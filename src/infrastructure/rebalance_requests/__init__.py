from src.infrastructure.rebalance_requests.in_memory import InMemoryRebalanceRequestRepository
from src.infrastructure.rebalance_requests.postgres import PostgresRebalanceRequestRepository
from src.infrastructure.rebalance_requests.sqlite import SqliteRebalanceRequestRepository

__all__ = [
    "InMemoryRebalanceRequestRepository",
    "PostgresRebalanceRequestRepository",
    "SqliteRebalanceRequestRepository",
]
