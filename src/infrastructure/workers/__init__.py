from src.infrastructure.workers.http import (
    HttpAnalysisWorker,
    HttpDecisionRoutine,
    HttpOpportunityWorker,
    HttpRoleLimitsProvider,
    build_worker_client,
)
from src.infrastructure.workers.in_process import (
    QueuedAnalysisWorker,
    SelectAllOpportunityWorker,
    StaticRoleLimitsProvider,
)

__all__ = [
    "HttpAnalysisWorker",
    "HttpDecisionRoutine",
    "HttpOpportunityWorker",
    "HttpRoleLimitsProvider",
    "QueuedAnalysisWorker",
    "SelectAllOpportunityWorker",
    "StaticRoleLimitsProvider",
    "build_worker_client",
]
