from src.core.rebalance_requests.decisions import ConfidenceWeightedDecisionRoutine
from src.core.rebalance_requests.errors import (
    ExternalWorkerError,
    RebalanceCanceledError,
    RebalanceConfigurationError,
    RebalanceCoordinationError,
    RebalanceInvalidStateError,
    RebalanceNotFoundError,
    RebalanceValidationError,
    RebalanceVersionConflictError,
    SynthesisError,
)
from src.core.rebalance_requests.models import (
    AnalysisCompletedRequest,
    OpportunityCompletedRequest,
    RebalanceActionResponse,
    RebalanceCanceledResponse,
    RebalanceErrorResponse,
    RebalanceRequestDetailResponse,
    RebalanceRequestRecord,
    ReconciliationResponse,
    ReconciliationSummary,
    RoleLimits,
    StartRebalanceRequest,
)
from src.core.rebalance_requests.repository import RebalanceRequestRepository
from src.core.rebalance_requests.service import RebalanceCoordinatorService

__all__ = [
    "AnalysisCompletedRequest",
    "ConfidenceWeightedDecisionRoutine",
    "ExternalWorkerError",
    "OpportunityCompletedRequest",
    "RebalanceActionResponse",
    "RebalanceCanceledError",
    "RebalanceCanceledResponse",
    "RebalanceConfigurationError",
    "RebalanceCoordinationError",
    "RebalanceCoordinatorService",
    "RebalanceErrorResponse",
    "RebalanceInvalidStateError",
    "RebalanceNotFoundError",
    "RebalanceRequestDetailResponse",
    "RebalanceRequestRecord",
    "RebalanceRequestRepository",
    "RebalanceValidationError",
    "RebalanceVersionConflictError",
    "ReconciliationResponse",
    "ReconciliationSummary",
    "RoleLimits",
    "StartRebalanceRequest",
    "SynthesisError",
]
