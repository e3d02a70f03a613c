from typing import Protocol

from src.core.rebalance_requests.models import (
    AnalysisDispatchRequest,
    DecisionSynthesisRequest,
    OpportunityDecision,
    OpportunityEvaluationRequest,
    RoleLimits,
    TradeAction,
)


class RoleLimitsProvider(Protocol):
    def get_role_limits(self, *, user_id: str) -> RoleLimits: ...


class AnalysisWorker(Protocol):
    def dispatch(self, request: AnalysisDispatchRequest) -> None:
        """Accept one analysis job; completion is reported through analysis-completed."""
        ...


class OpportunityWorker(Protocol):
    def evaluate(self, request: OpportunityEvaluationRequest) -> OpportunityDecision: ...

    def submit(self, request: OpportunityEvaluationRequest) -> None:
        """Accept an evaluation whose result arrives through opportunity-completed."""
        ...


class PortfolioDecisionRoutine(Protocol):
    def synthesize(self, request: DecisionSynthesisRequest) -> list[TradeAction]: ...
