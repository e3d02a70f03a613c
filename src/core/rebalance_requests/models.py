from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

RebalanceStatus = Literal[
    "pending",
    "evaluating",
    "filtering",
    "analyzing",
    "aggregating",
    "finalizing",
    "completed",
    "canceled",
    "failed",
]
AnalysisJobStatus = Literal["queued", "dispatched", "succeeded", "failed"]
OpportunityMode = Literal["SYNC", "ASYNC"]
TradeActionType = Literal["BUY", "SELL", "HOLD"]


class RoleLimits(BaseModel):
    max_rebalance_stocks: int = Field(
        default=5,
        ge=0,
        description="Maximum number of tickers a single rebalance request may include.",
        examples=[5],
    )
    max_parallel_analysis: int = Field(
        default=1,
        ge=1,
        description="Maximum concurrent analyses the caller's role is entitled to.",
        examples=[1],
    )
    rebalance_access: bool = Field(
        default=False,
        description="Whether the caller's role may start rebalance requests.",
        examples=[True],
    )
    opportunity_agent_access: bool = Field(
        default=False,
        description="Whether the caller's role may use opportunity filtering.",
        examples=[True],
    )


class RebalanceConstraintsInput(BaseModel):
    rebalance_threshold_pct: Optional[Decimal] = Field(
        default=None,
        description="Drift threshold in percent; defaults to the configured threshold.",
        examples=["10"],
    )
    min_position_size_pct: Optional[Decimal] = Field(
        default=None,
        description="Minimum allocation per position in percent.",
        examples=["5"],
    )
    max_position_size_pct: Optional[Decimal] = Field(
        default=None,
        description="Maximum allocation per position in percent.",
        examples=["25"],
    )
    skip_threshold_check: bool = Field(
        default=False,
        description="Bypass the drift threshold and analyze every ticker.",
        examples=[False],
    )
    skip_opportunity_agent: bool = Field(
        default=False,
        description="Skip opportunity filtering when drift is below threshold.",
        examples=[False],
    )


class RebalanceConstraints(BaseModel):
    rebalance_threshold_pct: Decimal = Field(
        description="Resolved drift threshold in percent.", examples=["10"]
    )
    min_position_size_pct: Decimal = Field(
        description="Resolved minimum allocation per position in percent.", examples=["5"]
    )
    max_position_size_pct: Decimal = Field(
        description="Resolved maximum allocation per position in percent.", examples=["25"]
    )
    skip_threshold_check: bool = Field(
        description="Threshold bypass flag.", examples=[False]
    )
    skip_opportunity_agent: bool = Field(
        description=(
            "Opportunity filtering bypass flag. Always true when the threshold check is "
            "skipped or the role has no opportunity-agent access."
        ),
        examples=[False],
    )
    max_parallel_analysis: Optional[int] = Field(
        default=None,
        ge=1,
        description=(
            "Role quota of analyses running at once; jobs beyond it wait as queued. "
            "Unbounded when empty."
        ),
        examples=[3],
    )


class PositionSnapshot(BaseModel):
    ticker: str = Field(description="Ticker symbol.", examples=["AAPL"])
    current_allocation_pct: Optional[Decimal] = Field(
        default=None,
        description="Current portfolio allocation in percent.",
        examples=["22.5"],
    )
    target_allocation_pct: Optional[Decimal] = Field(
        default=None,
        description="Target portfolio allocation in percent.",
        examples=["20"],
    )
    unrealized_pl_pct: Optional[Decimal] = Field(
        default=None,
        description="Unrealized profit/loss in percent, used as drift when no target is set.",
        examples=["-3.2"],
    )
    market_value: Optional[Decimal] = Field(
        default=None, description="Position market value.", examples=["15000"]
    )
    quantity: Optional[Decimal] = Field(
        default=None, description="Held quantity.", examples=["80"]
    )


class PortfolioSnapshot(BaseModel):
    total_value: Optional[Decimal] = Field(
        default=None,
        description="Total portfolio value including cash.",
        examples=["100000"],
    )
    cash: Optional[Decimal] = Field(
        default=None, description="Available cash.", examples=["5000"]
    )
    positions: List[PositionSnapshot] = Field(
        default_factory=list,
        description="Current positions used for drift evaluation and sizing.",
    )


class TickerDrift(BaseModel):
    ticker: str = Field(description="Ticker symbol.", examples=["AAPL"])
    drift_pct: Decimal = Field(description="Absolute drift in percent.", examples=["3"])


class ThresholdEvaluation(BaseModel):
    threshold_pct: Decimal = Field(description="Threshold applied.", examples=["10"])
    max_drift_pct: Decimal = Field(description="Largest drift across tickers.", examples=["3"])
    threshold_exceeded: bool = Field(
        description="Whether max drift reached the threshold.", examples=[False]
    )
    force_full_analysis: bool = Field(
        description="Whether every candidate ticker is analyzed without filtering.",
        examples=[False],
    )
    skip_threshold_check: bool = Field(
        description="Whether the threshold check was bypassed.", examples=[False]
    )
    drifts: List[TickerDrift] = Field(
        default_factory=list, description="Per-ticker drift in candidate order."
    )


class OpportunitySelection(BaseModel):
    ticker: str = Field(description="Selected ticker.", examples=["AAPL"])
    reason: Optional[str] = Field(
        default=None,
        description="Why the ticker was selected.",
        examples=["Earnings momentum"],
    )
    priority: Optional[str] = Field(
        default=None, description="Priority label.", examples=["high"]
    )
    signals: List[str] = Field(
        default_factory=list,
        description="Signals that triggered selection.",
        examples=[["volume_spike"]],
    )


class OpportunityDecision(BaseModel):
    selections: List[OpportunitySelection] = Field(
        default_factory=list, description="Tickers the opportunity worker recommends."
    )
    reasoning: Optional[str] = Field(
        default=None,
        description="Worker reasoning for the overall selection.",
        examples=["Only AAPL shows actionable signals."],
    )


class OpportunityEvaluation(BaseModel):
    mode: OpportunityMode = Field(description="Gateway invocation mode.", examples=["SYNC"])
    selected_tickers: List[str] = Field(
        default_factory=list,
        description="Tickers selected for analysis, in candidate order.",
        examples=[["AAPL"]],
    )
    excluded_tickers: List[str] = Field(
        default_factory=list,
        description="Candidate tickers not selected.",
        examples=[["MSFT"]],
    )
    selections: List[OpportunitySelection] = Field(
        default_factory=list, description="Selection details per ticker."
    )
    reasoning: Optional[str] = Field(
        default=None, description="Opportunity worker reasoning.", examples=[None]
    )
    fell_back_to_all: bool = Field(
        default=False,
        description="True when the gateway failed open and selected every candidate.",
        examples=[False],
    )
    error: Optional[str] = Field(
        default=None,
        description="Failure reason when the gateway failed open.",
        examples=["OPPORTUNITY_WORKER_TIMEOUT"],
    )
    submitted_at: datetime = Field(
        description="Time the opportunity worker was invoked.",
        examples=["2026-02-20T12:00:00+00:00"],
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        description="Time the evaluation completed; empty while an ASYNC call is pending.",
        examples=["2026-02-20T12:00:05+00:00"],
    )


class AnalysisJob(BaseModel):
    ticker: str = Field(description="Ticker analyzed by this job.", examples=["AAPL"])
    job_id: str = Field(
        description="Coordinator-assigned job handle passed to the analysis worker.",
        examples=["aj_3f9a1c2b7d4e"],
    )
    status: AnalysisJobStatus = Field(description="Job status.", examples=["dispatched"])
    attempt: int = Field(default=1, ge=1, description="Dispatch attempt number.", examples=[1])
    result: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Opaque decision payload returned by the analysis worker.",
        examples=[{"decision": "BUY", "confidence": 80}],
    )
    error: Optional[str] = Field(
        default=None,
        description="Failure reason, present only when status is failed.",
        examples=["ANALYSIS_WORKER_TIMEOUT"],
    )
    created_at: datetime = Field(
        description="Time the job was claimed.", examples=["2026-02-20T12:00:00+00:00"]
    )
    dispatched_at: Optional[datetime] = Field(
        default=None,
        description="Time the analysis worker acknowledged the job.",
        examples=["2026-02-20T12:00:01+00:00"],
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        description="Time the job reached a terminal status.",
        examples=["2026-02-20T12:02:00+00:00"],
    )


class TradeAction(BaseModel):
    ticker: str = Field(description="Ticker symbol.", examples=["AAPL"])
    action: TradeActionType = Field(description="Trade direction.", examples=["BUY"])
    current_allocation_pct: Optional[Decimal] = Field(
        default=None, description="Allocation before the trade.", examples=["18"]
    )
    target_allocation_pct: Decimal = Field(
        description="Allocation after the trade.", examples=["22"]
    )
    dollar_amount: Optional[Decimal] = Field(
        default=None,
        description="Absolute notional to trade when portfolio value is known.",
        examples=["4000.00"],
    )
    confidence: Optional[Decimal] = Field(
        default=None, description="Analysis confidence (0-100).", examples=["80"]
    )
    reasoning: Optional[str] = Field(
        default=None, description="Human-readable sizing rationale.", examples=["BUY at 80%"]
    )


class RebalanceRequestRecord(BaseModel):
    rebalance_request_id: str = Field(
        description="Rebalance request identifier.", examples=["rbr_3f9a1c2b7d4e"]
    )
    user_id: str = Field(description="Owner of the request.", examples=["user_001"])
    status: RebalanceStatus = Field(description="Request status.", examples=["analyzing"])
    constraints: RebalanceConstraints = Field(description="Resolved constraints.")
    candidate_tickers: List[str] = Field(
        description="Ordered tickers eligible before filtering.",
        examples=[["AAPL", "MSFT"]],
    )
    selected_tickers: Optional[List[str]] = Field(
        default=None,
        description="Tickers chosen for analysis; empty until selection happens.",
        examples=[["AAPL"]],
    )
    analysis_jobs: Dict[str, AnalysisJob] = Field(
        default_factory=dict, description="Analysis job per selected ticker."
    )
    portfolio_snapshot: PortfolioSnapshot = Field(
        default_factory=PortfolioSnapshot,
        description="Portfolio snapshot supplied when the request started.",
    )
    threshold_evaluation: Optional[ThresholdEvaluation] = Field(
        default=None, description="Outcome of the drift threshold check."
    )
    opportunity_evaluation: Optional[OpportunityEvaluation] = Field(
        default=None, description="Outcome of opportunity filtering, when it ran."
    )
    trade_actions: List[TradeAction] = Field(
        default_factory=list, description="Synthesized trade actions once completed."
    )
    is_canceled: bool = Field(
        default=False, description="Cancellation flag set by cancel-rebalance.", examples=[False]
    )
    status_reason: Optional[str] = Field(
        default=None,
        description="Reason attached to failed, canceled or no-action outcomes.",
        examples=["INSUFFICIENT_SUCCESSFUL_ANALYSES"],
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Compare-and-swap version incremented on every write.",
        examples=[3],
    )
    created_at: datetime = Field(
        description="Creation timestamp (UTC).", examples=["2026-02-20T12:00:00+00:00"]
    )
    updated_at: datetime = Field(
        description="Last write timestamp (UTC).", examples=["2026-02-20T12:01:00+00:00"]
    )

    @property
    def stocks_analyzed(self) -> int:
        return sum(
            1 for job in self.analysis_jobs.values() if job.status in {"succeeded", "failed"}
        )

    @property
    def total_stocks(self) -> int:
        if self.selected_tickers is None:
            return len(self.candidate_tickers)
        return len(self.selected_tickers)

    @property
    def analysis_ids(self) -> List[str]:
        return [
            self.analysis_jobs[ticker].job_id
            for ticker in (self.selected_tickers or [])
            if ticker in self.analysis_jobs
        ]


class StartRebalanceRequest(BaseModel):
    user_id: str = Field(description="Requesting user.", examples=["user_001"])
    tickers: List[str] = Field(
        description="Candidate tickers to rebalance.", examples=[["AAPL", "MSFT"]]
    )
    portfolio_snapshot: PortfolioSnapshot = Field(
        default_factory=PortfolioSnapshot,
        description="Current portfolio snapshot used for drift and sizing.",
    )
    constraints: RebalanceConstraintsInput = Field(
        default_factory=RebalanceConstraintsInput,
        description="Optional constraint overrides.",
    )


class AnalysisCompletedRequest(BaseModel):
    ticker: str = Field(description="Ticker the analysis covered.", examples=["AAPL"])
    success: bool = Field(description="Whether the analysis succeeded.", examples=[True])
    job_id: Optional[str] = Field(
        default=None,
        description="Job handle from dispatch; callbacks for superseded jobs are discarded.",
        examples=["aj_3f9a1c2b7d4e"],
    )
    result: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Decision payload when success is true.",
        examples=[{"decision": "BUY", "confidence": 80}],
    )
    error: Optional[str] = Field(
        default=None,
        description="Failure reason when success is false.",
        examples=["Model provider unavailable"],
    )


class OpportunityCompletedRequest(BaseModel):
    success: bool = Field(
        default=True, description="Whether the opportunity worker succeeded.", examples=[True]
    )
    selections: List[OpportunitySelection] = Field(
        default_factory=list, description="Tickers recommended for analysis."
    )
    reasoning: Optional[str] = Field(
        default=None, description="Worker reasoning.", examples=["AAPL shows momentum."]
    )
    error: Optional[str] = Field(
        default=None, description="Failure reason when success is false.", examples=[None]
    )


class AnalysisDispatchRequest(BaseModel):
    rebalance_request_id: str = Field(description="Owning request.", examples=["rbr_1"])
    user_id: str = Field(description="Owning user.", examples=["user_001"])
    ticker: str = Field(description="Ticker to analyze.", examples=["AAPL"])
    job_id: str = Field(description="Job handle to echo back.", examples=["aj_1"])
    attempt: int = Field(description="Dispatch attempt number.", examples=[1])


class OpportunityEvaluationRequest(BaseModel):
    rebalance_request_id: str = Field(description="Owning request.", examples=["rbr_1"])
    user_id: str = Field(description="Owning user.", examples=["user_001"])
    candidate_tickers: List[str] = Field(
        description="Tickers to evaluate.", examples=[["AAPL", "MSFT"]]
    )
    portfolio_snapshot: PortfolioSnapshot = Field(description="Market and portfolio context.")
    threshold_evaluation: Optional[ThresholdEvaluation] = Field(
        default=None, description="Drift evaluation that routed the request to filtering."
    )


class AnalysisOutcome(BaseModel):
    ticker: str = Field(description="Ticker symbol.", examples=["AAPL"])
    job_id: str = Field(description="Job handle.", examples=["aj_1"])
    result: Dict[str, Any] = Field(
        description="Decision payload.", examples=[{"decision": "BUY", "confidence": 80}]
    )


class DecisionSynthesisRequest(BaseModel):
    rebalance_request_id: str = Field(description="Owning request.", examples=["rbr_1"])
    user_id: str = Field(description="Owning user.", examples=["user_001"])
    constraints: RebalanceConstraints = Field(description="Resolved constraints.")
    portfolio_snapshot: PortfolioSnapshot = Field(description="Portfolio snapshot.")
    analyses: List[AnalysisOutcome] = Field(
        default_factory=list, description="Succeeded analyses in selection order."
    )
    failed_tickers: List[str] = Field(
        default_factory=list, description="Selected tickers whose analysis failed."
    )


class ReconciliationSummary(BaseModel):
    scanned: int = Field(default=0, description="Non-terminal requests inspected.", examples=[4])
    canceled: int = Field(default=0, description="Requests moved to canceled.", examples=[1])
    finalized: int = Field(default=0, description="Requests finalized.", examples=[1])
    redispatched: int = Field(default=0, description="Stale jobs re-dispatched.", examples=[2])
    jobs_failed: int = Field(default=0, description="Stale jobs marked failed.", examples=[0])
    failed: int = Field(default=0, description="Requests moved to failed.", examples=[0])
    failed_open: int = Field(
        default=0, description="Stale filtering requests that failed open.", examples=[0]
    )
    errors: int = Field(
        default=0, description="Requests the sweep could not reconcile.", examples=[0]
    )


class RebalanceActionResponse(BaseModel):
    success: bool = Field(default=True, description="Envelope success flag.", examples=[True])
    rebalance_request_id: str = Field(description="Request identifier.", examples=["rbr_1"])
    status: RebalanceStatus = Field(description="Request status after the action.")
    accepted: bool = Field(
        default=True,
        description="False when a duplicate or superseded callback was discarded.",
        examples=[True],
    )
    message: Optional[str] = Field(
        default=None, description="Human-readable outcome.", examples=["Analysis recorded."]
    )
    status_reason: Optional[str] = Field(
        default=None, description="Reason attached to the current status.", examples=[None]
    )
    selected_tickers: Optional[List[str]] = Field(
        default=None, description="Tickers selected for analysis.", examples=[["AAPL"]]
    )


class RebalanceRequestDetailResponse(BaseModel):
    success: bool = Field(default=True, description="Envelope success flag.", examples=[True])
    request: RebalanceRequestRecord = Field(description="Current request aggregate.")
    total_stocks: int = Field(description="Tickers in scope.", examples=[2])
    stocks_analyzed: int = Field(description="Jobs in a terminal status.", examples=[1])


class ReconciliationResponse(BaseModel):
    success: bool = Field(default=True, description="Envelope success flag.", examples=[True])
    summary: ReconciliationSummary = Field(description="Sweep outcome counts.")


class RebalanceErrorResponse(BaseModel):
    success: bool = Field(default=False, description="Envelope success flag.", examples=[False])
    error: str = Field(description="Error code.", examples=["REBALANCE_REQUEST_NOT_FOUND"])
    details: Optional[Any] = Field(
        default=None, description="Optional structured details.", examples=[None]
    )


class RebalanceCanceledResponse(BaseModel):
    success: bool = Field(default=False, description="Envelope success flag.", examples=[False])
    canceled: bool = Field(default=True, description="Canceled marker.", examples=[True])
    message: str = Field(
        description="Why the action was rejected.",
        examples=["Rebalance request rbr_1 was canceled."],
    )
