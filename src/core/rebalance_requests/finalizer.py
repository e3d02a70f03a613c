import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from src.core.rebalance_requests.errors import ExternalWorkerError, SynthesisError
from src.core.rebalance_requests.models import (
    AnalysisOutcome,
    DecisionSynthesisRequest,
    RebalanceRequestRecord,
    TradeAction,
)
from src.core.rebalance_requests.state_machine import apply_cancellation, transition
from src.core.rebalance_requests.timeouts import call_with_timeout
from src.core.rebalance_requests.tracker import RebalanceStateTracker
from src.core.rebalance_requests.workers import PortfolioDecisionRoutine

DEFAULT_MIN_SUCCESS_RATIO = Decimal("0.3")
DEFAULT_SYNTHESIS_TIMEOUT_SECONDS = 120.0

logger = logging.getLogger(__name__)


def minimum_successes(total: int, ratio: Decimal) -> int:
    return max(1, math.ceil(Decimal(total) * ratio))


class DecisionFinalizer:
    def __init__(
        self,
        *,
        tracker: RebalanceStateTracker,
        routine: PortfolioDecisionRoutine,
        min_success_ratio: Decimal = DEFAULT_MIN_SUCCESS_RATIO,
        timeout_seconds: float = DEFAULT_SYNTHESIS_TIMEOUT_SECONDS,
    ) -> None:
        self._tracker = tracker
        self._routine = routine
        self._min_success_ratio = min_success_ratio
        self._timeout_seconds = timeout_seconds

    def finalize(self, *, rebalance_request_id: str) -> RebalanceRequestRecord:
        """Synthesize trade actions exactly once for an ``aggregating`` request.

        Only the writer that moves the request to ``finalizing`` calls the decision
        routine; every other caller gets the current aggregate back unchanged.
        """
        request, claimed = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_claim_finalization
        )
        if not claimed:
            return request

        selected = request.selected_tickers or []
        if not selected:
            return self._close(rebalance_request_id, actions=[], reason="NO_TICKERS_SELECTED")
        analyses: list[AnalysisOutcome] = []
        failed_tickers: list[str] = []
        for ticker in selected:
            job = request.analysis_jobs[ticker]
            if job.status == "succeeded":
                analyses.append(
                    AnalysisOutcome(ticker=ticker, job_id=job.job_id, result=job.result or {})
                )
            else:
                failed_tickers.append(ticker)

        required = minimum_successes(len(selected), self._min_success_ratio)
        if len(analyses) < required:
            return self._fail(
                rebalance_request_id,
                reason=(
                    "INSUFFICIENT_SUCCESSFUL_ANALYSES: "
                    f"{len(analyses)} of {len(selected)} succeeded, {required} required"
                ),
            )

        synthesis_request = DecisionSynthesisRequest(
            rebalance_request_id=rebalance_request_id,
            user_id=request.user_id,
            constraints=request.constraints,
            portfolio_snapshot=request.portfolio_snapshot,
            analyses=analyses,
            failed_tickers=failed_tickers,
        )
        try:
            actions = self._synthesize(synthesis_request)
        except SynthesisError as exc:
            return self._fail(rebalance_request_id, reason=str(exc))
        return self._close(rebalance_request_id, actions=actions)

    def _synthesize(self, request: DecisionSynthesisRequest) -> list[TradeAction]:
        try:
            return call_with_timeout(
                self._routine.synthesize,
                request,
                timeout_seconds=self._timeout_seconds,
                thread_name_prefix="rebalance-synthesis",
            )
        except TimeoutError as exc:
            raise SynthesisError("SYNTHESIS_TIMEOUT") from exc
        except SynthesisError:
            raise
        except ExternalWorkerError as exc:
            raise SynthesisError(f"SYNTHESIS_WORKER_FAILED: {exc}") from exc
        except Exception as exc:
            logger.exception(
                "rebalance.synthesis_crashed",
                extra={"extra_fields": {"rebalance_request_id": request.rebalance_request_id}},
            )
            raise SynthesisError(f"SYNTHESIS_WORKER_FAILED: {exc}") from exc

    def _close(
        self,
        rebalance_request_id: str,
        *,
        actions: list[TradeAction],
        reason: Optional[str] = None,
    ) -> RebalanceRequestRecord:
        def _apply(request: RebalanceRequestRecord, _now: datetime) -> None:
            if request.status != "finalizing":
                return
            if request.is_canceled:
                apply_cancellation(request)
                return
            request.trade_actions = list(actions)
            transition(request, "completed", reason=reason)

        request, _ = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_apply
        )
        logger.info(
            "rebalance.finalized",
            extra={
                "extra_fields": {
                    "rebalance_request_id": rebalance_request_id,
                    "status": request.status,
                    "trade_actions": len(request.trade_actions),
                }
            },
        )
        return request

    def _fail(self, rebalance_request_id: str, *, reason: str) -> RebalanceRequestRecord:
        def _apply(request: RebalanceRequestRecord, _now: datetime) -> None:
            if request.status == "finalizing":
                transition(request, "failed", reason=reason)

        request, _ = self._tracker.mutate(
            rebalance_request_id=rebalance_request_id, mutation=_apply
        )
        logger.warning(
            "rebalance.finalization_failed",
            extra={"extra_fields": {"rebalance_request_id": rebalance_request_id, "reason": reason}},
        )
        return request


def _claim_finalization(request: RebalanceRequestRecord, _now: datetime) -> bool:
    # Pre-finalize checkpoint.
    if apply_cancellation(request) or request.is_canceled:
        return False
    if request.status != "aggregating":
        return False
    transition(request, "finalizing")
    return True
