from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from src.core.rebalance_requests.errors import SynthesisError
from src.core.rebalance_requests.models import (
    DecisionSynthesisRequest,
    PositionSnapshot,
    TradeAction,
    TradeActionType,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")
DEFAULT_CONFIDENCE = Decimal("70")
DEFAULT_HOLD_CAP_PCT = Decimal("10")
DEFAULT_UNANALYZED_CAP_PCT = Decimal("5")

_INTENT_DIRECTIONS: dict[str, TradeActionType] = {
    "BUY": "BUY",
    "BUILD": "BUY",
    "ADD": "BUY",
    "SELL": "SELL",
    "TRIM": "SELL",
    "EXIT": "SELL",
    "HOLD": "HOLD",
}


def trade_direction(result: dict[str, Any]) -> TradeActionType:
    explicit = str(result.get("trade_direction") or "").strip().upper()
    if explicit in {"BUY", "SELL", "HOLD"}:
        return explicit  # type: ignore[return-value]
    intent = str(result.get("intent") or result.get("decision") or "HOLD").strip().upper()
    return _INTENT_DIRECTIONS.get(intent, "HOLD")


class ConfidenceWeightedDecisionRoutine:
    """In-process portfolio-manager routine used when no remote routine is configured.

    BUY tickers share the equity budget in proportion to analysis confidence,
    clamped to the request's position bounds. SELL goes to zero, or to the minimum
    bound for a TRIM intent. HOLD and unanalyzed tickers take what remains up to
    fixed caps, and any leftover budget is spread back over the BUY tickers.
    """

    def __init__(
        self,
        *,
        target_cash_allocation_pct: Decimal = _ZERO,
        hold_cap_pct: Decimal = DEFAULT_HOLD_CAP_PCT,
        unanalyzed_cap_pct: Decimal = DEFAULT_UNANALYZED_CAP_PCT,
    ) -> None:
        self._target_cash_allocation_pct = target_cash_allocation_pct
        self._hold_cap_pct = hold_cap_pct
        self._unanalyzed_cap_pct = unanalyzed_cap_pct

    def synthesize(self, request: DecisionSynthesisRequest) -> list[TradeAction]:
        min_pct = request.constraints.min_position_size_pct
        max_pct = request.constraints.max_position_size_pct
        remaining = _HUNDRED - self._target_cash_allocation_pct

        results = {analysis.ticker: analysis.result for analysis in request.analyses}
        directions = {ticker: trade_direction(result) for ticker, result in results.items()}
        confidences = {ticker: _confidence(ticker, result) for ticker, result in results.items()}
        buys = [ticker for ticker, direction in directions.items() if direction == "BUY"]
        sells = [ticker for ticker, direction in directions.items() if direction == "SELL"]
        holds = [ticker for ticker, direction in directions.items() if direction == "HOLD"]
        unanalyzed = list(request.failed_tickers)

        allocations: dict[str, Decimal] = {}
        budget = remaining
        total_confidence = sum((confidences[ticker] for ticker in buys), _ZERO)
        for ticker in buys:
            share = (
                confidences[ticker] / total_confidence * budget
                if total_confidence > 0
                else budget / len(buys)
            )
            allocations[ticker] = min(max_pct, max(min_pct, share))
            remaining -= allocations[ticker]

        for ticker in sells:
            intent = str(results[ticker].get("intent") or results[ticker].get("decision") or "")
            allocations[ticker] = min_pct if intent.strip().upper() == "TRIM" else _ZERO
            remaining -= allocations[ticker]

        for group, cap in ((holds, self._hold_cap_pct), (unanalyzed, self._unanalyzed_cap_pct)):
            if not group:
                continue
            per_ticker = min(cap, max(_ZERO, remaining) / len(group))
            for ticker in group:
                allocations[ticker] = per_ticker
                remaining -= per_ticker

        if remaining > 0 and buys:
            extra = remaining / len(buys)
            for ticker in buys:
                allocations[ticker] = min(max_pct, allocations[ticker] + extra)

        positions = {
            position.ticker.strip().upper(): position
            for position in request.portfolio_snapshot.positions
        }
        actions: list[TradeAction] = []
        for ticker in [analysis.ticker for analysis in request.analyses] + unanalyzed:
            direction = directions.get(ticker, "HOLD")
            actions.append(
                _to_trade_action(
                    ticker=ticker,
                    direction=direction,
                    target_pct=allocations[ticker],
                    position=positions.get(ticker),
                    total_value=request.portfolio_snapshot.total_value,
                    confidence=confidences.get(ticker),
                    reasoning=_reasoning(results.get(ticker), direction),
                )
            )
        return actions


def _confidence(ticker: str, result: dict[str, Any]) -> Decimal:
    raw = result.get("confidence")
    if raw is None:
        return DEFAULT_CONFIDENCE
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise SynthesisError(f"SYNTHESIS_INVALID_CONFIDENCE:{ticker}") from exc
    if value < 0 or value > _HUNDRED:
        raise SynthesisError(f"SYNTHESIS_INVALID_CONFIDENCE:{ticker}")
    return value


def _reasoning(result: Optional[dict[str, Any]], direction: TradeActionType) -> str:
    if result is None:
        return "Analysis unavailable; holding a minimal allocation."
    text = result.get("reasoning")
    if isinstance(text, str) and text.strip():
        return text.strip()
    return f"Analysis recommends {direction}."


def _to_trade_action(
    *,
    ticker: str,
    direction: TradeActionType,
    target_pct: Decimal,
    position: Optional[PositionSnapshot],
    total_value: Optional[Decimal],
    confidence: Optional[Decimal],
    reasoning: str,
) -> TradeAction:
    target = target_pct.quantize(_CENT)
    current = None
    if position is not None and position.current_allocation_pct is not None:
        current = position.current_allocation_pct.quantize(_CENT)
    action = direction
    dollar_amount = None
    if current is not None:
        if target > current:
            action = "BUY"
        elif target < current:
            action = "SELL"
        else:
            action = "HOLD"
        if total_value is not None:
            dollar_amount = (abs(target - current) / _HUNDRED * total_value).quantize(_CENT)
    return TradeAction(
        ticker=ticker,
        action=action,
        current_allocation_pct=current,
        target_allocation_pct=target,
        dollar_amount=dollar_amount,
        confidence=confidence,
        reasoning=reasoning,
    )
