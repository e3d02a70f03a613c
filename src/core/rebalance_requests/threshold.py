from decimal import Decimal

from src.core.rebalance_requests.errors import RebalanceValidationError
from src.core.rebalance_requests.models import (
    PortfolioSnapshot,
    PositionSnapshot,
    RebalanceConstraints,
    ThresholdEvaluation,
    TickerDrift,
)

_ZERO = Decimal("0")


def position_drift_pct(position: PositionSnapshot) -> Decimal:
    """Absolute drift of one position in percent.

    Uses the allocation gap when both current and target allocations are known,
    otherwise the magnitude of unrealized profit/loss.
    """
    if position.current_allocation_pct is not None and position.target_allocation_pct is not None:
        return abs(position.current_allocation_pct - position.target_allocation_pct)
    if position.unrealized_pl_pct is not None:
        return abs(position.unrealized_pl_pct)
    return _ZERO


def evaluate_threshold(
    *,
    snapshot: PortfolioSnapshot,
    constraints: RebalanceConstraints,
    tickers: list[str],
) -> ThresholdEvaluation:
    positions: dict[str, PositionSnapshot] = {}
    for position in snapshot.positions:
        symbol = position.ticker.strip().upper()
        if not symbol:
            raise RebalanceValidationError("REBALANCE_SNAPSHOT_TICKER_EMPTY")
        if symbol in positions:
            raise RebalanceValidationError(f"REBALANCE_SNAPSHOT_DUPLICATE_TICKER:{symbol}")
        for value in (position.current_allocation_pct, position.target_allocation_pct):
            if value is not None and value < 0:
                raise RebalanceValidationError(f"REBALANCE_SNAPSHOT_NEGATIVE_ALLOCATION:{symbol}")
        positions[symbol] = position

    drifts = [
        TickerDrift(
            ticker=ticker,
            drift_pct=position_drift_pct(positions[ticker]) if ticker in positions else _ZERO,
        )
        for ticker in tickers
    ]
    max_drift = max((drift.drift_pct for drift in drifts), default=_ZERO)
    exceeded = max_drift >= constraints.rebalance_threshold_pct
    return ThresholdEvaluation(
        threshold_pct=constraints.rebalance_threshold_pct,
        max_drift_pct=max_drift,
        threshold_exceeded=exceeded,
        force_full_analysis=constraints.skip_threshold_check or exceeded,
        skip_threshold_check=constraints.skip_threshold_check,
        drifts=drifts,
    )
