from decimal import Decimal
from typing import Optional

from src.core.rebalance_requests.errors import (
    RebalanceConfigurationError,
    RebalanceValidationError,
)
from src.core.rebalance_requests.models import (
    RebalanceConstraints,
    RebalanceConstraintsInput,
    RoleLimits,
)

DEFAULT_REBALANCE_THRESHOLD_PCT = Decimal("10")
DEFAULT_MIN_POSITION_SIZE_PCT = Decimal("5")
DEFAULT_MAX_POSITION_SIZE_PCT = Decimal("25")
_HUNDRED = Decimal("100")


def normalize_tickers(tickers: list[str]) -> list[str]:
    """Upper-case, strip and de-duplicate tickers, keeping first-seen order."""
    normalized: list[str] = []
    seen: set[str] = set()
    for ticker in tickers:
        symbol = ticker.strip().upper()
        if not symbol:
            raise RebalanceValidationError("REBALANCE_TICKER_EMPTY")
        if symbol in seen:
            continue
        seen.add(symbol)
        normalized.append(symbol)
    if not normalized:
        raise RebalanceValidationError("REBALANCE_TICKERS_REQUIRED")
    return normalized


def resolve_constraints(
    *,
    raw: Optional[RebalanceConstraintsInput],
    tickers: list[str],
    role_limits: RoleLimits,
    default_threshold_pct: Decimal = DEFAULT_REBALANCE_THRESHOLD_PCT,
    default_min_position_pct: Decimal = DEFAULT_MIN_POSITION_SIZE_PCT,
    default_max_position_pct: Decimal = DEFAULT_MAX_POSITION_SIZE_PCT,
) -> RebalanceConstraints:
    raw = raw or RebalanceConstraintsInput()
    if not role_limits.rebalance_access:
        raise RebalanceConfigurationError("REBALANCE_ACCESS_DENIED")
    if not tickers:
        raise RebalanceValidationError("REBALANCE_TICKERS_REQUIRED")
    if len(tickers) > role_limits.max_rebalance_stocks:
        raise RebalanceConfigurationError(
            "REBALANCE_TICKER_LIMIT_EXCEEDED: "
            f"{len(tickers)} tickers exceeds role maximum {role_limits.max_rebalance_stocks}"
        )

    threshold = _pick(raw.rebalance_threshold_pct, default_threshold_pct)
    min_position = _pick(raw.min_position_size_pct, default_min_position_pct)
    max_position = _pick(raw.max_position_size_pct, default_max_position_pct)
    if threshold < 0 or threshold > _HUNDRED:
        raise RebalanceValidationError("REBALANCE_THRESHOLD_OUT_OF_RANGE")
    if min_position < 0 or max_position <= 0 or max_position > _HUNDRED:
        raise RebalanceValidationError("REBALANCE_POSITION_SIZE_OUT_OF_RANGE")
    if min_position > max_position:
        raise RebalanceValidationError("REBALANCE_MIN_POSITION_EXCEEDS_MAX")

    # A forced rebalance analyzes every ticker, so filtering never applies.
    skip_opportunity_agent = (
        raw.skip_opportunity_agent
        or raw.skip_threshold_check
        or not role_limits.opportunity_agent_access
    )
    return RebalanceConstraints(
        rebalance_threshold_pct=threshold,
        min_position_size_pct=min_position,
        max_position_size_pct=max_position,
        skip_threshold_check=raw.skip_threshold_check,
        skip_opportunity_agent=skip_opportunity_agent,
        max_parallel_analysis=role_limits.max_parallel_analysis,
    )


def _pick(value: Optional[Decimal], default: Decimal) -> Decimal:
    return default if value is None else value
