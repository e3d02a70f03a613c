import os
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from src.core.rebalance_requests import (
    ConfidenceWeightedDecisionRoutine,
    RebalanceCoordinatorService,
)
from src.infrastructure.rebalance_requests import (
    InMemoryRebalanceRequestRepository,
    PostgresRebalanceRequestRepository,
    SqliteRebalanceRequestRepository,
)
from src.infrastructure.workers import (
    HttpAnalysisWorker,
    HttpDecisionRoutine,
    HttpOpportunityWorker,
    HttpRoleLimitsProvider,
    QueuedAnalysisWorker,
    SelectAllOpportunityWorker,
    StaticRoleLimitsProvider,
    build_worker_client,
)

_STORE_BACKENDS = {"IN_MEMORY", "SQL", "POSTGRES"}


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def env_decimal(name: str, default: Decimal) -> Decimal:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation:
        return default
    return parsed if parsed.is_finite() and parsed >= 0 else default


def env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def rebalance_store_backend_name() -> str:
    backend = env_str("REBALANCE_STORE_BACKEND", "IN_MEMORY").upper()
    if backend == "SQLITE":
        return "SQL"
    if backend not in _STORE_BACKENDS:
        raise RuntimeError("REBALANCE_STORE_BACKEND_UNSUPPORTED")
    return backend


def rebalance_sql_path() -> str:
    return env_str("REBALANCE_SQLITE_PATH", ".data/rebalance_requests.sqlite")


def rebalance_postgres_dsn() -> str:
    return env_str("REBALANCE_POSTGRES_DSN")


def rebalance_worker_base_url() -> str:
    return env_str("REBALANCE_WORKER_BASE_URL")


def opportunity_mode() -> str:
    mode = env_str("REBALANCE_OPPORTUNITY_MODE", "SYNC").upper()
    if mode not in {"SYNC", "ASYNC"}:
        raise RuntimeError("REBALANCE_OPPORTUNITY_MODE_UNSUPPORTED")
    return mode


def reconciliation_enabled() -> bool:
    return env_flag("REBALANCE_RECONCILIATION_ENABLED", False)


def reconciliation_interval_seconds() -> int:
    return env_int("REBALANCE_RECONCILIATION_INTERVAL_SECONDS", 60)


def build_repository():
    backend = rebalance_store_backend_name()
    if backend == "SQL":
        return SqliteRebalanceRequestRepository(database_path=rebalance_sql_path())
    if backend == "POSTGRES":
        dsn = rebalance_postgres_dsn()
        if not dsn:
            raise RuntimeError("REBALANCE_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresRebalanceRequestRepository(dsn=dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("REBALANCE_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryRebalanceRequestRepository()


def build_workers() -> dict:
    """Remote workers when a base URL is configured, in-process stand-ins otherwise."""
    base_url = rebalance_worker_base_url()
    if not base_url:
        return {
            "role_limits": StaticRoleLimitsProvider.from_json(
                env_str("REBALANCE_ROLE_LIMITS_JSON")
            ),
            "analysis_worker": QueuedAnalysisWorker(),
            "opportunity_worker": SelectAllOpportunityWorker(),
            "decision_routine": ConfidenceWeightedDecisionRoutine(),
        }
    client = build_worker_client(
        base_url=base_url,
        timeout_seconds=env_float("REBALANCE_WORKER_HTTP_TIMEOUT_SECONDS", 30.0),
    )
    return {
        "role_limits": HttpRoleLimitsProvider(client=client),
        "analysis_worker": HttpAnalysisWorker(client=client),
        "opportunity_worker": HttpOpportunityWorker(client=client),
        "decision_routine": HttpDecisionRoutine(client=client),
    }


def build_service(*, repository=None) -> RebalanceCoordinatorService:
    return RebalanceCoordinatorService(
        repository=repository if repository is not None else build_repository(),
        opportunity_mode=opportunity_mode(),
        opportunity_timeout_seconds=env_float("REBALANCE_OPPORTUNITY_TIMEOUT_SECONDS", 180.0),
        dispatch_timeout_seconds=env_float("REBALANCE_ANALYSIS_DISPATCH_TIMEOUT_SECONDS", 30.0),
        synthesis_timeout_seconds=env_float("REBALANCE_SYNTHESIS_TIMEOUT_SECONDS", 120.0),
        max_parallel_dispatch=env_int("REBALANCE_MAX_PARALLEL_DISPATCH", 5),
        min_success_ratio=env_decimal("REBALANCE_MIN_SUCCESS_RATIO", Decimal("0.3")),
        default_threshold_pct=env_decimal("REBALANCE_DEFAULT_THRESHOLD_PCT", Decimal("10")),
        default_min_position_pct=env_decimal("REBALANCE_DEFAULT_MIN_POSITION_PCT", Decimal("5")),
        default_max_position_pct=env_decimal("REBALANCE_DEFAULT_MAX_POSITION_PCT", Decimal("25")),
        stale_after=timedelta(seconds=env_int("REBALANCE_STALE_AFTER_SECONDS", 210)),
        max_dispatch_attempts=env_int("REBALANCE_MAX_DISPATCH_ATTEMPTS", 2),
        **build_workers(),
    )
