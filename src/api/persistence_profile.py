import os

from src.api.routers.rebalance_requests_config import (
    opportunity_mode,
    rebalance_postgres_dsn,
    rebalance_store_backend_name,
    rebalance_worker_base_url,
)

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    backend = rebalance_store_backend_name()
    opportunity_mode()
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if backend != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_POSTGRES")
    if not rebalance_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_POSTGRES_DSN")
    if not rebalance_worker_base_url():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_WORKER_URL")
