import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

NAMESPACE = "rebalance_requests"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the rebalance request store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("REBALANCE_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN; defaults to REBALANCE_POSTGRES_DSN.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="Print the bundled migration versions and checksums without connecting.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from src.infrastructure.postgres_migrations import (
        apply_postgres_migrations,
        load_migration_steps,
    )

    if args.list:
        for step in load_migration_steps(namespace=NAMESPACE):
            print(f"{step.ledger_key} {step.checksum} {step.sql_path.name}")
        return 0

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{NAMESPACE}")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        applied = apply_postgres_migrations(connection=connection, namespace=NAMESPACE)
    print(f"Applied {len(applied)} migration(s) for namespace={NAMESPACE}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
