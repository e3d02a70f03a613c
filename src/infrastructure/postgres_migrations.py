import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")


@dataclass(frozen=True)
class MigrationStep:
    namespace: str
    version: str
    sql_path: Path
    checksum: str

    @property
    def ledger_key(self) -> str:
        return f"{self.namespace}:{self.version}"


def load_migration_steps(*, namespace: str, root: Optional[Path] = None) -> list[MigrationStep]:
    directory = (root or MIGRATIONS_ROOT) / namespace
    if not directory.is_dir():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    steps = []
    for sql_path in sorted(directory.glob("*.sql")):
        sql = sql_path.read_text(encoding="utf-8")
        steps.append(
            MigrationStep(
                namespace=namespace,
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
            )
        )
    return steps


def apply_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    """Apply forward-only migrations for ``namespace`` under a session advisory lock.

    Returns the versions applied by this call. A stored checksum that no longer
    matches the file on disk aborts the run.
    """
    lock_key = _advisory_lock_key(namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_pending(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def _apply_pending(*, connection: Any, namespace: str) -> list[str]:
    steps = load_migration_steps(namespace=namespace)
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )
    recorded = {
        str(row["version"]): str(row["checksum"])
        for row in connection.execute(
            """
            SELECT version, checksum
            FROM schema_migrations
            WHERE namespace = %s
            ORDER BY version ASC
            """,
            (namespace,),
        ).fetchall()
    }
    applied: list[str] = []
    for step in steps:
        checksum = recorded.get(step.ledger_key)
        if checksum is not None:
            if checksum != step.checksum:
                raise RuntimeError(
                    f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{step.version}"
                )
            continue
        for statement in step.sql_path.read_text(encoding="utf-8").split(";"):
            if statement.strip():
                connection.execute(statement.strip())
        connection.execute(
            """
            INSERT INTO schema_migrations (
                version,
                namespace,
                checksum,
                applied_at
            ) VALUES (%s, %s, %s, %s)
            """,
            (step.ledger_key, namespace, step.checksum, datetime.now(UTC).isoformat()),
        )
        applied.append(step.version)
    connection.commit()
    return applied


def _advisory_lock_key(namespace: str) -> int:
    digest = hashlib.sha256(namespace.encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
