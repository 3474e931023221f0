from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence
from urllib.parse import urlparse

from .config import BASE_DIR, DEFAULT_DATABASE_URL, DEFAULT_SQLITE_PATH

SCHEMA_TABLES = ["report_cache"]
TENANT_SCOPED_TABLES = ["report_cache"]


class SQLiteDriver:
    def __init__(self, path: Path) -> None:
        self.path = path

    @contextmanager
    def connection(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class MigrationManager:
    def __init__(self, driver: SQLiteDriver) -> None:
        self._driver = driver

    def apply_all(self) -> None:
        with self._driver.connection() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            existing = {
                row["version"]
                for row in connection.execute("SELECT version FROM schema_migrations")
            }
            for version, operation in MIGRATIONS:
                if version in existing:
                    continue
                operation(connection)
                connection.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, _utc_now()),
                )


def _create_report_cache(connection) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS report_cache (
            tenant_id TEXT NOT NULL,
            case_id TEXT NOT NULL,
            input_hash TEXT NOT NULL,
            analysis_name TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, case_id, input_hash, analysis_name)
        )
        """
    )
    connection.execute(
        "CREATE INDEX IF NOT EXISTS idx_report_cache_case ON report_cache (tenant_id, case_id)"
    )


MIGRATIONS = [
    ("0001_report_cache", _create_report_cache),
]


def _normalize_params(params: Iterable | None) -> Sequence:
    if params is None:
        return ()
    if isinstance(params, (list, tuple)):
        return tuple(params)
    return (params,)


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _sqlite_path(url: str) -> Path:
    parsed = urlparse(url)
    scheme = parsed.scheme or "sqlite"
    if scheme not in {"sqlite", "file"}:
        raise ValueError(f"Unsupported database scheme: {scheme}")
    # sqlite:///relative.db and sqlite:////absolute/path.db
    path = parsed.path or ""
    if path.startswith("/"):
        path = path[1:]
    resolved = Path(path) if path else DEFAULT_SQLITE_PATH
    if not resolved.is_absolute():
        resolved = (Path(parsed.netloc) / resolved) if parsed.netloc else (BASE_DIR / resolved)
    return resolved


class Database:
    """sqlite access; the file is created and migrated on first use."""

    def __init__(self, url: str | None = None) -> None:
        self._url = url or DEFAULT_DATABASE_URL
        self._driver = SQLiteDriver(_sqlite_path(self._url))
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._driver.path

    @contextmanager
    def _connect(self):
        if not self._migrated:
            MigrationManager(self._driver).apply_all()
            self._migrated = True
        with self._driver.connection() as connection:
            yield connection

    def execute(self, query: str, params: Iterable | None = None) -> int:
        with self._connect() as connection:
            cursor = connection.execute(query, _normalize_params(params))
            return cursor.rowcount

    def query(self, query: str, params: Iterable | None = None) -> list[dict]:
        with self._connect() as connection:
            rows = connection.execute(query, _normalize_params(params)).fetchall()
            return [dict(row) for row in rows]

    def reset(self, tenant_id: str | None = None) -> None:
        with self._connect() as connection:
            if tenant_id:
                for table in TENANT_SCOPED_TABLES:
                    connection.execute(f"DELETE FROM {table} WHERE tenant_id = ?", (tenant_id,))
            else:
                for table in SCHEMA_TABLES:
                    connection.execute(f"DELETE FROM {table}")


db = Database(DEFAULT_DATABASE_URL)

__all__ = ["db", "Database", "DEFAULT_DATABASE_URL"]
