"""
SQLite storage for the banking API.

One shared connection guarded by a lock: SQLite allows a single writer, so
every statement goes through ``Database.session``.
"""

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List

import structlog

logger = structlog.get_logger()

MEMORY_DATABASE = ":memory:"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    sql: str


MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        description="Create initial schema",
        sql="""
            CREATE TABLE IF NOT EXISTS operation_types (
                id INTEGER PRIMARY KEY,
                description TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_number TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            -- amounts are stored as decimal strings
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                operation_type_id INTEGER NOT NULL,
                amount TEXT NOT NULL,
                event_date TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (account_id) REFERENCES accounts(id),
                FOREIGN KEY (operation_type_id) REFERENCES operation_types(id)
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_operation_type_id ON transactions(operation_type_id);
        """,
    ),
]


class Database:
    def __init__(self, path: str = MEMORY_DATABASE):
        self.path = path
        if path != MEMORY_DATABASE:
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA busy_timeout = 5000")
            if path != MEMORY_DATABASE:
                self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.commit()

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._connection
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise

    def migrate(self) -> None:
        """Apply pending migrations, recording each in schema_migrations."""
        with self.session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    description TEXT NOT NULL,
                    applied_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            applied = {row["version"] for row in conn.execute("SELECT version FROM schema_migrations")}

        for migration in MIGRATIONS:
            if migration.version in applied:
                logger.debug("Skipping migration", version=migration.version)
                continue

            with self.session() as conn:
                # executescript commits implicitly; the version row follows it
                conn.executescript(migration.sql)
                conn.execute(
                    "INSERT INTO schema_migrations (version, description) VALUES (?, ?)",
                    (migration.version, migration.description),
                )
            logger.info(
                "Applied migration",
                version=migration.version,
                description=migration.description,
            )

    def ping(self) -> bool:
        with self.session() as conn:
            return conn.execute("SELECT 1").fetchone()[0] == 1

    def close(self) -> None:
        with self._lock:
            self._connection.close()
