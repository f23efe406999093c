"""
Job status persistence for Postgres.

Responsibilities:
- Manage connection pool
- Provide schema bootstrap (idempotent)
- Read and update job records keyed by (job_id, recipient)

Notes:
- Uses psycopg (v3) with connection pooling.
- All queries are parameterized; the table name is composed as an Identifier.
- is_completed is only ever OR-ed in SQL, so a completed job never reverts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional

import psycopg
from psycopg import sql
from psycopg_pool import ConnectionPool

from .logging import get_logger
from .retry import NO_RETRY, RetryPolicy, retry_call


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class JobRecord:
    job_id: str
    recipient: str
    is_completed: bool = False
    error_message: Optional[str] = None

    def finished(self, error_message: Optional[str]) -> "JobRecord":
        """Copy marked as processing finished, with or without an error."""
        return replace(self, is_completed=True, error_message=error_message)


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str, recipient: str):
        super().__init__(f"Job not found: job_id={job_id} recipient={recipient}")
        self.job_id = job_id
        self.recipient = recipient


# ---------------------------------------------------------------------------
# DB Adapter
# ---------------------------------------------------------------------------

class PostgresDB:
    """
    Postgres adapter for the job status table.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        table: str = "jobs",
        min_size: int = 1,
        max_size: int = 5,
        timeout: float = 30.0,
        retry_policy: RetryPolicy = NO_RETRY,
        application_name: str = "artifact_mailer",
        pool: Optional[ConnectionPool] = None,
        logger=None,
    ):
        if not table:
            raise ValueError("table required")
        self._table_name = table
        self._table = sql.Identifier(*table.split("."))
        self.retry_policy = retry_policy
        self.logger = logger or get_logger("io_db")
        if pool is None:
            conninfo = dsn or self._dsn_from_env()
            pool = ConnectionPool(
                conninfo,
                min_size=min_size,
                max_size=max_size,
                timeout=timeout,
                kwargs={"application_name": application_name},
                open=True,
            )
        self._pool = pool

    @staticmethod
    def _dsn_from_env() -> str:
        host = os.getenv("PGHOST", "127.0.0.1")
        port = os.getenv("PGPORT", "5432")
        user = os.getenv("PGUSER", "postgres")
        password = os.getenv("PGPASSWORD", "")
        database = os.getenv("PGDATABASE", "postgres")
        return f"host={host} port={port} user={user} password={password} dbname={database}"

    # -----------------------------------------------------------------------
    # Schema management (idempotent)
    # -----------------------------------------------------------------------
    def migrate(self) -> None:
        """
        Create the job table and indexes if they don't exist.
        """
        ddl = [
            sql.SQL("""
            CREATE TABLE IF NOT EXISTS {table} (
                job_id          TEXT NOT NULL,
                recipient       TEXT NOT NULL,
                is_completed    BOOLEAN NOT NULL DEFAULT FALSE,
                error_message   TEXT NULL,
                created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                completed_at    TIMESTAMPTZ NULL,
                PRIMARY KEY (job_id, recipient)
            );
            """),
            sql.SQL("CREATE INDEX IF NOT EXISTS {index} ON {table} (is_completed, created_at);"),
        ]
        index = sql.Identifier(f"idx_{self._table_name.replace('.', '_')}_completed")
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                for stmt in ddl:
                    cur.execute(stmt.format(table=self._table, index=index))
            conn.commit()

    # -----------------------------------------------------------------------
    # Job operations
    # -----------------------------------------------------------------------
    def create_job(self, job_id: str, recipient: str) -> JobRecord:
        """Insert a pending job (no-op if it already exists)."""
        query = sql.SQL("""
        INSERT INTO {table} (job_id, recipient)
        VALUES (%s, %s)
        ON CONFLICT (job_id, recipient) DO UPDATE SET updated_at = NOW()
        RETURNING job_id, recipient, is_completed, error_message;
        """).format(table=self._table)

        def _create():
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute(query, (job_id, recipient))
                row = cur.fetchone()
                conn.commit()
            return row

        row = self._retry("create_job", _create)
        return JobRecord(job_id=row[0], recipient=row[1], is_completed=row[2], error_message=row[3])

    def get_job(self, job_id: str, recipient: str) -> JobRecord:
        query = sql.SQL("""
        SELECT job_id, recipient, is_completed, error_message
        FROM {table}
        WHERE job_id=%s AND recipient=%s;
        """).format(table=self._table)

        def _get():
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute(query, (job_id, recipient))
                return cur.fetchone()

        row = self._retry("get_job", _get)
        if not row:
            raise JobNotFoundError(job_id, recipient)
        return JobRecord(job_id=row[0], recipient=row[1], is_completed=bool(row[2]), error_message=row[3])

    def update_job(self, record: JobRecord) -> None:
        query = sql.SQL("""
        UPDATE {table}
        SET is_completed = is_completed OR %s,
            error_message = %s,
            completed_at = CASE WHEN %s THEN COALESCE(completed_at, NOW()) ELSE completed_at END,
            updated_at = NOW()
        WHERE job_id=%s AND recipient=%s;
        """).format(table=self._table)
        params = (
            bool(record.is_completed),
            record.error_message,
            bool(record.is_completed),
            record.job_id,
            record.recipient,
        )

        def _update():
            with self._pool.connection() as conn, conn.cursor() as cur:
                cur.execute(query, params)
                updated = cur.rowcount
                conn.commit()
            return updated

        if self._retry("update_job", _update) == 0:
            raise JobNotFoundError(record.job_id, record.recipient)

    # -----------------------------------------------------------------------
    # Pool lifecycle
    # -----------------------------------------------------------------------
    def close(self) -> None:
        self._pool.close()

    def _retry(self, operation: str, func):
        return retry_call(
            self.retry_policy,
            func,
            operation=f"db.{operation}",
            transient=(psycopg.OperationalError,),
            logger=self.logger,
        )


__all__ = ["JobRecord", "JobNotFoundError", "PostgresDB"]
