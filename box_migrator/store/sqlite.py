"""
SQLite-backed job store.

One database file holds both table groups:

* job tracker: ``transfers``, ``transfer_items``, ``transfer_permissions``,
  filled by whatever records completed bulk transfers (or by the
  ``add_transfer*`` helpers)
* workflow state: ``migration_jobs``, ``bootstrap_results``, ``item_results``,
  ``cleanup_results``, ``deprovision_records``
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from box_migrator.exceptions import JobStoreError
from box_migrator.store.interface import JobStore, _now_iso
from box_migrator.types import (
    BootstrapResult,
    CleanupResult,
    DeprovisionRecord,
    ItemKind,
    ItemOperation,
    ItemResult,
    ItemStatus,
    MigrationJob,
    TransferItem,
    TransferPermission,
)
from box_migrator.utils.logging import log_with_context

_SCHEMA = """
    -- Job tracker: completed bulk transfers and what they moved
    CREATE TABLE IF NOT EXISTS transfers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_login TEXT NOT NULL,
        managed_user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',  -- 'pending', 'completed'
        skip_all INTEGER NOT NULL DEFAULT 0,
        skip_cleanup INTEGER NOT NULL DEFAULT 0,
        created_date TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS transfer_items (
        transfer_id INTEGER NOT NULL,
        record_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        source_item_id TEXT,
        skip_reason TEXT,
        PRIMARY KEY (transfer_id, record_id),
        FOREIGN KEY (transfer_id) REFERENCES transfers(id)
    );

    CREATE TABLE IF NOT EXISTS transfer_permissions (
        transfer_id INTEGER NOT NULL,
        record_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        source_item_id TEXT,
        PRIMARY KEY (transfer_id, record_id),
        FOREIGN KEY (transfer_id) REFERENCES transfers(id)
    );

    -- Workflow state
    CREATE TABLE IF NOT EXISTS migration_jobs (
        job_id INTEGER PRIMARY KEY,
        user_login TEXT NOT NULL,
        managed_user_id TEXT NOT NULL,
        user_id TEXT,
        managed_folder_id TEXT,
        skip_all INTEGER NOT NULL DEFAULT 0,
        skip_cleanup INTEGER NOT NULL DEFAULT 0,
        claimed_until TEXT,
        completed_at TEXT,
        created_date TEXT NOT NULL,
        FOREIGN KEY (job_id) REFERENCES transfers(id)
    );

    CREATE TABLE IF NOT EXISTS bootstrap_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        managed_folder_id TEXT NOT NULL,
        correlation_id TEXT NOT NULL,
        request TEXT,
        response TEXT,
        timestamp TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS item_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        record_id TEXT NOT NULL,
        operation TEXT NOT NULL,  -- 'move', 'collaboration_update'
        status TEXT NOT NULL,     -- 'succeeded', 'skipped', 'failed'
        source_item_id TEXT,
        correlation_id TEXT NOT NULL,
        detail TEXT,
        request TEXT,
        response TEXT,
        timestamp TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS cleanup_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        correlation_id TEXT NOT NULL,
        group_deleted INTEGER NOT NULL DEFAULT 0,
        viewer_collaboration_created INTEGER NOT NULL DEFAULT 0,
        request TEXT,
        response TEXT,
        timestamp TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS deprovision_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        user_login TEXT NOT NULL,
        phase INTEGER NOT NULL,
        correlation_id TEXT NOT NULL,
        detail TEXT,
        timestamp TEXT NOT NULL
    );
"""

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_completed ON migration_jobs(completed_at)",
    "CREATE INDEX IF NOT EXISTS idx_item_results_job ON item_results(job_id, operation, status)",
    "CREATE INDEX IF NOT EXISTS idx_cleanup_job ON cleanup_results(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_deprovision_user ON deprovision_records(user_id)",
]


class SqliteJobStore(JobStore):
    """Job store on a local SQLite database.

    Args:
        db_path: Database file, or ``":memory:"``
        lease_seconds: How long a dequeued job stays claimed
    """

    def __init__(self, db_path: str = "box_migrator.db", lease_seconds: int = 3600):
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(
                db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise JobStoreError(f"Cannot open job store {db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self.conn.executescript(_SCHEMA)
            for index_sql in _INDEXES:
                self.conn.execute(index_sql)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one immediate transaction, wrapping sqlite errors."""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self.conn
                except BaseException:
                    self.conn.execute("ROLLBACK")
                    raise
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise JobStoreError(f"Job store operation failed: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise JobStoreError(f"Job store query failed: {e}") from e

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> MigrationJob:
        return MigrationJob(
            job_id=row["job_id"],
            user_login=row["user_login"],
            managed_user_id=row["managed_user_id"],
            user_id=row["user_id"],
            managed_folder_id=row["managed_folder_id"],
            skip_all=bool(row["skip_all"]),
            skip_cleanup=bool(row["skip_cleanup"]),
            completed_at=row["completed_at"],
        )

    # -- Job tracker helpers --------------------------------------------------

    def add_transfer(
        self,
        user_login: str,
        managed_user_id: str,
        completed: bool = True,
        skip_all: bool = False,
        skip_cleanup: bool = False,
    ) -> int:
        """Record a bulk transfer and return its id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO transfers
                    (user_login, managed_user_id, status, skip_all, skip_cleanup, created_date)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_login,
                    managed_user_id,
                    "completed" if completed else "pending",
                    int(skip_all),
                    int(skip_cleanup),
                    _now_iso(),
                ),
            )
            transfer_id = cursor.lastrowid
        assert transfer_id is not None
        return transfer_id

    def mark_transfer_completed(self, transfer_id: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE transfers SET status = 'completed' WHERE id = ?", (transfer_id,)
            )

    def add_transfer_item(
        self,
        transfer_id: int,
        record_id: str,
        kind: ItemKind,
        source_item_id: Optional[str],
        skip_reason: Optional[str] = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO transfer_items
                    (transfer_id, record_id, kind, source_item_id, skip_reason)
                VALUES (?, ?, ?, ?, ?)
                """,
                (transfer_id, record_id, ItemKind(kind).value, source_item_id, skip_reason),
            )

    def add_transfer_permission(
        self,
        transfer_id: int,
        record_id: str,
        kind: ItemKind,
        source_item_id: Optional[str],
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO transfer_permissions
                    (transfer_id, record_id, kind, source_item_id)
                VALUES (?, ?, ?, ?)
                """,
                (transfer_id, record_id, ItemKind(kind).value, source_item_id),
            )

    # -- JobStore -------------------------------------------------------------

    def seed_jobs(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO migration_jobs
                    (job_id, user_login, managed_user_id, skip_all, skip_cleanup, created_date)
                SELECT t.id, t.user_login, t.managed_user_id, t.skip_all, t.skip_cleanup, ?
                FROM transfers t
                WHERE t.status = 'completed'
                  AND NOT EXISTS (SELECT 1 FROM migration_jobs j WHERE j.job_id = t.id)
                """,
                (_now_iso(),),
            )
            created = cursor.rowcount
        log_with_context(logging.INFO, f"Seeded {created} migration job(s)", jobs_seeded=created)
        return created

    def dequeue_next_job(self) -> Optional[MigrationJob]:
        now = datetime.now(timezone.utc)
        lease_until = (now + timedelta(seconds=self.lease_seconds)).isoformat()
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM migration_jobs
                WHERE completed_at IS NULL
                  AND (claimed_until IS NULL OR claimed_until < ?)
                ORDER BY job_id
                LIMIT 1
                """,
                (now.isoformat(),),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE migration_jobs SET claimed_until = ? WHERE job_id = ?",
                (lease_until, row["job_id"]),
            )
        return self._job_from_row(row)

    def release_job(self, job_id: int, retry_after_seconds: float = 0) -> None:
        claimed_until = None
        if retry_after_seconds > 0:
            retry_at = datetime.now(timezone.utc) + timedelta(seconds=retry_after_seconds)
            claimed_until = retry_at.isoformat()
        with self._transaction() as conn:
            conn.execute(
                "UPDATE migration_jobs SET claimed_until = ? WHERE job_id = ?",
                (claimed_until, job_id),
            )

    def fetch_job(self, job_id: int) -> Optional[MigrationJob]:
        rows = self._query("SELECT * FROM migration_jobs WHERE job_id = ?", (job_id,))
        return self._job_from_row(rows[0]) if rows else None

    def list_transfer_items(self, job_id: int) -> list[TransferItem]:
        rows = self._query(
            """
            SELECT record_id, kind, source_item_id, skip_reason
            FROM transfer_items WHERE transfer_id = ? ORDER BY record_id
            """,
            (job_id,),
        )
        return [
            TransferItem(
                record_id=row["record_id"],
                kind=ItemKind(row["kind"]),
                source_item_id=row["source_item_id"],
                skip_reason=row["skip_reason"],
            )
            for row in rows
        ]

    def list_transfer_permissions(self, job_id: int) -> list[TransferPermission]:
        rows = self._query(
            """
            SELECT record_id, kind, source_item_id
            FROM transfer_permissions WHERE transfer_id = ? ORDER BY record_id
            """,
            (job_id,),
        )
        return [
            TransferPermission(
                record_id=row["record_id"],
                kind=ItemKind(row["kind"]),
                source_item_id=row["source_item_id"],
            )
            for row in rows
        ]

    def insert_bootstrap_result(self, result: BootstrapResult) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO bootstrap_results
                    (job_id, user_id, managed_folder_id, correlation_id, request, response, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.job_id,
                    result.user_id,
                    result.managed_folder_id,
                    result.correlation_id,
                    result.request,
                    result.response,
                    _now_iso(),
                ),
            )
            conn.execute(
                """
                UPDATE migration_jobs SET user_id = ?, managed_folder_id = ?
                WHERE job_id = ?
                """,
                (result.user_id, result.managed_folder_id, result.job_id),
            )

    def insert_item_result(self, result: ItemResult) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO item_results
                    (job_id, record_id, operation, status, source_item_id,
                     correlation_id, detail, request, response, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.job_id,
                    result.record_id,
                    result.operation.value,
                    result.status.value,
                    result.source_item_id,
                    result.correlation_id,
                    result.detail,
                    result.request,
                    result.response,
                    _now_iso(),
                ),
            )

    def fetch_processed_item_ids(self, job_id: int, operation: ItemOperation) -> set[str]:
        rows = self._query(
            """
            SELECT DISTINCT record_id FROM item_results
            WHERE job_id = ? AND operation = ? AND status IN (?, ?)
            """,
            (
                job_id,
                operation.value,
                ItemStatus.SUCCEEDED.value,
                ItemStatus.SKIPPED.value,
            ),
        )
        return {row["record_id"] for row in rows}

    def insert_cleanup_result(self, result: CleanupResult) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO cleanup_results
                    (job_id, correlation_id, group_deleted, viewer_collaboration_created,
                     request, response, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.job_id,
                    result.correlation_id,
                    int(result.group_deleted),
                    int(result.viewer_collaboration_created),
                    result.request,
                    result.response,
                    _now_iso(),
                ),
            )

    def fetch_cleanup_result(self, job_id: int) -> Optional[CleanupResult]:
        rows = self._query(
            "SELECT * FROM cleanup_results WHERE job_id = ? ORDER BY id DESC LIMIT 1",
            (job_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return CleanupResult(
            job_id=row["job_id"],
            correlation_id=row["correlation_id"],
            group_deleted=bool(row["group_deleted"]),
            viewer_collaboration_created=bool(row["viewer_collaboration_created"]),
            request=row["request"] or "",
            response=row["response"] or "",
        )

    def mark_job_finished(self, job_id: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE migration_jobs SET completed_at = ?, claimed_until = NULL
                WHERE job_id = ?
                """,
                (_now_iso(), job_id),
            )

    def insert_deprovision_record(self, record: DeprovisionRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO deprovision_records
                    (user_id, user_login, phase, correlation_id, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.user_login,
                    int(record.phase),
                    record.correlation_id,
                    record.detail,
                    _now_iso(),
                ),
            )

    def fetch_deprovision_phase(self, user_id: str) -> int:
        rows = self._query(
            "SELECT MAX(phase) AS phase FROM deprovision_records WHERE user_id = ?",
            (user_id,),
        )
        if not rows or rows[0]["phase"] is None:
            return 0
        return int(rows[0]["phase"])

    def close(self) -> None:
        with self._lock:
            self.conn.close()
