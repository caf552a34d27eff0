"""
ToolOS Database Manager
-----------------------
SQLite-based persistence layer with schema versioning and retention policies.

Design:
- Schema version table for migrations
- Hard fail on downgrade (db.version > code.version)
- Auto-migrate forward (db.version < code.version)
- Startup-only pruning of old runs
- Explicit transaction boundaries; single writes auto-commit outside one
- Runs are append-only until terminal

Usage:
    from infra.database import DatabaseManager

    db = DatabaseManager("toolos.db")
    db.initialize()

    with db.transaction():
        db.save_run(run)
        db.save_step(step)

    steps = db.get_steps(run.id)
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

from infra.logging import get_logger

# Current schema version - increment on any schema change
SCHEMA_VERSION = 1

# Retention limits
MAX_RUNS_PER_TOOL = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


TERMINAL_RUN_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.BLOCKED}


@dataclass
class ExecutionRun:
    """One action, workflow or action-graph invocation."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = ""
    tool_id: str = ""
    trigger_id: Optional[str] = None
    action_id: Optional[str] = None
    workflow_id: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    current_step: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    state_snapshot: Dict[str, Any] = field(default_factory=dict)
    final_state: Optional[Dict[str, Any]] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)
    retries: int = 0
    pinned_reducers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    retry_of: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass
class WorkflowStep:
    """One node execution within a run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str = ""
    node_id: str = ""
    action_id: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    retries: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class LifecycleRecord:
    """Lifecycle row for one tool. State is stored by name."""
    tool_id: str = ""
    org_id: str = ""
    state: str = "CREATED"
    error_message: Optional[str] = None
    finalized_at: Optional[datetime] = None
    data_ready: bool = False
    view_ready: bool = False
    snapshot: Optional[Dict[str, Any]] = None
    view_spec: Optional[Dict[str, Any]] = None
    updated_at: datetime = field(default_factory=_now)


@dataclass
class ToolVersion:
    """A compiled artifact record."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tool_id: str = ""
    org_id: str = ""
    spec_hash: str = ""
    spec: Dict[str, Any] = field(default_factory=dict)
    status: str = "draft"  # draft, active, archived
    created_at: datetime = field(default_factory=_now)


class DatabaseError(Exception):
    """Database-specific errors."""
    pass


class SchemaMismatchError(DatabaseError):
    """Schema version mismatch (downgrade attempted)."""
    pass


class MigrationFailedError(DatabaseError):
    """Migration failed mid-way."""
    pass


# Key columns for each memory storage shape
MEMORY_TABLES: Dict[str, Tuple[str, ...]] = {
    "session_memory": ("session_id", "namespace", "key"),
    "user_memory": ("user_id", "namespace", "key"),
    "org_memory": ("org_id", "namespace", "key"),
    "tool_memory": ("tool_id", "owner_kind", "owner_id", "namespace", "key"),
    "tool_lifecycle_state": ("tool_id", "org_id"),
    "tool_build_logs": ("tool_id", "org_id"),
}


class DatabaseManager:
    """
    SQLite database manager with schema versioning.

    One connection shared across threads behind a re-entrant lock; the
    deadman-timeout worker writes through the same manager.
    """

    def __init__(self, db_path: str = "toolos.db"):
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._logger = get_logger("infra.database")
        self._initialized = False
        self._in_transaction = False
        self._lock = threading.RLock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """
        Initialize the database.

        - Creates database if not exists
        - Checks schema version
        - Runs migrations if needed (forward only)
        - Hard fails on downgrade
        - Runs startup pruning
        """
        self._logger.info(f"Initializing database at {self._db_path}")

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")

        db_version = self._get_schema_version()

        if db_version is None:
            self._logger.info("Creating new database schema")
            self._create_schema()
            self._set_schema_version(SCHEMA_VERSION)
        elif db_version < SCHEMA_VERSION:
            self._logger.info(f"Migrating database from v{db_version} to v{SCHEMA_VERSION}")
            self._migrate(db_version, SCHEMA_VERSION)
        elif db_version > SCHEMA_VERSION:
            raise SchemaMismatchError(
                f"Database schema version ({db_version}) is newer than code version ({SCHEMA_VERSION}). "
                f"Downgrade is not supported. Please update the code or use a different database."
            )
        else:
            self._logger.info(f"Database schema is up to date (v{db_version})")

        self._prune_on_startup()
        self._verify_integrity()

        self._initialized = True
        self._logger.info("Database initialized successfully")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._initialized = False

    def _get_schema_version(self) -> Optional[int]:
        try:
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY id DESC LIMIT 1"
            )
            row = cursor.fetchone()
            return row["version"] if row else None
        except sqlite3.OperationalError:
            # Table doesn't exist
            return None

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, _now().isoformat())
        )
        self._conn.commit()

    def _create_schema(self) -> None:
        """Create the initial database schema (v1)."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );

        -- One row per action/workflow/graph invocation
        CREATE TABLE IF NOT EXISTS execution_runs (
            id TEXT PRIMARY KEY,
            org_id TEXT NOT NULL,
            tool_id TEXT NOT NULL,
            trigger_id TEXT,
            action_id TEXT,
            workflow_id TEXT,
            status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'blocked', 'completed', 'failed')),
            current_step TEXT,
            input TEXT DEFAULT '{}',
            state_snapshot TEXT DEFAULT '{}',
            final_state TEXT,
            logs TEXT DEFAULT '[]',
            retries INTEGER DEFAULT 0,
            pinned_reducers TEXT DEFAULT '{}',
            retry_of TEXT,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_runs_tool ON execution_runs(tool_id, created_at);

        -- Node executions within a run
        CREATE TABLE IF NOT EXISTS workflow_steps (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            node_id TEXT NOT NULL,
            action_id TEXT,
            status TEXT NOT NULL CHECK(status IN ('pending', 'running', 'completed', 'failed', 'skipped', 'blocked')),
            input TEXT DEFAULT '{}',
            output TEXT,
            error TEXT,
            retries INTEGER DEFAULT 0,
            started_at TEXT,
            completed_at TEXT,
            duration_ms REAL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (run_id) REFERENCES execution_runs(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_steps_run ON workflow_steps(run_id, created_at);

        -- Lifecycle record, written only through the finalize barrier
        CREATE TABLE IF NOT EXISTS tool_lifecycle (
            tool_id TEXT PRIMARY KEY,
            org_id TEXT NOT NULL,
            state TEXT NOT NULL,
            error_message TEXT,
            finalized_at TEXT,
            data_ready INTEGER NOT NULL DEFAULT 0,
            view_ready INTEGER NOT NULL DEFAULT 0,
            snapshot TEXT,
            view_spec TEXT,
            updated_at TEXT NOT NULL
        );

        -- Compiled artifacts
        CREATE TABLE IF NOT EXISTS tool_versions (
            id TEXT PRIMARY KEY,
            tool_id TEXT NOT NULL,
            org_id TEXT NOT NULL,
            spec_hash TEXT NOT NULL,
            spec TEXT NOT NULL,
            status TEXT NOT NULL CHECK(status IN ('draft', 'active', 'archived')),
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_versions_tool ON tool_versions(tool_id, status);

        -- Reducer-managed tool state
        CREATE TABLE IF NOT EXISTS tool_states (
            tool_id TEXT NOT NULL,
            org_id TEXT NOT NULL,
            state TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tool_id, org_id)
        );

        -- Scoped memory shapes
        CREATE TABLE IF NOT EXISTS session_memory (
            session_id TEXT NOT NULL,
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (session_id, namespace, key)
        );
        CREATE TABLE IF NOT EXISTS user_memory (
            user_id TEXT NOT NULL,
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (user_id, namespace, key)
        );
        CREATE TABLE IF NOT EXISTS org_memory (
            org_id TEXT NOT NULL,
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (org_id, namespace, key)
        );
        CREATE TABLE IF NOT EXISTS tool_memory (
            tool_id TEXT NOT NULL,
            owner_kind TEXT NOT NULL CHECK(owner_kind IN ('tool', 'user', 'org')),
            owner_id TEXT NOT NULL DEFAULT '',
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tool_id, owner_kind, owner_id, namespace, key)
        );

        -- Denormalized high-churn tool+org keys
        CREATE TABLE IF NOT EXISTS tool_lifecycle_state (
            tool_id TEXT NOT NULL,
            org_id TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tool_id, org_id)
        );
        CREATE TABLE IF NOT EXISTS tool_build_logs (
            tool_id TEXT NOT NULL,
            org_id TEXT NOT NULL,
            value TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tool_id, org_id)
        );
        """

        self._conn.executescript(schema_sql)
        self._conn.commit()

    def _migrate(self, from_version: int, to_version: int) -> None:
        """
        Run migrations from one version to another.

        Each migration is atomic. If any migration fails, the database is
        left at the last successful version.
        """
        migrations: Dict[int, str] = {}

        for version in range(from_version + 1, to_version + 1):
            if version in migrations:
                self._logger.info(f"Applying migration to v{version}")
                try:
                    self._conn.executescript(migrations[version])
                    self._set_schema_version(version)
                except sqlite3.Error as e:
                    raise MigrationFailedError(
                        f"Migration to v{version} failed: {e}. "
                        f"Database is at v{version - 1}. Manual intervention required."
                    ) from e
            else:
                self._set_schema_version(version)

    def _prune_on_startup(self) -> None:
        """Keep at most MAX_RUNS_PER_TOOL runs per tool (oldest go first)."""
        cursor = self._conn.execute("""
            SELECT tool_id, COUNT(*) as run_count
            FROM execution_runs
            GROUP BY tool_id
            HAVING run_count > ?
        """, (MAX_RUNS_PER_TOOL,))

        for row in cursor.fetchall():
            excess = row["run_count"] - MAX_RUNS_PER_TOOL
            self._conn.execute("""
                DELETE FROM execution_runs
                WHERE id IN (
                    SELECT id FROM execution_runs
                    WHERE tool_id = ?
                    ORDER BY created_at ASC
                    LIMIT ?
                )
            """, (row["tool_id"], excess))
            self._logger.info(f"Pruned {excess} runs from tool {row['tool_id'][:8]}...")

        self._conn.commit()

    def _verify_integrity(self) -> None:
        cursor = self._conn.execute("PRAGMA integrity_check")
        result = cursor.fetchone()[0]

        if result != "ok":
            raise DatabaseError(f"Database integrity check failed: {result}")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise DatabaseError("Database not initialized. Call initialize() first.")

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for explicit transactions.

        Nested calls are no-ops inside an open transaction.
        """
        self._require_initialized()

        with self._lock:
            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
                self._conn.commit()
            except Exception as e:
                self._conn.rollback()
                self._logger.error(f"Transaction rolled back: {e}")
                raise
            finally:
                self._in_transaction = False

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write; commits unless inside transaction()."""
        self._require_initialized()
        with self._lock:
            cursor = self._conn.execute(sql, params)
            if not self._in_transaction:
                self._conn.commit()
            return cursor.rowcount

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        self._require_initialized()
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ===== Run Operations =====

    def save_run(self, run: ExecutionRun) -> None:
        """Insert a new run or overwrite a non-terminal one."""
        existing = self._query("SELECT status FROM execution_runs WHERE id = ?", (run.id,))
        if existing and RunStatus(existing[0]["status"]) in TERMINAL_RUN_STATUSES:
            raise DatabaseError(f"Run {run.id} is terminal and cannot be modified")

        run.updated_at = _now()
        self._write("""
            INSERT INTO execution_runs (
                id, org_id, tool_id, trigger_id, action_id, workflow_id, status,
                current_step, input, state_snapshot, final_state, logs, retries,
                pinned_reducers, retry_of, error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                current_step = excluded.current_step,
                input = excluded.input,
                state_snapshot = excluded.state_snapshot,
                final_state = excluded.final_state,
                logs = excluded.logs,
                retries = excluded.retries,
                pinned_reducers = excluded.pinned_reducers,
                error = excluded.error,
                updated_at = excluded.updated_at
        """, (
            run.id,
            run.org_id,
            run.tool_id,
            run.trigger_id,
            run.action_id,
            run.workflow_id,
            RunStatus(run.status).value,
            run.current_step,
            _dumps(run.input),
            _dumps(run.state_snapshot),
            _dumps(run.final_state) if run.final_state is not None else None,
            _dumps(run.logs),
            run.retries,
            _dumps(run.pinned_reducers),
            run.retry_of,
            run.error,
            run.created_at.isoformat(),
            run.updated_at.isoformat(),
        ))

    def _row_to_run(self, row: sqlite3.Row) -> ExecutionRun:
        return ExecutionRun(
            id=row["id"],
            org_id=row["org_id"],
            tool_id=row["tool_id"],
            trigger_id=row["trigger_id"],
            action_id=row["action_id"],
            workflow_id=row["workflow_id"],
            status=RunStatus(row["status"]),
            current_step=row["current_step"],
            input=_loads(row["input"], {}),
            state_snapshot=_loads(row["state_snapshot"], {}),
            final_state=_loads(row["final_state"]),
            logs=_loads(row["logs"], []),
            retries=row["retries"] or 0,
            pinned_reducers=_loads(row["pinned_reducers"], {}),
            retry_of=row["retry_of"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_run(self, run_id: str) -> Optional[ExecutionRun]:
        rows = self._query("SELECT * FROM execution_runs WHERE id = ?", (run_id,))
        return self._row_to_run(rows[0]) if rows else None

    def list_runs(self, tool_id: str, limit: int = 20) -> List[ExecutionRun]:
        """Most recent runs for a tool, newest first."""
        rows = self._query("""
            SELECT * FROM execution_runs
            WHERE tool_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (tool_id, limit))
        return [self._row_to_run(row) for row in rows]

    # ===== Step Operations =====

    def save_step(self, step: WorkflowStep) -> None:
        """Save or update a step."""
        self._write("""
            INSERT INTO workflow_steps (
                id, run_id, node_id, action_id, status, input, output, error,
                retries, started_at, completed_at, duration_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                input = excluded.input,
                output = excluded.output,
                error = excluded.error,
                retries = excluded.retries,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at,
                duration_ms = excluded.duration_ms
        """, (
            step.id,
            step.run_id,
            step.node_id,
            step.action_id,
            StepStatus(step.status).value,
            _dumps(step.input),
            _dumps(step.output) if step.output is not None else None,
            step.error,
            step.retries,
            step.started_at.isoformat() if step.started_at else None,
            step.completed_at.isoformat() if step.completed_at else None,
            step.duration_ms,
            step.created_at.isoformat(),
        ))

    def get_steps(self, run_id: str) -> List[WorkflowStep]:
        """Steps of a run in execution order."""
        rows = self._query("""
            SELECT * FROM workflow_steps
            WHERE run_id = ?
            ORDER BY created_at ASC, rowid ASC
        """, (run_id,))

        return [
            WorkflowStep(
                id=row["id"],
                run_id=row["run_id"],
                node_id=row["node_id"],
                action_id=row["action_id"],
                status=StepStatus(row["status"]),
                input=_loads(row["input"], {}),
                output=_loads(row["output"]),
                error=row["error"],
                retries=row["retries"] or 0,
                started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
                completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
                duration_ms=row["duration_ms"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ===== Lifecycle Operations =====

    def get_lifecycle(self, tool_id: str) -> Optional[LifecycleRecord]:
        rows = self._query("SELECT * FROM tool_lifecycle WHERE tool_id = ?", (tool_id,))
        if not rows:
            return None
        row = rows[0]
        return LifecycleRecord(
            tool_id=row["tool_id"],
            org_id=row["org_id"],
            state=row["state"],
            error_message=row["error_message"],
            finalized_at=datetime.fromisoformat(row["finalized_at"]) if row["finalized_at"] else None,
            data_ready=bool(row["data_ready"]),
            view_ready=bool(row["view_ready"]),
            snapshot=_loads(row["snapshot"]),
            view_spec=_loads(row["view_spec"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def write_lifecycle(self, record: LifecycleRecord) -> None:
        """
        Upsert every lifecycle field in one statement.

        Only the lifecycle state machine calls this.
        """
        record.updated_at = _now()
        self._write("""
            INSERT INTO tool_lifecycle (
                tool_id, org_id, state, error_message, finalized_at,
                data_ready, view_ready, snapshot, view_spec, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tool_id) DO UPDATE SET
                org_id = excluded.org_id,
                state = excluded.state,
                error_message = excluded.error_message,
                finalized_at = excluded.finalized_at,
                data_ready = excluded.data_ready,
                view_ready = excluded.view_ready,
                snapshot = excluded.snapshot,
                view_spec = excluded.view_spec,
                updated_at = excluded.updated_at
        """, (
            record.tool_id,
            record.org_id,
            record.state,
            record.error_message,
            record.finalized_at.isoformat() if record.finalized_at else None,
            int(record.data_ready),
            int(record.view_ready),
            _dumps(record.snapshot) if record.snapshot is not None else None,
            _dumps(record.view_spec) if record.view_spec is not None else None,
            record.updated_at.isoformat(),
        ))

    # ===== Version Operations =====

    def save_version(self, version: ToolVersion) -> None:
        self._write("""
            INSERT OR REPLACE INTO tool_versions (id, tool_id, org_id, spec_hash, spec, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            version.id,
            version.tool_id,
            version.org_id,
            version.spec_hash,
            _dumps(version.spec),
            version.status,
            version.created_at.isoformat(),
        ))

    def activate_version(self, tool_id: str, version_id: str) -> None:
        """Mark one version active and archive the previously active one."""
        with self.transaction():
            self._write(
                "UPDATE tool_versions SET status = 'archived' WHERE tool_id = ? AND status = 'active'",
                (tool_id,)
            )
            updated = self._write(
                "UPDATE tool_versions SET status = 'active' WHERE tool_id = ? AND id = ?",
                (tool_id, version_id)
            )
            if updated != 1:
                raise DatabaseError(f"Version {version_id} not found for tool {tool_id}")

    def _row_to_version(self, row: sqlite3.Row) -> ToolVersion:
        return ToolVersion(
            id=row["id"],
            tool_id=row["tool_id"],
            org_id=row["org_id"],
            spec_hash=row["spec_hash"],
            spec=_loads(row["spec"], {}),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_active_version(self, tool_id: str) -> Optional[ToolVersion]:
        rows = self._query(
            "SELECT * FROM tool_versions WHERE tool_id = ? AND status = 'active' LIMIT 1",
            (tool_id,)
        )
        return self._row_to_version(rows[0]) if rows else None

    def list_versions(self, tool_id: str) -> List[ToolVersion]:
        rows = self._query(
            "SELECT * FROM tool_versions WHERE tool_id = ? ORDER BY created_at DESC",
            (tool_id,)
        )
        return [self._row_to_version(row) for row in rows]

    # ===== Tool State Operations =====

    def get_tool_state(self, tool_id: str, org_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT state FROM tool_states WHERE tool_id = ? AND org_id = ?",
            (tool_id, org_id)
        )
        return _loads(rows[0]["state"]) if rows else None

    def save_tool_state(self, tool_id: str, org_id: str, state: Dict[str, Any]) -> None:
        self._write("""
            INSERT OR REPLACE INTO tool_states (tool_id, org_id, state, updated_at)
            VALUES (?, ?, ?, ?)
        """, (tool_id, org_id, _dumps(state), _now().isoformat()))

    # ===== Memory Row Operations =====

    @staticmethod
    def _memory_columns(table: str, keys: Dict[str, str]) -> Tuple[str, ...]:
        columns = MEMORY_TABLES.get(table)
        if columns is None:
            raise DatabaseError(f"Unknown memory table: {table}")
        if set(keys) != set(columns):
            raise DatabaseError(f"Memory table {table} is keyed by {columns}, got {sorted(keys)}")
        return columns

    def read_memory(self, table: str, keys: Dict[str, str]) -> Tuple[bool, Any]:
        """Return (found, value) for one memory row."""
        columns = self._memory_columns(table, keys)
        where = " AND ".join(f"{c} = ?" for c in columns)
        rows = self._query(
            f"SELECT value FROM {table} WHERE {where}",
            tuple(keys[c] for c in columns)
        )
        if not rows:
            return False, None
        return True, _loads(rows[0]["value"])

    def write_memory(self, table: str, keys: Dict[str, str], value: Any) -> None:
        columns = self._memory_columns(table, keys)
        names = ", ".join(columns + ("value", "updated_at"))
        placeholders = ", ".join("?" for _ in range(len(columns) + 2))
        self._write(
            f"INSERT OR REPLACE INTO {table} ({names}) VALUES ({placeholders})",
            tuple(keys[c] for c in columns) + (_dumps(value), _now().isoformat())
        )

    def delete_memory(self, table: str, keys: Dict[str, str]) -> None:
        columns = self._memory_columns(table, keys)
        where = " AND ".join(f"{c} = ?" for c in columns)
        self._write(f"DELETE FROM {table} WHERE {where}", tuple(keys[c] for c in columns))
