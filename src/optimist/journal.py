"""
Durable journal for confirmed state and in-flight operations

Pattern: SQLite-backed store with a persistent connection, a thread lock and
WAL mode, so an application can restart without losing optimistic edits that
the server has not acknowledged yet.
"""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .conflict import ConflictPolicy
from .errors import JournalError
from .models import ConfirmedState, ConflictRecord, Operation, OperationKind, OperationStatus
from .patches import decode_patch, encode_patch


class SQLiteJournal:
    """
    Journal of entity confirmed states and queued operations.

    Features:
    - Upsert of operations, preserving submission order (seq)
    - Conflict records stored alongside their operation
    - Thread-safe database operations
    - WAL mode for concurrent access

    Usage:
        journal = SQLiteJournal(db_path)
        engine = Reconciler(config, journal=journal)
        engine.restore()          # rebuild state after a restart
        engine.resume(executor)   # re-dispatch pending operations
    """

    def __init__(self, db_path: Path, enable_wal: bool = True):
        """
        Initialize SQLiteJournal.

        Args:
            db_path: Path to SQLite database file (":memory:" is accepted)
            enable_wal: Enable WAL mode for concurrent writes (default: True)
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._enable_wal = enable_wal

        # check_same_thread=False allows multi-threaded access (serialized by _db_lock)
        # isolation_level=None enables autocommit mode
        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0
        )
        self._db_lock = threading.Lock()

        self._init_schema()

    def _init_schema(self) -> None:
        """Initialize database schema"""
        if self._enable_wal and self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")

        with self._db_lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS entities (
                    entity_id TEXT PRIMARY KEY,
                    fields TEXT,  -- JSON, NULL for tombstones
                    version INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    op_id TEXT NOT NULL UNIQUE,
                    entity_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    forward_patch TEXT NOT NULL,  -- JSON
                    previous_snapshot TEXT,  -- JSON
                    base_version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    submitted_at TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    server_state TEXT,  -- JSON
                    server_version INTEGER,
                    conflict TEXT  -- JSON, set while CONFLICTED
                );

                CREATE INDEX IF NOT EXISTS idx_operations_entity_id ON operations(entity_id);
                CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status);
            """)

    def save_entity(self, entity_id: str, state: ConfirmedState) -> None:
        """Insert or replace an entity's confirmed state."""
        fields_json = json.dumps(state.fields) if state.fields is not None else None
        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO entities (entity_id, fields, version, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(entity_id) DO UPDATE SET
                    fields = excluded.fields,
                    version = excluded.version,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (entity_id, fields_json, state.version)
            )

    def delete_entity(self, entity_id: str) -> None:
        with self._db_lock:
            self._conn.execute("DELETE FROM entities WHERE entity_id = ?", (entity_id,))

    def load_entities(self) -> Dict[str, ConfirmedState]:
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT entity_id, fields, version FROM entities ORDER BY entity_id"
            ).fetchall()

        return {
            row[0]: ConfirmedState(
                fields=json.loads(row[1]) if row[1] is not None else None,
                version=row[2],
            )
            for row in rows
        }

    def save_operation(self, operation: Operation, conflict: Optional[ConflictRecord] = None) -> None:
        """
        Insert or update an operation.

        The seq assigned on first insert is kept on update, so restore order
        always matches submission order.

        Raises:
            JournalError: If the patch or snapshots cannot be encoded as JSON
        """
        try:
            params = (
                operation.op_id,
                operation.entity_id,
                operation.kind.value,
                json.dumps(encode_patch(operation.forward_patch)),
                json.dumps(operation.previous_snapshot) if operation.previous_snapshot is not None else None,
                operation.base_version,
                operation.status.value,
                operation.submitted_at.isoformat(),
                operation.attempt,
                json.dumps(operation.server_state) if operation.server_state is not None else None,
                operation.server_version,
                json.dumps(self._conflict_to_json(conflict)) if conflict is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise JournalError(f"Cannot journal operation {operation.op_id}: {e}", op_id=operation.op_id) from e

        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO operations
                (op_id, entity_id, kind, forward_patch, previous_snapshot, base_version,
                 status, submitted_at, attempt, server_state, server_version, conflict)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(op_id) DO UPDATE SET
                    forward_patch = excluded.forward_patch,
                    base_version = excluded.base_version,
                    status = excluded.status,
                    attempt = excluded.attempt,
                    server_state = excluded.server_state,
                    server_version = excluded.server_version,
                    conflict = excluded.conflict
                """,
                params
            )

    def delete_operation(self, op_id: str) -> None:
        with self._db_lock:
            self._conn.execute("DELETE FROM operations WHERE op_id = ?", (op_id,))

    def load_operations(self) -> List[Tuple[Operation, Optional[ConflictRecord]]]:
        """
        Load non-terminal (and confirmed-but-unfolded) operations in submission order.

        Returns:
            List of (Operation, ConflictRecord or None)
        """
        with self._db_lock:
            rows = self._conn.execute(
                """
                SELECT op_id, entity_id, kind, forward_patch, previous_snapshot, base_version,
                       status, submitted_at, attempt, server_state, server_version, conflict
                FROM operations
                WHERE status IN (?, ?, ?)
                ORDER BY seq ASC
                """,
                (
                    OperationStatus.PENDING.value,
                    OperationStatus.CONFLICTED.value,
                    OperationStatus.CONFIRMED.value,
                )
            ).fetchall()

        return [self._row_to_operation(row) for row in rows]

    def count_operations(self) -> int:
        with self._db_lock:
            return self._conn.execute("SELECT COUNT(*) FROM operations").fetchone()[0]

    @staticmethod
    def _conflict_to_json(conflict: ConflictRecord) -> Dict[str, Any]:
        return {
            "remote_state": conflict.remote_state,
            "remote_version": conflict.remote_version,
            "policy": str(conflict.policy) if conflict.policy is not None else None,
            "detected_at": conflict.detected_at.isoformat(),
        }

    def _row_to_operation(self, row: tuple) -> Tuple[Operation, Optional[ConflictRecord]]:
        """Convert database row to Operation (and its open conflict, if any)"""
        forward_patch = decode_patch(json.loads(row[3]))
        operation = Operation(
            op_id=row[0],
            entity_id=row[1],
            kind=OperationKind(row[2]),
            forward_patch=forward_patch,
            previous_snapshot=json.loads(row[4]) if row[4] is not None else None,
            base_version=row[5],
            status=OperationStatus(row[6]),
            submitted_at=datetime.fromisoformat(row[7]),
            attempt=row[8],
            server_state=json.loads(row[9]) if row[9] is not None else None,
            server_version=row[10],
        )

        conflict = None
        if row[11] is not None and operation.status == OperationStatus.CONFLICTED:
            data = json.loads(row[11])
            conflict = ConflictRecord(
                op_id=operation.op_id,
                entity_id=operation.entity_id,
                local_patch=dict(forward_patch),
                remote_state=data.get("remote_state"),
                remote_version=data.get("remote_version", 0),
                policy=ConflictPolicy.from_string(data["policy"]) if data.get("policy") else None,
                detected_at=datetime.fromisoformat(data["detected_at"]) if data.get("detected_at") else None,
            )
        return operation, conflict

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
