#!/usr/bin/env python3
"""
Checkpoint and rollback management for crm-migrate.

A RollbackManager owns the persisted MigrationState of one run:
- checkpoints with the ids written since the previous checkpoint
- per-table progress entries
- logged errors and records flagged as low confidence
- the pre-migration backup snapshot

It chooses a rollback strategy from the run's errors and mapping confidence
and executes it against the record store.

Layout under the state directory:
    <id>.json                  migration state
    checkpoints/<cp_id>.json   one file per checkpoint
    backups/<id>.json          backup snapshot
    rollback-plans/<id>.json   saved rollback strategies
"""

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .exceptions import InvalidStateTransition, StoreError
from .logging_config import get_logger
from .reporting import ensure_json_serializable
from .target_schema import LOAD_ORDER

logger = get_logger(__name__)

HIGH_CONFIDENCE_CHECKPOINT = 7.0
TABLE_ERROR_RATE_LIMIT = 0.3


class MigrationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Status only moves forward; rolled_back is terminal
ALLOWED_TRANSITIONS = {
    MigrationStatus.IN_PROGRESS: {
        MigrationStatus.COMPLETED,
        MigrationStatus.FAILED,
        MigrationStatus.ROLLED_BACK,
    },
    MigrationStatus.COMPLETED: {MigrationStatus.ROLLED_BACK},
    MigrationStatus.FAILED: {MigrationStatus.ROLLED_BACK},
    MigrationStatus.ROLLED_BACK: set(),
}


class RollbackType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    TABLE = "table"
    CHECKPOINT = "checkpoint"


@dataclass
class MigrationCheckpoint:
    id: str
    timestamp: str
    phase: str
    table: Optional[str]
    records_processed: int
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "table": self.table,
            "records_processed": self.records_processed,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationCheckpoint":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            phase=data["phase"],
            table=data.get("table"),
            records_processed=data.get("records_processed", 0),
            confidence=data.get("confidence", 0.0),
            metadata=data.get("metadata", {}),
        )


@dataclass
class MigrationState:
    id: str
    started_at: str
    status: MigrationStatus = MigrationStatus.IN_PROGRESS
    completed_at: Optional[str] = None
    checkpoints: List[MigrationCheckpoint] = field(default_factory=list)
    processed_tables: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    low_confidence_records: Dict[str, List[str]] = field(default_factory=dict)
    pending_writes: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status.value,
            "checkpoints": [cp.to_dict() for cp in self.checkpoints],
            "processed_tables": self.processed_tables,
            "errors": self.errors,
            "low_confidence_records": self.low_confidence_records,
            "pending_writes": self.pending_writes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationState":
        return cls(
            id=data["id"],
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            status=MigrationStatus(data.get("status", "in_progress")),
            checkpoints=[MigrationCheckpoint.from_dict(cp) for cp in data.get("checkpoints", [])],
            processed_tables=data.get("processed_tables", []),
            errors=data.get("errors", []),
            low_confidence_records=data.get("low_confidence_records", {}),
            pending_writes=data.get("pending_writes", {}),
        )

    def table_entry(self, table: str) -> Optional[Dict[str, Any]]:
        for entry in self.processed_tables:
            if entry["table"] == table:
                return entry
        return None


@dataclass(frozen=True)
class RollbackStrategy:
    type: RollbackType
    reason: str
    confidence: float
    checkpoint_id: Optional[str] = None
    tables: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "checkpoint_id": self.checkpoint_id,
            "tables": list(self.tables),
        }


@dataclass
class RollbackResult:
    success: bool
    records_affected: int = 0
    tables_affected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "records_affected": self.records_affected,
            "tables_affected": self.tables_affected,
            "errors": self.errors,
            "duration": round(self.duration, 3),
        }


def _now() -> str:
    return datetime.now().isoformat()


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _severity(item: Any) -> str:
    severity = _field(item, "severity")
    severity = getattr(severity, "value", severity)
    return str(severity or "").lower()


class RollbackManager:
    """Persists migration state and performs rollbacks."""

    def __init__(self, state_dir, store=None):
        self.state_dir = Path(state_dir)
        self.store = store
        self.state: Optional[MigrationState] = None
        self.backup: Optional[Dict[str, List[Dict[str, Any]]]] = None

    # Paths

    @property
    def checkpoint_dir(self) -> Path:
        return self.state_dir / "checkpoints"

    @property
    def backup_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def plan_dir(self) -> Path:
        return self.state_dir / "rollback-plans"

    def state_path(self, migration_id: Optional[str] = None) -> Path:
        return self.state_dir / f"{migration_id or self._require_state().id}.json"

    def _require_state(self) -> MigrationState:
        if self.state is None:
            raise InvalidStateTransition("No migration has been initialized")
        return self.state

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(ensure_json_serializable(data), f, indent=2, ensure_ascii=False)

    def _persist(self) -> None:
        self._write_json(self.state_path(), self._require_state().to_dict())

    # State lifecycle

    def initialize_migration(self, migration_id: str) -> MigrationState:
        """Create and persist a fresh in-progress state."""
        self.state = MigrationState(id=migration_id, started_at=_now())
        self.backup = None
        self._persist()
        logger.info(f"Initialized migration state {migration_id}")
        return self.state

    @classmethod
    def load(cls, state_dir, migration_id: str, store=None) -> "RollbackManager":
        """Resume a manager from a persisted state file."""
        manager = cls(state_dir, store)
        path = manager.state_path(migration_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                manager.state = MigrationState.from_dict(json.load(f))
        except FileNotFoundError as e:
            raise InvalidStateTransition(f"No migration state found for {migration_id}") from e

        backup_path = manager.backup_dir / f"{migration_id}.json"
        if backup_path.exists():
            with open(backup_path, "r", encoding="utf-8") as f:
                manager.backup = json.load(f)
        return manager

    def _transition(self, status: MigrationStatus) -> None:
        state = self._require_state()
        if status not in ALLOWED_TRANSITIONS[state.status]:
            raise InvalidStateTransition(
                f"Migration {state.id} cannot move from {state.status.value} to {status.value}"
            )
        state.status = status
        state.completed_at = _now()
        self._persist()

    def complete_migration(self) -> None:
        self._transition(MigrationStatus.COMPLETED)

    def fail_migration(self) -> None:
        self._transition(MigrationStatus.FAILED)

    # Progress bookkeeping

    def create_checkpoint(
        self,
        phase: str,
        table: Optional[str],
        records_processed: int,
        confidence: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MigrationCheckpoint:
        """
        Append a checkpoint and persist it.

        The checkpoint takes over every write tracked since the previous
        checkpoint, so a later rollback can undo exactly those records.
        """
        state = self._require_state()
        metadata = dict(metadata or {})
        metadata["record_ids"] = state.pending_writes
        state.pending_writes = {}

        checkpoint = MigrationCheckpoint(
            id=f"{state.id}-cp{len(state.checkpoints) + 1:04d}",
            timestamp=_now(),
            phase=phase,
            table=table,
            records_processed=records_processed,
            confidence=confidence,
            metadata=metadata,
        )
        state.checkpoints.append(checkpoint)
        self._write_json(self.checkpoint_dir / f"{checkpoint.id}.json", checkpoint.to_dict())
        self._persist()
        logger.debug(
            f"Checkpoint {checkpoint.id}: {table} {records_processed} records, "
            f"confidence {confidence}"
        )
        return checkpoint

    def track_writes(self, table: str, ids: Iterable[str]) -> None:
        state = self._require_state()
        state.pending_writes.setdefault(table, []).extend(ids)

    def flag_low_confidence(self, table: str, ids: Iterable[str]) -> None:
        state = self._require_state()
        state.low_confidence_records.setdefault(table, []).extend(ids)

    def update_table_status(
        self,
        table: str,
        status: str,
        record_count: Optional[int] = None,
        confidence: Optional[float] = None,
        error_count: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Insert or update the progress entry of one table."""
        state = self._require_state()
        entry = state.table_entry(table)
        if entry is None:
            entry = {
                "table": table,
                "record_count": 0,
                "confidence": None,
                "status": status,
                "error_count": 0,
            }
            state.processed_tables.append(entry)
        entry["status"] = status
        if record_count is not None:
            entry["record_count"] = record_count
        if confidence is not None:
            entry["confidence"] = confidence
        if error_count is not None:
            entry["error_count"] = error_count
        self._persist()
        return entry

    def log_error(self, phase: str, error: Any, table: Optional[str] = None,
                  severity: str = "medium") -> None:
        state = self._require_state()
        state.errors.append(
            {
                "timestamp": _now(),
                "phase": phase,
                "table": table,
                "error": str(error),
                "severity": severity,
            }
        )
        self._persist()

    def log_record_errors(self, table: str, errors: Iterable[Any], phase: str = "loading") -> int:
        """
        Persist the row-level validation errors of one table.

        CRITICAL findings are kept as ``critical`` and every other finding
        as ``high``, so a reloaded state feeds the same strategy rules as
        the run that produced it.
        """
        state = self._require_state()
        timestamp = _now()
        logged = 0
        for error in errors:
            state.errors.append(
                {
                    "timestamp": timestamp,
                    "phase": phase,
                    "table": table,
                    "error": f"row {_field(error, 'row')}, {_field(error, 'field')}: {_field(error, 'message')}",
                    "severity": "critical" if _severity(error) == "critical" else "high",
                    "row": _field(error, "row"),
                    "field": _field(error, "field"),
                }
            )
            logged += 1
        if logged:
            self._persist()
        return logged

    def capture_backup(self, tables: Sequence[str] = LOAD_ORDER) -> Dict[str, List[Dict[str, Any]]]:
        """Snapshot ``tables`` before any writes; later calls keep the first snapshot."""
        state = self._require_state()
        if self.backup is not None:
            return self.backup
        if self.store is None:
            raise StoreError("Cannot capture a backup without a record store")

        self.backup = {table: self.store.find_many(table) for table in tables}
        self._write_json(self.backup_dir / f"{state.id}.json", self.backup)
        logger.info(
            f"Captured backup of {sum(len(rows) for rows in self.backup.values())} records "
            f"across {len(self.backup)} tables"
        )
        return self.backup

    # Strategy

    def determine_rollback_strategy(
        self,
        errors: Sequence[Any],
        average_confidence: float,
        affected_tables: Optional[Any] = None,
    ) -> RollbackStrategy:
        """
        Choose a rollback strategy; the first matching rule wins.

        Args:
            errors: Error dicts or objects with ``severity`` and ``table``
            average_confidence: Mean mapping confidence (0-10)
            affected_tables: Table names, or a table -> record count mapping

        Returns:
            RollbackStrategy with the confidence that it should be executed
        """
        critical = [e for e in errors if _severity(e) == "critical"]
        if critical:
            return RollbackStrategy(
                RollbackType.FULL,
                f"{len(critical)} critical errors detected",
                0.9,
                tables=self._known_tables(affected_tables),
            )

        if average_confidence < 3.0:
            return RollbackStrategy(
                RollbackType.FULL,
                f"Average mapping confidence {average_confidence:.1f} is too low",
                0.8,
                tables=self._known_tables(affected_tables),
            )

        failing = self._tables_over_error_rate(errors, affected_tables)
        if failing:
            return RollbackStrategy(
                RollbackType.TABLE,
                f"Error rate above {TABLE_ERROR_RATE_LIMIT:.0%} in: {', '.join(failing)}",
                0.7,
                tables=tuple(failing),
            )

        if average_confidence < 6.0:
            checkpoint = self._last_confident_checkpoint()
            if checkpoint is not None:
                return RollbackStrategy(
                    RollbackType.CHECKPOINT,
                    f"Moderate confidence; returning to checkpoint {checkpoint.id}",
                    0.6,
                    checkpoint_id=checkpoint.id,
                )

        if average_confidence < 5.0:
            return RollbackStrategy(
                RollbackType.PARTIAL,
                "Removing low-confidence records only",
                0.5,
                tables=tuple(self.state.low_confidence_records) if self.state else (),
            )

        return RollbackStrategy(RollbackType.PARTIAL, "No rollback needed", 0.1)

    def _known_tables(self, affected_tables: Optional[Any]) -> tuple:
        if affected_tables:
            return tuple(affected_tables)
        if self.state is not None:
            return tuple(entry["table"] for entry in self.state.processed_tables)
        return ()

    def _tables_over_error_rate(self, errors: Sequence[Any], affected_tables: Optional[Any]) -> List[str]:
        error_counts = Counter(_field(e, "table") for e in errors if _field(e, "table"))
        record_counts: Dict[str, int] = {}
        if self.state is not None:
            for entry in self.state.processed_tables:
                record_counts[entry["table"]] = entry.get("record_count") or 0
                # Tables without listed errors fall back to their recorded count
                if entry["table"] not in error_counts and entry.get("error_count"):
                    error_counts[entry["table"]] = entry["error_count"]
        if isinstance(affected_tables, Mapping):
            record_counts.update(affected_tables)

        failing = []
        for table, count in error_counts.items():
            records = record_counts.get(table, 0)
            if records > 0 and count / records > TABLE_ERROR_RATE_LIMIT:
                failing.append(table)
        return sorted(failing, key=lambda t: LOAD_ORDER.index(t) if t in LOAD_ORDER else len(LOAD_ORDER))

    def _last_confident_checkpoint(self) -> Optional[MigrationCheckpoint]:
        if self.state is None:
            return None
        for checkpoint in reversed(self.state.checkpoints):
            if checkpoint.confidence >= HIGH_CONFIDENCE_CHECKPOINT:
                return checkpoint
        return None

    def save_rollback_plan(self, strategy: RollbackStrategy) -> Path:
        state = self._require_state()
        path = self.plan_dir / f"{state.id}.json"
        self._write_json(
            path,
            {"migration_id": state.id, "created_at": _now(), "strategy": strategy.to_dict()},
        )
        return path

    # Execution

    def execute_rollback(self, strategy: RollbackStrategy) -> RollbackResult:
        """Apply ``strategy`` to the record store and mark the run rolled back."""
        state = self._require_state()
        start = time.time()
        result = RollbackResult(success=True)
        logger.warning(f"Executing {strategy.type.value} rollback of {state.id}: {strategy.reason}")

        if self.store is None:
            result.success = False
            result.errors.append("No record store attached")
            result.duration = time.time() - start
            return result

        try:
            if strategy.type == RollbackType.FULL:
                self._restore_tables(list(strategy.tables) or None, result)
            elif strategy.type == RollbackType.TABLE:
                self._restore_tables(list(strategy.tables), result)
            elif strategy.type == RollbackType.CHECKPOINT:
                self._rollback_to_checkpoint(strategy.checkpoint_id, result)
            else:
                self._delete_ids(state.low_confidence_records, result)
        except StoreError as e:
            result.success = False
            result.errors.append(str(e))
            logger.error(f"Rollback of {state.id} failed: {e}")

        if result.success:
            self._transition(MigrationStatus.ROLLED_BACK)
            logger.warning(
                f"Rollback complete: {result.records_affected} records in "
                f"{len(result.tables_affected)} tables"
            )
        elif state.status == MigrationStatus.IN_PROGRESS:
            # An incomplete rollback leaves the run failed, not rolled back
            self._transition(MigrationStatus.FAILED)
        else:
            self._persist()
        result.duration = time.time() - start
        return result

    def _written_ids(self, after: int = 0) -> Dict[str, List[str]]:
        state = self._require_state()
        written: Dict[str, List[str]] = {}
        for checkpoint in state.checkpoints[after:]:
            for table, ids in checkpoint.metadata.get("record_ids", {}).items():
                written.setdefault(table, []).extend(ids)
        for table, ids in state.pending_writes.items():
            written.setdefault(table, []).extend(ids)
        return written

    def _restore_tables(self, tables: Optional[List[str]], result: RollbackResult) -> None:
        if self.backup is None:
            logger.warning("No backup snapshot available; deleting tracked writes instead")
            written = self._written_ids()
            if tables:
                written = {t: ids for t, ids in written.items() if t in tables}
            self._delete_ids(written, result)
            return

        if tables is None:
            tables = list(self.backup)
        # Dependent tables first
        ordered = sorted(
            tables,
            key=lambda t: LOAD_ORDER.index(t) if t in LOAD_ORDER else -1,
            reverse=True,
        )
        for table in ordered:
            snapshot = self.backup.get(table, [])
            removed = self.store.delete_many(table)
            restored = self.store.create_many(table, snapshot, skip_duplicates=True)
            affected = max(removed - len(restored), 0)
            result.records_affected += affected
            if affected:
                result.tables_affected.append(table)

    def _rollback_to_checkpoint(self, checkpoint_id: Optional[str], result: RollbackResult) -> None:
        state = self._require_state()
        index = None
        for i, checkpoint in enumerate(state.checkpoints):
            if checkpoint.id == checkpoint_id:
                index = i
                break
        if index is None:
            raise StoreError(f"Checkpoint {checkpoint_id} not found")
        self._delete_ids(self._written_ids(after=index + 1), result)

    def _delete_ids(self, ids_by_table: Dict[str, List[str]], result: RollbackResult) -> None:
        ordered = sorted(
            ids_by_table,
            key=lambda t: LOAD_ORDER.index(t) if t in LOAD_ORDER else -1,
            reverse=True,
        )
        for table in ordered:
            deleted = sum(1 for record_id in ids_by_table[table] if self.store.delete(table, record_id))
            result.records_affected += deleted
            if deleted:
                result.tables_affected.append(table)

    # Reporting

    def generate_rollback_report(self, strategy: Optional[RollbackStrategy] = None) -> str:
        """Render the state, checkpoints and recommended strategy as markdown."""
        state = self._require_state()
        lines = [
            f"# Rollback Report: {state.id}",
            "",
            f"- Status: {state.status.value}",
            f"- Started: {state.started_at}",
            f"- Finished: {state.completed_at or '-'}",
            f"- Checkpoints: {len(state.checkpoints)}",
            f"- Errors logged: {len(state.errors)}",
            "",
            "## Tables",
            "",
            "| Table | Status | Records | Errors | Confidence |",
            "|---|---|---|---|---|",
        ]
        for entry in state.processed_tables:
            lines.append(
                f"| {entry['table']} | {entry['status']} | {entry.get('record_count', 0)} | "
                f"{entry.get('error_count', 0)} | {entry.get('confidence')} |"
            )

        if state.checkpoints:
            lines += ["", "## Checkpoints", ""]
            for checkpoint in state.checkpoints:
                lines.append(
                    f"- {checkpoint.id} ({checkpoint.phase}, {checkpoint.table}): "
                    f"{checkpoint.records_processed} records, confidence {checkpoint.confidence}"
                )

        if state.errors:
            lines += ["", "## Errors", ""]
            for error in state.errors[:20]:
                lines.append(f"- [{error['severity']}] {error['phase']}: {error['error']}")

        flagged = sum(len(ids) for ids in state.low_confidence_records.values())
        if flagged:
            lines += ["", f"Low-confidence records flagged: {flagged}"]

        if strategy is not None:
            lines += [
                "",
                "## Recommended Strategy",
                "",
                f"- Type: {strategy.type.value}",
                f"- Confidence: {strategy.confidence}",
                f"- Reason: {strategy.reason}",
            ]
            if strategy.checkpoint_id:
                lines.append(f"- Checkpoint: {strategy.checkpoint_id}")
            if strategy.tables:
                lines.append(f"- Tables: {', '.join(strategy.tables)}")

        return "\n".join(lines) + "\n"
