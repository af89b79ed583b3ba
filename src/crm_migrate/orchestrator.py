#!/usr/bin/env python3
"""
Migration orchestrator for crm-migrate.

Runs one workbook migration through an explicit phase sequence:

    MAPPING -> VALIDATION -> LOADING -> VERIFICATION -> COMPLETE

with ABORTED reachable from any phase through the cancellation event. The
orchestrator owns the run's reference cache and rollback manager and reports
progress only through the injected event sink.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from . import events
from .analyzer import SheetAnalysis, WorkbookAnalysis, WorkbookAnalyzer
from .config_loader import Config
from .events import NullSink, ProgressSink
from .exceptions import MigrationAborted
from .logging_config import get_logger
from .mapper import FieldMapper, MappingResult, TableMapping, load_mapping_overrides
from .quality_monitor import DataQualityMonitor
from .records import transform_row
from .reference_cache import ReferenceCache
from .rollback import RollbackManager, RollbackResult, RollbackStrategy, RollbackType
from .rules import load_rules
from .schema import MappingOverridesSchema
from .store import RecordStore
from .target_schema import LOAD_ORDER
from .validation import (
    RecordError,
    RecordWarning,
    ValidationEngine,
    ValidationOptions,
    ValidationResult,
    ValidationService,
)

logger = get_logger(__name__)

LOW_MAPPING_CONFIDENCE = 5.0
SAMPLE_WARNING_RATE = 0.10
SAMPLE_CRITICAL_RATE = 0.25
VERIFICATION_TOLERANCE = 0.10


class Phase(str, Enum):
    MAPPING = "mapping"
    VALIDATION = "validation"
    LOADING = "loading"
    VERIFICATION = "verification"
    COMPLETE = "complete"
    ABORTED = "aborted"


class Outcome(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    REVIEW_REQUIRED = "review_required"


@dataclass
class SampleValidation:
    """Pre-migration sample check of one sheet."""

    table: str
    sheet: str
    sampled: int
    invalid: int
    error_rate: float
    estimated_errors: int
    level: str
    result: ValidationResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "sheet": self.sheet,
            "sampled": self.sampled,
            "invalid": self.invalid,
            "error_rate": round(self.error_rate, 4),
            "estimated_errors": self.estimated_errors,
            "level": self.level,
            "data_quality_score": self.result.data_quality_score,
        }


@dataclass
class TableLoadResult:
    """Loading counts of one target table across all its sheets."""

    table: str
    sheets: List[str] = field(default_factory=list)
    total: int = 0
    processed: int = 0
    saved: int = 0
    skipped: int = 0
    flagged: int = 0
    errors: List[RecordError] = field(default_factory=list)
    warnings: List[RecordWarning] = field(default_factory=list)
    quality_score: int = 100
    confidence: float = 0.0
    duration: float = 0.0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "sheets": self.sheets,
            "total": self.total,
            "processed": self.processed,
            "saved": self.saved,
            "skipped": self.skipped,
            "flagged": self.flagged,
            "error_count": self.error_count,
            "warning_count": len(self.warnings),
            "quality_score": self.quality_score,
            "confidence": self.confidence,
            "duration": round(self.duration, 3),
        }


@dataclass
class MigrationResult:
    """Everything a run produced, successful or not."""

    migration_id: str
    workbook: str
    dry_run: bool = False
    outcome: Outcome = Outcome.FAILED
    phase: Phase = Phase.MAPPING
    analysis: Optional[WorkbookAnalysis] = None
    mapping: Optional[MappingResult] = None
    sample_validation: Dict[str, SampleValidation] = field(default_factory=dict)
    tables: Dict[str, TableLoadResult] = field(default_factory=dict)
    verification: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    rollback_strategy: Optional[RollbackStrategy] = None
    rollback_result: Optional[RollbackResult] = None
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    duration: float = 0.0

    @property
    def total_processed(self) -> int:
        return sum(t.processed for t in self.tables.values())

    @property
    def total_saved(self) -> int:
        return sum(t.saved for t in self.tables.values())

    @property
    def total_skipped(self) -> int:
        return sum(t.skipped for t in self.tables.values())

    @property
    def record_errors(self) -> List[RecordError]:
        return [e for t in self.tables.values() for e in t.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "workbook": self.workbook,
            "dry_run": self.dry_run,
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "mapping": self.mapping.to_dict() if self.mapping else None,
            "sample_validation": {k: v.to_dict() for k, v in self.sample_validation.items()},
            "tables": {k: v.to_dict() for k, v in self.tables.items()},
            "verification": self.verification,
            "rollback_strategy": self.rollback_strategy.to_dict() if self.rollback_strategy else None,
            "rollback_result": self.rollback_result.to_dict() if self.rollback_result else None,
            "errors": self.errors,
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "totals": {
                "processed": self.total_processed,
                "saved": self.total_saved,
                "skipped": self.total_skipped,
            },
        }


class MigrationOrchestrator:
    """
    Coordinates a complete workbook migration.

    Handles:
    - Workbook analysis and field mapping (with overrides)
    - Pre-migration sample validation
    - Batched transform/validate/persist in referential order
    - Checkpoints, verification and rollback
    - Progress events and quality metrics
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[Config] = None,
        sink: Optional[ProgressSink] = None,
        cancel_event: Optional[threading.Event] = None,
        quality_monitor: Optional[DataQualityMonitor] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Record store the migration writes to
            config: Migration configuration (defaults when omitted)
            sink: Receiver of progress events
            cancel_event: Cooperative cancellation signal
            quality_monitor: Monitor fed with per-table metrics
        """
        self.store = store
        self.config = config or Config()
        self.sink = sink or NullSink()
        self.cancel_event = cancel_event or threading.Event()
        self.quality_monitor = quality_monitor or DataQualityMonitor()
        if self.quality_monitor.on_alert is None:
            self.quality_monitor.on_alert = lambda alert: self._emit(events.QUALITY_ALERT, alert.to_dict())

        self.analyzer = WorkbookAnalyzer(header_scan_rows=self.config.header_scan_rows)
        self.mapper = FieldMapper()
        self.rules = load_rules(self.config.rules_path)

        self.migration_id: Optional[str] = None
        self.phase = Phase.MAPPING
        self.rollback: Optional[RollbackManager] = None
        self.cache: Optional[ReferenceCache] = None
        self._writes_started = False
        self._stopped = False
        self._loading_table: Optional[str] = None
        self._scores: Dict[str, List[int]] = {}

    def abort(self) -> None:
        """Request cancellation; honoured between batches."""
        self.cancel_event.set()

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.sink.emit(event, {"migration_id": self.migration_id, **payload})

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        logger.info(f"=== {phase.value.upper()} ===")
        self._emit(events.PHASE_START, {"phase": phase.value})

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise MigrationAborted(f"Migration {self.migration_id} was cancelled")

    def _engine(self, cache: ReferenceCache, as_of: datetime) -> ValidationEngine:
        return ValidationEngine(
            rules=self.rules,
            cache=cache,
            as_of=as_of,
            validate_references=self.config.validate_references,
            check_duplicates=self.config.check_duplicates,
        )

    def run(self, workbook_path, overrides: Optional[MappingOverridesSchema] = None) -> MigrationResult:
        """
        Migrate one workbook into the record store.

        Args:
            workbook_path: Path to the .xlsx workbook
            overrides: Validated mapping overrides; read from the configured
                overrides file when omitted

        Returns:
            MigrationResult with the outcome and every phase's counts
        """
        start = time.time()
        self.migration_id = f"migration-{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"
        self._writes_started = False
        self._stopped = False
        self._loading_table = None
        self._scores = {}
        as_of = datetime.now()

        result = MigrationResult(
            migration_id=self.migration_id,
            workbook=str(workbook_path),
            dry_run=self.config.dry_run,
        )
        self.rollback = RollbackManager(self.config.get_state_dir(), self.store)
        self.rollback.initialize_migration(self.migration_id)
        self._emit(events.MIGRATION_START, {"workbook": str(workbook_path), "dry_run": self.config.dry_run})

        try:
            self._enter(Phase.MAPPING)
            result.analysis = self.analyzer.analyze(workbook_path)
            if overrides is None and self.config.overrides_path:
                overrides = load_mapping_overrides(self.config.overrides_path)
            result.mapping = self.mapper.map_workbook(result.analysis, overrides)
            self._check_cancelled()

            if result.mapping.requires_human_review and not self.config.allow_low_confidence:
                logger.warning("Mapping requires human review; no records will be written")
                result.outcome = Outcome.REVIEW_REQUIRED
                self.rollback.log_error(Phase.MAPPING.value, "Mapping requires human review", severity="low")
                self.rollback.fail_migration()
                return self._finish(result, start)

            self.cache = ReferenceCache.load(self.store)

            self._enter(Phase.VALIDATION)
            critical = self._validate_samples(result, as_of)
            self._check_cancelled()
            if critical and not self.config.dry_run:
                logger.error("Sample error rate is critical; migration halted before loading")
                result.outcome = Outcome.FAILED
                self.rollback.log_error(Phase.VALIDATION.value, "Critical sample error rate", severity="high")
                self.rollback.fail_migration()
                return self._finish(result, start)

            self._enter(Phase.LOADING)
            before_counts = {table: self.store.count(table) for table in LOAD_ORDER}
            if self.config.enable_rollback and not self.config.dry_run:
                self.rollback.capture_backup(LOAD_ORDER)
            self._load(result, as_of)

            self._enter(Phase.VERIFICATION)
            self._verify(result, before_counts)

            self._evaluate_rollback(result)
            if result.rollback_result is not None:
                result.outcome = Outcome.ROLLED_BACK if result.rollback_result.success else Outcome.FAILED
            else:
                self.phase = Phase.COMPLETE
                self.rollback.complete_migration()
                has_warnings = (
                    result.total_skipped > 0
                    or any(v["flagged"] for v in result.verification.values())
                    or any(s.level != "ok" for s in result.sample_validation.values())
                    or self._stopped
                )
                result.outcome = Outcome.COMPLETED_WITH_WARNINGS if has_warnings else Outcome.COMPLETED

        except MigrationAborted as e:
            logger.warning(str(e))
            self.phase = Phase.ABORTED
            result.errors.append(str(e))
            self._mark_loading_table_failed()
            self.rollback.log_error(Phase.ABORTED.value, e, severity="medium")
            self._evaluate_rollback(result)
            if result.rollback_result is not None:
                result.outcome = Outcome.ROLLED_BACK if result.rollback_result.success else Outcome.FAILED
            else:
                result.outcome = Outcome.ABORTED
                self.rollback.fail_migration()

        except Exception as e:
            logger.exception(f"Migration failed during {self.phase.value}: {e}")
            result.errors.append(f"{type(e).__name__}: {e}")
            self._mark_loading_table_failed()
            self.rollback.log_error(self.phase.value, e, severity="critical")
            if self._writes_started and self.config.enable_rollback and not self.config.dry_run:
                result.rollback_strategy = self._recovery_strategy()
                result.rollback_result = self._execute_rollback(result.rollback_strategy)
                result.outcome = Outcome.ROLLED_BACK if result.rollback_result.success else Outcome.FAILED
            else:
                result.outcome = Outcome.FAILED
                self.rollback.fail_migration()

        return self._finish(result, start)

    def _mark_loading_table_failed(self) -> None:
        if self._loading_table is not None:
            self.rollback.update_table_status(self._loading_table, "failed")
            self._loading_table = None

    def _finish(self, result: MigrationResult, start: float) -> MigrationResult:
        result.phase = self.phase
        result.duration = time.time() - start
        self._emit(
            events.MIGRATION_COMPLETE,
            {
                "outcome": result.outcome.value,
                "processed": result.total_processed,
                "saved": result.total_saved,
                "skipped": result.total_skipped,
                "duration": round(result.duration, 3),
            },
        )
        logger.info(
            f"Migration {result.migration_id} finished: {result.outcome.value} "
            f"({result.total_saved} saved, {result.total_skipped} skipped)"
        )
        return result

    def _sheets(self, result: MigrationResult, table: str):
        for table_mapping in result.mapping.mappings_for(table):
            sheet = result.analysis.get_sheet(table_mapping.source_sheet)
            if sheet is not None:
                yield sheet, table_mapping

    # Validation phase

    def _validate_samples(self, result: MigrationResult, as_of: datetime) -> bool:
        """Validate the first rows of every sheet; returns True when any rate is critical."""
        projected = self.cache.copy()
        service = ValidationService(self._engine(projected, as_of))
        options = ValidationOptions(
            calculate_quality=self.config.calculate_quality,
            max_workers=self.config.max_workers,
        )
        critical = False

        for table in LOAD_ORDER:
            for sheet, table_mapping in self._sheets(result, table):
                rows = sheet.rows[: self.config.sample_size]
                numbers = sheet.row_numbers[: self.config.sample_size]
                records = [transform_row(table, row, table_mapping, projected) for row in rows]

                self._emit(events.VALIDATION_START, {"table": table, "sheet": sheet.name, "sample": len(records)})
                validation = service.validate_records(table, records, options, numbers)
                # Rows that would be skipped must not resolve references of later sheets
                invalid_rows = {error.row for error in validation.errors}
                for record, row_number in zip(records, numbers):
                    if row_number not in invalid_rows:
                        projected.register(table, record)

                rate = validation.invalid_count / validation.processed_count if validation.processed_count else 0.0
                level = "ok"
                if rate > SAMPLE_CRITICAL_RATE:
                    level = "critical"
                    critical = True
                elif rate > SAMPLE_WARNING_RATE:
                    level = "warning"

                sample = SampleValidation(
                    table=table,
                    sheet=sheet.name,
                    sampled=validation.processed_count,
                    invalid=validation.invalid_count,
                    error_rate=rate,
                    estimated_errors=round(rate * sheet.row_count),
                    level=level,
                    result=validation,
                )
                result.sample_validation[sheet.name] = sample
                self._emit(events.VALIDATION_COMPLETE, sample.to_dict())
                if level != "ok":
                    logger.warning(
                        f"Sample error rate {rate:.0%} for sheet '{sheet.name}' ({table}) is {level}"
                    )
                    self._emit(
                        events.QUALITY_ALERT,
                        {
                            "table": table,
                            "sheet": sheet.name,
                            "severity": level.upper(),
                            "error_rate": rate,
                            "estimated_errors": sample.estimated_errors,
                        },
                    )
        return critical

    # Loading phase

    def _load(self, result: MigrationResult, as_of: datetime) -> None:
        engine = self._engine(self.cache, as_of)
        for table in LOAD_ORDER:
            if result.mapping.mappings_for(table):
                self.rollback.update_table_status(table, "pending")
        for table in LOAD_ORDER:
            for sheet, table_mapping in self._sheets(result, table):
                if self._stopped:
                    return
                entry = result.tables.setdefault(table, TableLoadResult(table=table))
                self._load_sheet(entry, sheet, table_mapping, engine)

    def _load_sheet(
        self,
        entry: TableLoadResult,
        sheet: SheetAnalysis,
        table_mapping: TableMapping,
        engine: ValidationEngine,
    ) -> None:
        table = entry.table
        config = self.config
        started = time.time()
        entry.sheets.append(sheet.name)
        entry.total += len(sheet.rows)
        entry.confidence = table_mapping.confidence
        flag_all = table_mapping.confidence < LOW_MAPPING_CONFIDENCE
        scores: List[int] = []
        first_error = len(entry.errors)
        first_warning = len(entry.warnings)
        first_skipped = entry.skipped
        since_checkpoint = 0

        self._loading_table = table
        self.rollback.update_table_status(table, "processing", confidence=table_mapping.confidence)
        self._emit(events.ENTITY_START, {"table": table, "sheet": sheet.name, "total": len(sheet.rows)})

        for offset in range(0, len(sheet.rows), config.batch_size):
            self._check_cancelled()
            batch = sheet.rows[offset: offset + config.batch_size]
            numbers = sheet.row_numbers[offset: offset + config.batch_size]
            accepted = []
            flagged = set()

            for row, row_number in zip(batch, numbers):
                record = transform_row(table, row, table_mapping, self.cache)
                row_result = engine.validate_row(table, record, row_number)
                entry.processed += 1
                since_checkpoint += 1
                scores.append(row_result.quality_score)
                entry.errors.extend(row_result.errors)
                entry.warnings.extend(row_result.warnings)

                if row_result.errors:
                    entry.skipped += 1
                    logger.debug(
                        f"Skipping {table} row {row_number}: "
                        f"{'; '.join(e.message for e in row_result.errors)}"
                    )
                    if config.stop_on_error:
                        self._stopped = True
                        break
                    continue

                self.cache.register(table, record)
                accepted.append(record)
                if flag_all or row_result.quality_score < config.min_quality_score:
                    flagged.add(record.id)

            if accepted:
                if config.dry_run:
                    saved_ids = [record.id for record in accepted]
                else:
                    self._writes_started = True
                    saved_ids = self.store.create_many(table, accepted, skip_duplicates=True)
                    self.rollback.track_writes(table, saved_ids)
                    low = [record_id for record_id in saved_ids if record_id in flagged]
                    if low:
                        self.rollback.flag_low_confidence(table, low)
                entry.saved += len(saved_ids)
                entry.flagged += sum(1 for record_id in saved_ids if record_id in flagged)

            if since_checkpoint >= config.checkpoint_frequency:
                self.rollback.create_checkpoint(
                    Phase.LOADING.value, table, entry.processed, table_mapping.confidence,
                    {"sheet": sheet.name},
                )
                since_checkpoint = 0

            self._emit(
                events.ENTITY_PROGRESS,
                {
                    "table": table,
                    "sheet": sheet.name,
                    "processed": entry.processed,
                    "total": entry.total,
                    "saved": entry.saved,
                    "skipped": entry.skipped,
                },
            )
            if self._stopped:
                logger.warning(f"Stopping at first invalid {table} record (stop_on_error)")
                break

        sheet_errors = entry.errors[first_error:]
        table_scores = self._scores.setdefault(table, [])
        table_scores.extend(scores)
        if table_scores and config.calculate_quality:
            entry.quality_score = round(sum(table_scores) / len(table_scores))
        entry.duration += time.time() - started

        self.rollback.create_checkpoint(
            Phase.LOADING.value, table, entry.processed, table_mapping.confidence,
            {"sheet": sheet.name, "table_complete": True},
        )
        self.rollback.log_record_errors(table, sheet_errors, Phase.LOADING.value)
        self.rollback.update_table_status(
            table,
            "failed" if self._stopped else "completed",
            record_count=entry.processed,
            confidence=table_mapping.confidence,
            error_count=entry.error_count,
        )
        self._loading_table = None

        sheet_result = ValidationResult(
            table=table,
            is_valid=not sheet_errors,
            errors=list(sheet_errors),
            warnings=entry.warnings[first_warning:],
            data_quality_score=round(sum(scores) / len(scores)) if scores and config.calculate_quality else 100,
            processed_count=len(scores),
            error_count=len(sheet_errors),
            warning_count=len(entry.warnings) - first_warning,
            invalid_count=entry.skipped - first_skipped,
        )
        self.quality_monitor.record_metrics(table, sheet_result, time.time() - started)

        self._emit(
            events.ENTITY_COMPLETE,
            {
                "table": table,
                "sheet": sheet.name,
                "processed": entry.processed,
                "saved": entry.saved,
                "skipped": entry.skipped,
                "quality_score": entry.quality_score,
            },
        )
        logger.info(
            f"{table} from '{sheet.name}': {entry.saved} saved, {entry.skipped} skipped "
            f"of {entry.processed} processed"
        )

    # Verification phase

    def _verify(self, result: MigrationResult, before_counts: Dict[str, int]) -> None:
        for table, entry in result.tables.items():
            source_rows = entry.total
            if self.config.dry_run:
                persisted = entry.saved
            else:
                persisted = self.store.count(table) - before_counts.get(table, 0)
            shortfall = 1 - persisted / source_rows if source_rows else 0.0
            flagged = source_rows > 0 and persisted < source_rows * (1 - VERIFICATION_TOLERANCE)
            result.verification[table] = {
                "source_rows": source_rows,
                "persisted": persisted,
                "shortfall": round(shortfall, 4),
                "flagged": flagged,
            }
            if flagged:
                logger.warning(
                    f"{table}: only {persisted} of {source_rows} source rows persisted "
                    f"({shortfall:.0%} short)"
                )

    # Rollback

    def _evaluate_rollback(self, result: MigrationResult) -> None:
        errors = result.record_errors
        if not errors and self.phase != Phase.ABORTED:
            return

        affected = {table: entry.processed for table, entry in result.tables.items()}
        average = result.mapping.average_confidence if result.mapping else 0.0
        strategy = self.rollback.determine_rollback_strategy(errors, average, affected)
        result.rollback_strategy = strategy
        self.rollback.save_rollback_plan(strategy)
        logger.info(
            f"Rollback recommendation: {strategy.type.value} "
            f"(confidence {strategy.confidence}): {strategy.reason}"
        )

        if (
            self.config.enable_rollback
            and not self.config.dry_run
            and self._writes_started
            and strategy.confidence > self.config.rollback_threshold
        ):
            result.rollback_result = self._execute_rollback(strategy)

    def _recovery_strategy(self) -> RollbackStrategy:
        checkpoints = self.rollback.state.checkpoints
        if checkpoints:
            return RollbackStrategy(
                RollbackType.CHECKPOINT,
                f"Unrecoverable error; returning to checkpoint {checkpoints[-1].id}",
                0.9,
                checkpoint_id=checkpoints[-1].id,
            )
        return RollbackStrategy(RollbackType.FULL, "Unrecoverable error before any checkpoint", 0.9)

    def _execute_rollback(self, strategy: RollbackStrategy) -> RollbackResult:
        self._emit(events.ROLLBACK_START, strategy.to_dict())
        rollback_result = self.rollback.execute_rollback(strategy)
        self._emit(events.ROLLBACK_COMPLETE, rollback_result.to_dict())
        return rollback_result
