#!/usr/bin/env python3
"""
Command implementations for crm-migrate.

Each run_*_command function implements one CLI subcommand:
- analyze: workbook structure report
- map: field mapping proposal (exit 2 when human review is needed)
- migrate: full migration with report
- rollback: strategy evaluation and execution from persisted state

Exit codes: 0 success, 1 error or failed run, 2 human review required.
"""

import json
import sys
from pathlib import Path

from .analyzer import WorkbookAnalyzer, generate_analysis_report
from .cli import setup_cli
from .enhanced_logging import EventLogger
from .exceptions import InvalidStateTransition, MigrationError, WorkbookReadError
from .logging_config import get_logger
from .mapper import FieldMapper, load_mapping_overrides
from .orchestrator import MigrationOrchestrator, Outcome
from .quality_monitor import DataQualityMonitor
from .reporting import build_report, ensure_json_serializable, write_report
from .rollback import RollbackManager, RollbackStrategy, RollbackType
from .schema import ValidationError
from .store import JsonRecordStore

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REVIEW = 2


def _workbook_path(args, event_logger: EventLogger) -> Path:
    path = Path(args.workbook)
    if not path.exists():
        event_logger.log_error({"error": "missing_input", "path": str(path)})
        sys.exit(EXIT_ERROR)
    return path


def _analyze(path: Path, config, event_logger: EventLogger):
    try:
        return WorkbookAnalyzer(header_scan_rows=config.header_scan_rows).analyze(path)
    except WorkbookReadError as e:
        event_logger.log_error({"error": "unreadable_workbook", "path": str(path), "message": str(e)})
        sys.exit(EXIT_ERROR)


def run_analyze_command(args, config):
    """Run the analyze command - writes a markdown analysis of the workbook."""
    output_dir = config.get_output_dir()
    event_logger = EventLogger(args, "analyze", output_dir)
    path = _workbook_path(args, event_logger)
    analysis = _analyze(path, config, event_logger)

    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / f"{path.stem}_analysis.md"
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(generate_analysis_report(analysis))

    event_logger.emit(
        "analysis:complete",
        {
            "workbook": str(path),
            "sheets": [sheet.name for sheet in analysis.sheets],
            "total_rows": analysis.total_rows,
            "potential_issues": list(analysis.potential_issues),
            "output_file": str(report_path),
        },
    )
    if event_logger.stdout_format == "human":
        event_logger.console.print(f"  out: {event_logger.normalize_path(report_path)}")
    return EXIT_OK


def run_map_command(args, config):
    """Run the map command - infers field mappings and writes them as JSON."""
    output_dir = config.get_output_dir()
    event_logger = EventLogger(args, "map", output_dir)
    path = _workbook_path(args, event_logger)

    overrides = None
    if config.overrides_path:
        try:
            overrides = load_mapping_overrides(config.overrides_path)
        except ValidationError as e:
            event_logger.log_error({"error": "invalid_overrides", "message": str(e)})
            sys.exit(EXIT_ERROR)

    analysis = _analyze(path, config, event_logger)
    mapping_result = FieldMapper().map_workbook(analysis, overrides)

    output_dir.mkdir(parents=True, exist_ok=True)
    mapping_path = output_dir / f"{path.stem}_mapping.json"
    with open(mapping_path, "w", encoding="utf-8") as f:
        json.dump(ensure_json_serializable(mapping_result.to_dict()), f, indent=2, ensure_ascii=False)

    event_logger.print_mappings(mapping_result)
    event_logger.emit(
        "mapping:complete",
        {
            "workbook": str(path),
            "summary": mapping_result.summary,
            "average_confidence": mapping_result.average_confidence,
            "requires_human_review": mapping_result.requires_human_review,
            "output_file": str(mapping_path),
        },
    )

    if mapping_result.requires_human_review:
        logger.warning("Low-confidence mappings found; review them or supply overrides")
        sys.exit(EXIT_REVIEW)
    return EXIT_OK


def run_migrate_command(args, config):
    """Run the migrate command - full migration into the JSON record store."""
    output_dir = config.get_output_dir()
    event_logger = EventLogger(args, "migrate", output_dir)
    path = _workbook_path(args, event_logger)

    try:
        store = JsonRecordStore(args.store)
        monitor = DataQualityMonitor(history_path=output_dir / "quality_history.jsonl")
        orchestrator = MigrationOrchestrator(store, config, sink=event_logger, quality_monitor=monitor)
        result = orchestrator.run(path)
    except (MigrationError, ValidationError) as e:
        event_logger.log_error({"error": "exception", "message": str(e)})
        sys.exit(EXIT_ERROR)

    report = build_report(result, monitor)
    json_path, md_path = write_report(report, output_dir / "reports", result.migration_id)
    event_logger.print_summary(report, [json_path, md_path])
    logger.info(f"Report written to {md_path}")

    if result.outcome == Outcome.REVIEW_REQUIRED:
        sys.exit(EXIT_REVIEW)
    if result.outcome in (Outcome.FAILED, Outcome.ABORTED, Outcome.ROLLED_BACK):
        sys.exit(EXIT_ERROR)
    return EXIT_OK


def run_rollback_command(args, config):
    """Run the rollback command - evaluates and executes a rollback from saved state."""
    output_dir = config.get_output_dir()
    event_logger = EventLogger(args, "rollback", output_dir)

    try:
        store = JsonRecordStore(args.store)
        manager = RollbackManager.load(config.get_state_dir(), args.migration_id, store)
    except InvalidStateTransition:
        event_logger.log_error({"error": "missing_state", "migration_id": args.migration_id})
        sys.exit(EXIT_ERROR)
    except MigrationError as e:
        event_logger.log_error({"error": "exception", "message": str(e)})
        sys.exit(EXIT_ERROR)

    state = manager.state
    if args.strategy:
        strategy = RollbackStrategy(
            RollbackType(args.strategy),
            "Requested from the command line",
            1.0,
            checkpoint_id=args.checkpoint,
            tables=tuple(args.tables or ()),
        )
    else:
        confidences = [e["confidence"] for e in state.processed_tables if e.get("confidence") is not None]
        average = sum(confidences) / len(confidences) if confidences else 10.0
        strategy = manager.determine_rollback_strategy(state.errors, average)

    manager.save_rollback_plan(strategy)
    report_dir = output_dir / "reports"
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"{state.id}_rollback.md"
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(manager.generate_rollback_report(strategy))

    event_logger.emit("rollback:plan", {"migration_id": state.id, **strategy.to_dict()})
    if args.plan_only:
        return EXIT_OK
    if not args.strategy and strategy.confidence <= config.rollback_threshold:
        logger.info(
            f"Recommended {strategy.type.value} rollback has confidence {strategy.confidence}; "
            f"nothing executed (threshold {config.rollback_threshold})"
        )
        return EXIT_OK

    event_logger.emit("rollback:start", {"migration_id": state.id, **strategy.to_dict()})
    try:
        result = manager.execute_rollback(strategy)
    except InvalidStateTransition as e:
        event_logger.log_error({"error": "exception", "message": str(e)})
        sys.exit(EXIT_ERROR)
    event_logger.emit("rollback:complete", {"migration_id": state.id, **result.to_dict()})

    if not result.success:
        sys.exit(EXIT_ERROR)
    return EXIT_OK


def main():
    """Main entry point for the application."""
    from .logging_config import setup_logging

    # Initialize logging
    setup_logging()

    args, config = setup_cli()

    # Execute the appropriate command
    if args.command == "analyze":
        run_analyze_command(args, config)
    elif args.command == "map":
        run_map_command(args, config)
    elif args.command == "migrate":
        run_migrate_command(args, config)
    elif args.command == "rollback":
        run_rollback_command(args, config)
    else:
        logger.error(f"Unknown command: {args.command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
