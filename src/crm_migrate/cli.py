#!/usr/bin/env python3
"""
CLI parsing and argument handling for crm-migrate.

Contains all CLI parsing and argument handling including:
- argparse setup and configuration
- subcommands definition (analyze, map, migrate, rollback)
- help and version handling
"""

import argparse
import sys

from . import __version__
from .config_loader import load_config
from .logging_config import get_logger

# Initialize logger for this module
logger = get_logger(__name__)

DEFAULT_STORE = "crm-store.json"


def _add_output_flags(parser: argparse.ArgumentParser) -> None:
    """Add the logging/output flags shared by every subcommand."""
    parser.add_argument(
        "--output-dir", type=str, help="Directory for reports and logs (default from config)"
    )
    parser.add_argument(
        "--json", action="store_true", help="Force JSONL output to stdout"
    )
    parser.add_argument(
        "--format", choices=["human", "jsonl"], help="Output format (overrides TTY detection)"
    )
    parser.add_argument("--log-file", type=str, help="Override log file path")
    parser.add_argument(
        "--no-log-file", action="store_true", help="Do not write log file"
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="No stdout output; still writes file unless --no-log-file",
    )


def setup_cli(argv=None):
    """Set up the command line interface with argparse."""
    # Load configuration to get default values
    config = load_config()

    parser = argparse.ArgumentParser(
        description="CRM Migrate - Confidence-scored spreadsheet migration into a CRM"
    )
    parser.add_argument(
        "--version", action="version", version=f"crm-migrate {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Analyze subcommand
    analyze_parser = subparsers.add_parser(
        "analyze", help="Analyze workbook structure and write a markdown report"
    )
    analyze_parser.add_argument("workbook", help="Path to the .xlsx workbook")
    analyze_parser.add_argument(
        "--header-scan-rows",
        dest="header_scan_rows",
        type=int,
        help=f"Rows scanned for the header row (default: {config.header_scan_rows})",
    )
    _add_output_flags(analyze_parser)

    # Map subcommand
    map_parser = subparsers.add_parser(
        "map", help="Infer field mappings; exits 2 when human review is needed"
    )
    map_parser.add_argument("workbook", help="Path to the .xlsx workbook")
    map_parser.add_argument(
        "--overrides", type=str, help="Mapping overrides YAML file"
    )
    map_parser.add_argument(
        "--header-scan-rows", dest="header_scan_rows", type=int,
        help=f"Rows scanned for the header row (default: {config.header_scan_rows})",
    )
    _add_output_flags(map_parser)

    # Migrate subcommand
    migrate_parser = subparsers.add_parser(
        "migrate", help="Run the full migration and write the report"
    )
    migrate_parser.add_argument("workbook", help="Path to the .xlsx workbook")
    migrate_parser.add_argument(
        "--store", default=DEFAULT_STORE, help=f"JSON record store file (default: {DEFAULT_STORE})"
    )
    migrate_parser.add_argument(
        "--overrides", type=str, help="Mapping overrides YAML file"
    )
    migrate_parser.add_argument(
        "--rules", type=str, help="Validation rules YAML file"
    )
    migrate_parser.add_argument(
        "--state-dir", type=str, help="Directory for migration state and checkpoints"
    )
    migrate_parser.add_argument(
        "--dry-run", dest="dry_run", action="store_true", default=None,
        help="Validate and count without writing records",
    )
    migrate_parser.add_argument(
        "--batch-size", dest="batch_size", type=int,
        help=f"Records per batch (default: {config.batch_size})",
    )
    migrate_parser.add_argument(
        "--checkpoint-frequency", dest="checkpoint_frequency", type=int,
        help=f"Records between checkpoints (default: {config.checkpoint_frequency})",
    )
    migrate_parser.add_argument(
        "--sample-size", dest="sample_size", type=int,
        help=f"Rows per sheet in the pre-migration sample (default: {config.sample_size})",
    )
    migrate_parser.add_argument(
        "--min-quality-score", dest="min_quality_score", type=int,
        help=f"Records below this quality score are flagged (default: {config.min_quality_score})",
    )
    migrate_parser.add_argument(
        "--max-workers", dest="max_workers", type=int,
        help=f"Threads used for sample validation (default: {config.max_workers})",
    )
    migrate_parser.add_argument(
        "--rollback-threshold", dest="rollback_threshold", type=float,
        help=f"Execute rollbacks above this confidence (default: {config.rollback_threshold})",
    )
    migrate_parser.add_argument(
        "--stop-on-error", dest="stop_on_error", action="store_true", default=None,
        help="Stop loading at the first invalid record",
    )
    migrate_parser.add_argument(
        "--allow-low-confidence", dest="allow_low_confidence", action="store_true", default=None,
        help="Proceed even when mappings need human review",
    )
    migrate_parser.add_argument(
        "--no-rollback", dest="enable_rollback", action="store_false", default=None,
        help="Never capture backups or execute rollbacks",
    )
    migrate_parser.add_argument(
        "--no-references", dest="validate_references", action="store_false", default=None,
        help="Skip referential integrity checks",
    )
    migrate_parser.add_argument(
        "--no-duplicates", dest="check_duplicates", action="store_false", default=None,
        help="Skip duplicate detection",
    )
    migrate_parser.add_argument(
        "--header-scan-rows", dest="header_scan_rows", type=int,
        help=f"Rows scanned for the header row (default: {config.header_scan_rows})",
    )
    _add_output_flags(migrate_parser)

    # Rollback subcommand
    rollback_parser = subparsers.add_parser(
        "rollback", help="Evaluate and execute a rollback from persisted state"
    )
    rollback_parser.add_argument("migration_id", help="Id of the migration to roll back")
    rollback_parser.add_argument(
        "--store", default=DEFAULT_STORE, help=f"JSON record store file (default: {DEFAULT_STORE})"
    )
    rollback_parser.add_argument(
        "--state-dir", type=str, help="Directory for migration state and checkpoints"
    )
    rollback_parser.add_argument(
        "--strategy",
        choices=["full", "table", "checkpoint", "partial"],
        help="Force a strategy instead of the recommended one",
    )
    rollback_parser.add_argument(
        "--checkpoint", type=str, help="Checkpoint id for --strategy checkpoint"
    )
    rollback_parser.add_argument(
        "--tables", nargs="+", help="Tables for --strategy table"
    )
    rollback_parser.add_argument(
        "--plan-only", action="store_true", help="Only write the rollback plan and report"
    )
    _add_output_flags(rollback_parser)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config.merge_with_cli_args(args)
    return args, config


def app():
    """Console script entry point."""
    from .main import main

    main()
