#!/usr/bin/env python3
"""
Enhanced logging for crm-migrate commands.

Provides a Rich-based progress sink with TTY detection, JSONL file output
and configurable stdout formats for the analyze, map, migrate and rollback
commands.
"""

import json
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .reporting import ensure_json_serializable


class EventLogger:
    """Progress sink with Rich output, TTY detection, and JSONL file support."""

    def __init__(self, args, command: str, output_dir: Path):
        """Initialize the event logger.

        Args:
            args: CLI arguments containing logging flags
            command: The command name (analyze, map, migrate, rollback)
            output_dir: Output directory; JSONL logs go to its logs/ folder
        """
        self.args = args
        self.command = command
        self.output_dir = Path(output_dir)
        self.start_time = time.time()

        # Determine output mode based on precedence: quiet > json > format > TTY detection
        self.quiet = getattr(args, "quiet", False)
        self.json_flag = getattr(args, "json", False)
        self.format_flag = getattr(args, "format", None)

        # File logging settings
        self.log_file_path = getattr(args, "log_file", None)
        self.no_log_file = getattr(args, "no_log_file", False)
        self._log_file: Optional[Path] = None

        self.console = Console()

        if self.quiet:
            self.stdout_format = "none"
        elif self.json_flag:
            self.stdout_format = "jsonl"
        elif self.format_flag:
            self.stdout_format = self.format_flag
        else:
            self.stdout_format = "human" if sys.stdout.isatty() else "jsonl"

    def get_duration_ms(self) -> int:
        """Get elapsed time in milliseconds since logger creation."""
        return int((time.time() - self.start_time) * 1000)

    def normalize_path(self, path: Path) -> str:
        """Normalize path to forward slashes, relative to the working directory when possible."""
        try:
            return Path(path).resolve().relative_to(Path.cwd()).as_posix()
        except ValueError:
            return str(path).replace("\\", "/")

    def get_log_file_path(self) -> Optional[Path]:
        """Get the log file path based on naming convention."""
        if self.no_log_file:
            return None
        if self._log_file is not None:
            return self._log_file

        if self.log_file_path:
            self._log_file = Path(self.log_file_path)
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
        else:
            # Default naming: <output>/logs/<command>_<YYYYMMDD_HHmmss>.jsonl
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_dir = self.output_dir / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            self._log_file = log_dir / f"{self.command}_{timestamp}.jsonl"
        return self._log_file

    def write_jsonl_to_file(self, event: Dict[str, Any]) -> None:
        """Write JSONL event to log file."""
        log_file = self.get_log_file_path()
        if not log_file:
            return

        jsonl_line = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(jsonl_line + "\n")

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Log a progress event to both file and stdout as configured."""
        record = ensure_json_serializable(
            {"event": event, "ts": datetime.now().isoformat(timespec="seconds"), **payload}
        )
        record.setdefault("duration_ms", self.get_duration_ms())
        self.write_jsonl_to_file(record)

        if self.stdout_format == "jsonl":
            print(json.dumps(record, ensure_ascii=False, separators=(",", ":")))
        elif self.stdout_format == "human":
            self._output_human_format(event, record)

    def _output_human_format(self, event: str, record: Dict[str, Any]) -> None:
        """Output one event in human-readable Rich format."""
        if event == "migration:start":
            mode = " (dry run)" if record.get("dry_run") else ""
            self.console.print(
                f"[bold]▶ {self.command}[/bold]  {self.normalize_path(Path(record.get('workbook', '')))}{mode}"
            )
        elif event == "phase:start":
            self.console.print(f"[dim]── {record.get('phase')}[/dim]")
        elif event == "validation:complete":
            level = record.get("level", "ok")
            color = {"ok": "green", "warning": "yellow"}.get(level, "red")
            self.console.print(
                f"  [{color}]sample[/{color}] {record.get('sheet')} -> {record.get('table')}  "
                f"invalid={record.get('invalid')}/{record.get('sampled')}  level={level}"
            )
        elif event == "entity:complete":
            skipped = record.get("skipped", 0)
            check_color = "yellow" if skipped else "green"
            check_mark = "⚠" if skipped else "✓"
            self.console.print(
                f"[{check_color}]{check_mark}[/{check_color}] {record.get('table')}  "
                f"processed={record.get('processed')}  saved={record.get('saved')}  "
                f"skipped={skipped}  quality={record.get('quality_score')}%"
            )
        elif event == "quality:alert":
            self.console.print(
                f"[yellow]⚠[/yellow] quality alert [{record.get('severity')}] "
                f"{record.get('message') or record.get('sheet') or record.get('entity_type')}"
            )
        elif event == "rollback:start":
            self.console.print(
                f"[red]↺[/red] rollback {record.get('type')}: {record.get('reason')}"
            )
        elif event == "rollback:complete":
            status = "[green]done[/green]" if record.get("success") else "[red]failed[/red]"
            self.console.print(f"  rollback {status}  records={record.get('records_affected')}")
        elif event == "migration:complete":
            outcome = record.get("outcome")
            color = "green" if outcome == "completed" else "yellow" if outcome == "completed_with_warnings" else "red"
            self.console.print(
                f"[{color}]■[/{color}] {outcome}  saved={record.get('saved')}  "
                f"skipped={record.get('skipped')}  time: {record.get('duration_ms')}ms"
            )

    def print_mappings(self, mapping_result, limit: Optional[int] = None) -> None:
        """Output the field mappings of every mapped sheet."""
        if self.stdout_format == "none":
            return
        if self.stdout_format == "jsonl":
            self.emit("mapping:result", mapping_result.to_dict())
            return

        for table_mapping in mapping_result.table_mappings:
            table = Table(
                title=f"{table_mapping.source_sheet} -> {table_mapping.target_table} "
                f"(confidence {table_mapping.confidence})"
            )
            table.add_column("source_field")
            table.add_column("target_field")
            table.add_column("confidence")
            table.add_column("reasons", style="dim")
            for mapping in table_mapping.field_mappings[:limit]:
                color = "green" if mapping.confidence >= 8 else "yellow" if mapping.confidence >= 5 else "red"
                table.add_row(
                    mapping.source_field,
                    mapping.target_field,
                    f"[{color}]{mapping.confidence}[/{color}]",
                    ", ".join(mapping.reasons),
                )
            self.console.print(table)

        if mapping_result.unmapped_sheets:
            self.console.print(f"  unmapped sheets: {', '.join(mapping_result.unmapped_sheets)}")
        summary = mapping_result.summary
        self.console.print(
            f"  high={summary.get('high', 0)}  medium={summary.get('medium', 0)}  "
            f"low={summary.get('low', 0)}  review={'yes' if mapping_result.requires_human_review else 'no'}"
        )

    def print_summary(self, report: Dict[str, Any], paths: Optional[List[Path]] = None) -> None:
        """Output the per-table loading summary of a migration report."""
        if self.stdout_format != "human":
            return

        loading = report["phases"]["loading"]
        if loading:
            table = Table(title="Migration summary")
            table.add_column("table")
            table.add_column("total")
            table.add_column("saved")
            table.add_column("skipped")
            table.add_column("quality")
            for name, counts in loading.items():
                table.add_row(
                    name,
                    str(counts["total"]),
                    str(counts["saved"]),
                    str(counts["skipped"]),
                    f"{counts['quality_score']}%",
                )
            self.console.print(table)

        for path in paths or []:
            self.console.print(f"  out: {self.normalize_path(path)}")

    def log_error(self, error_event: Dict[str, Any]) -> None:
        """Log an error event."""
        error_event["duration_ms"] = self.get_duration_ms()

        # Normalize paths in error event
        if "path" in error_event:
            error_event["path"] = self.normalize_path(Path(error_event["path"]))

        self.write_jsonl_to_file(error_event)

        if self.stdout_format != "none":
            if self.stdout_format == "jsonl":
                print(json.dumps(error_event, ensure_ascii=False, separators=(",", ":")))
            else:
                error_msg = self._format_error_message(error_event)
                self.console.print(f"[red]✗[/red] Error: {error_msg}")

    def _format_error_message(self, error_event: Dict[str, Any]) -> str:
        """Format error message for human-readable output."""
        error_type = error_event.get("error", "unknown")

        if error_type == "missing_input":
            path = error_event.get("path", "unknown")
            return f"Input file not found: {path}"
        elif error_type == "unreadable_workbook":
            path = error_event.get("path", "unknown")
            return f"Workbook could not be read: {path}"
        elif error_type == "invalid_overrides":
            return f"Invalid mapping overrides: {error_event.get('message', '')}"
        elif error_type == "missing_state":
            return f"No migration state found for {error_event.get('migration_id', 'unknown')}"
        elif error_type == "exception":
            message = error_event.get("message", "Unknown exception")
            return f"Unexpected error: {message}"
        else:
            return error_event.get("message", f"Unknown error type: {error_type}")
