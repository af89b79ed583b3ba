#!/usr/bin/env python3
"""
Migration reporting for crm-migrate.

Builds a structured report from a MigrationResult and renders it as JSON and
markdown:
- phase-by-phase counts and the confidence summary
- top validation errors and warnings
- unmapped fields and low-confidence mappings
- verification, rollback recommendation and quality trends
"""

import json
from collections import Counter
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd

TOP_FINDINGS = 10


def ensure_json_serializable(obj: Any) -> Any:
    """
    Ensure an object is JSON serializable by converting non-serializable types.

    Args:
        obj: Object to make JSON serializable

    Returns:
        JSON-serializable version of the object
    """
    if isinstance(obj, (dict, list, tuple, set, frozenset)):
        if isinstance(obj, dict):
            return {str(k): ensure_json_serializable(v) for k, v in obj.items()}
        elif isinstance(obj, (set, frozenset)):
            return sorted(ensure_json_serializable(item) for item in obj)
        else:
            return [ensure_json_serializable(item) for item in obj]
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, Path):
        # Use as_posix() for cross-platform compatibility (always forward slashes)
        return obj.as_posix()
    elif isinstance(obj, (pd.Timestamp, pd.NaT.__class__)):
        return obj.isoformat() if pd.notna(obj) else None
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif hasattr(obj, "to_dict"):
        return ensure_json_serializable(obj.to_dict())
    elif hasattr(obj, "__dict__"):
        return ensure_json_serializable(obj.__dict__)
    elif isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    else:
        return str(obj)


def _top_findings(findings, kind: str) -> List[Dict[str, Any]]:
    counts: Counter = Counter()
    examples: Dict[Tuple, Any] = {}
    for finding in findings:
        category = finding.error_type.value if kind == "error" else "WARNING"
        key = (finding.table, finding.field, category, finding.message)
        counts[key] += 1
        examples.setdefault(key, finding)

    top = []
    for key, count in counts.most_common(TOP_FINDINGS):
        table, field_name, category, message = key
        example = examples[key]
        entry = {
            "table": table,
            "field": field_name,
            "type": category,
            "message": message,
            "count": count,
            "first_row": example.row,
        }
        if kind == "error":
            entry["severity"] = example.severity.value
        else:
            entry["suggestion"] = example.suggestion
        top.append(entry)
    return top


def build_report(result, quality_monitor=None) -> Dict[str, Any]:
    """
    Build the structured report of a migration run.

    Args:
        result: MigrationResult returned by the orchestrator
        quality_monitor: Optional DataQualityMonitor for trend snippets

    Returns:
        JSON-serializable report dictionary
    """
    mapping = result.mapping
    errors = [e for t in result.tables.values() for e in t.errors]
    warnings = [w for t in result.tables.values() for w in t.warnings]

    report: Dict[str, Any] = {
        "migration_id": result.migration_id,
        "workbook": result.workbook,
        "generated_at": datetime.now().isoformat(timespec="seconds"),
        "outcome": result.outcome.value,
        "phase": result.phase.value,
        "dry_run": result.dry_run,
        "duration": round(result.duration, 3),
        "phases": {
            "mapping": {
                "sheets": len(result.analysis.sheets) if result.analysis else 0,
                "mapped_sheets": len(mapping.table_mappings) if mapping else 0,
                "unmapped_sheets": list(mapping.unmapped_sheets) if mapping else [],
                "potential_issues": list(result.analysis.potential_issues) if result.analysis else [],
            },
            "validation": {name: s.to_dict() for name, s in result.sample_validation.items()},
            "loading": {name: t.to_dict() for name, t in result.tables.items()},
            "verification": result.verification,
        },
        "totals": {
            "processed": result.total_processed,
            "saved": result.total_saved,
            "skipped": result.total_skipped,
            "errors": len(errors),
            "warnings": len(warnings),
        },
        "confidence_summary": None,
        "table_mappings": [],
        "low_confidence_mappings": [],
        "unmapped_fields": {},
        "top_errors": _top_findings(errors, "error"),
        "top_warnings": _top_findings(warnings, "warning"),
        "rollback": {
            "recommendation": result.rollback_strategy.to_dict() if result.rollback_strategy else None,
            "executed": result.rollback_result.to_dict() if result.rollback_result else None,
        },
        "errors": list(result.errors),
        "quality": {},
    }

    if mapping is not None:
        report["confidence_summary"] = {
            **mapping.summary,
            "average_confidence": mapping.average_confidence,
            "requires_human_review": mapping.requires_human_review,
        }
        report["table_mappings"] = [
            {
                "sheet": t.source_sheet,
                "table": t.target_table,
                "confidence": t.confidence,
                "fields": {m.source_field: m.target_field for m in t.field_mappings},
            }
            for t in mapping.table_mappings
        ]
        report["low_confidence_mappings"] = [
            {
                "sheet": sheet,
                "source_field": m.source_field,
                "target_field": m.target_field,
                "confidence": m.confidence,
                "reasons": list(m.reasons),
            }
            for sheet, m in mapping.low_confidence_mappings()
        ]
        report["unmapped_fields"] = {
            t.source_sheet: {
                "source": list(t.unmapped_source_fields),
                "target": list(t.unmapped_target_fields),
            }
            for t in mapping.table_mappings
            if t.unmapped_source_fields or t.unmapped_target_fields
        }

    if quality_monitor is not None:
        report["quality"] = {
            "trends": {
                table: quality_monitor.get_quality_trends(table, "daily").to_dict()
                for table in result.tables
            },
            "active_alerts": [a.to_dict() for a in quality_monitor.active_alerts()],
        }

    return ensure_json_serializable(report)


def render_markdown(report: Dict[str, Any]) -> str:
    """Render a report built by build_report as markdown."""
    lines = [
        f"# Migration Report: {report['migration_id']}",
        "",
        f"- Workbook: {report['workbook']}",
        f"- Outcome: **{report['outcome']}** (phase: {report['phase']})",
        f"- Dry run: {'yes' if report['dry_run'] else 'no'}",
        f"- Duration: {report['duration']}s",
        f"- Generated: {report['generated_at']}",
        "",
    ]

    summary = report.get("confidence_summary")
    if summary:
        lines += [
            "## Mapping Confidence",
            "",
            f"- Average confidence: {summary['average_confidence']}",
            f"- High / medium / low: {summary.get('high', 0)} / {summary.get('medium', 0)} / {summary.get('low', 0)}",
            f"- Human review required: {'yes' if summary['requires_human_review'] else 'no'}",
            "",
        ]
        for table_mapping in report["table_mappings"]:
            lines.append(
                f"- {table_mapping['sheet']} -> {table_mapping['table']} "
                f"({len(table_mapping['fields'])} fields, confidence {table_mapping['confidence']})"
            )
        lines.append("")

    mapping_phase = report["phases"]["mapping"]
    if mapping_phase["unmapped_sheets"]:
        lines.append(f"Unmapped sheets: {', '.join(mapping_phase['unmapped_sheets'])}")
        lines.append("")
    if report["unmapped_fields"]:
        lines += ["## Unmapped Fields", ""]
        for sheet, unmapped in report["unmapped_fields"].items():
            if unmapped["source"]:
                lines.append(f"- {sheet} source columns: {', '.join(unmapped['source'])}")
            if unmapped["target"]:
                lines.append(f"- {sheet} target fields: {', '.join(unmapped['target'])}")
        lines.append("")

    validation = report["phases"]["validation"]
    if validation:
        lines += [
            "## Sample Validation",
            "",
            "| Sheet | Table | Sampled | Invalid | Error rate | Est. errors | Level |",
            "|---|---|---|---|---|---|---|",
        ]
        for sheet, sample in validation.items():
            lines.append(
                f"| {sheet} | {sample['table']} | {sample['sampled']} | {sample['invalid']} | "
                f"{sample['error_rate'] * 100:.1f}% | {sample['estimated_errors']} | {sample['level']} |"
            )
        lines.append("")

    loading = report["phases"]["loading"]
    if loading:
        lines += [
            "## Loading",
            "",
            "| Table | Total | Processed | Saved | Skipped | Errors | Quality |",
            "|---|---|---|---|---|---|---|",
        ]
        for table, counts in loading.items():
            lines.append(
                f"| {table} | {counts['total']} | {counts['processed']} | {counts['saved']} | "
                f"{counts['skipped']} | {counts['error_count']} | {counts['quality_score']}% |"
            )
        lines.append("")

    verification = report["phases"]["verification"]
    if verification:
        lines += ["## Verification", ""]
        for table, check in verification.items():
            marker = "short" if check["flagged"] else "ok"
            lines.append(
                f"- {table}: {check['persisted']} of {check['source_rows']} rows persisted ({marker})"
            )
        lines.append("")

    if report["top_errors"]:
        lines += [
            "## Top Errors",
            "",
            "| Table | Field | Type | Severity | Count | First row | Message |",
            "|---|---|---|---|---|---|---|",
        ]
        for error in report["top_errors"]:
            lines.append(
                f"| {error['table']} | {error['field']} | {error['type']} | {error['severity']} | "
                f"{error['count']} | {error['first_row']} | {error['message']} |"
            )
        lines.append("")

    if report["top_warnings"]:
        lines += ["## Top Warnings", ""]
        for warning in report["top_warnings"]:
            lines.append(f"- {warning['table']}.{warning['field']}: {warning['message']} ({warning['count']}x)")
        lines.append("")

    rollback = report["rollback"]
    if rollback["recommendation"]:
        strategy = rollback["recommendation"]
        lines += [
            "## Rollback",
            "",
            f"- Recommended: {strategy['type']} (confidence {strategy['confidence']})",
            f"- Reason: {strategy['reason']}",
        ]
        executed = rollback["executed"]
        if executed:
            lines.append(
                f"- Executed: {'success' if executed['success'] else 'failed'}, "
                f"{executed['records_affected']} records affected"
            )
        else:
            lines.append("- Executed: no")
        lines.append("")

    if report["errors"]:
        lines += ["## Run Errors", ""]
        lines += [f"- {error}" for error in report["errors"]]
        lines.append("")

    trends = report.get("quality", {}).get("trends", {})
    if trends:
        lines += ["## Quality Trends", ""]
        for table, trend in trends.items():
            latest = trend["points"][-1] if trend["points"] else None
            if latest:
                lines.append(
                    f"- {table}: {trend['direction']}, latest score {latest['average_score']}% "
                    f"({latest['record_count']} records)"
                )
        lines.append("")

    return "\n".join(lines)


def write_report(report: Dict[str, Any], out_dir, stem: str) -> Tuple[Path, Path]:
    """
    Write ``<stem>.json`` and ``<stem>.md`` into ``out_dir``.

    Returns:
        Paths of the JSON and markdown files
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    json_path = out_dir / f"{stem}.json"
    md_path = out_dir / f"{stem}.md"

    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(ensure_json_serializable(report), f, indent=2, ensure_ascii=False)
    with open(md_path, "w", encoding="utf-8") as f:
        f.write(render_markdown(report))
    return json_path, md_path
