#!/usr/bin/env python3
"""
Data quality monitoring for crm-migrate.

Turns ValidationResults into QualityMetrics, raises QualityAlerts when
thresholds are crossed, keeps a history (optionally appended to a JSONL
file) and derives trends, markdown reports and CSV/JSON exports from it.
"""

import json
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from .logging_config import get_logger
from .target_schema import get_fields

logger = get_logger(__name__)

TREND_TOLERANCE = 2.0


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class QualityThresholds:
    quality_score_min: float = 70
    quality_score_high: float = 50
    error_rate_max: float = 0.05
    error_rate_critical: float = 0.10
    missing_data_max: float = 0.30


@dataclass
class QualityMetrics:
    timestamp: datetime
    entity_type: str
    total_records: int
    valid_records: int
    invalid_records: int
    error_count: int
    warning_count: int
    quality_score: float
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    common_errors: List[Dict[str, Any]] = field(default_factory=list)
    completeness: Dict[str, Any] = field(default_factory=dict)
    performance: Dict[str, float] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        if not self.total_records:
            return 0.0
        return self.invalid_records / self.total_records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "entity_type": self.entity_type,
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "quality_score": self.quality_score,
            "errors_by_type": self.errors_by_type,
            "common_errors": self.common_errors,
            "completeness": self.completeness,
            "performance": self.performance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityMetrics":
        data = dict(data)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class QualityAlert:
    id: str
    timestamp: datetime
    entity_type: str
    type: str
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolution: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "entity_type": self.entity_type,
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "resolved": self.resolved,
            "resolution": self.resolution,
        }


@dataclass
class QualityTrend:
    entity_type: str
    period: str
    points: List[Dict[str, Any]]
    direction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "period": self.period,
            "points": self.points,
            "direction": self.direction,
        }


def _period_key(moment: datetime, period: str) -> str:
    if period == "daily":
        return moment.date().isoformat()
    if period == "weekly":
        return (moment.date() - timedelta(days=moment.weekday())).isoformat()
    if period == "monthly":
        return f"{moment.year}-{moment.month:02d}"
    raise ValueError(f"Unknown trend period: {period}")


class DataQualityMonitor:
    """Collects per-entity quality metrics and raises threshold alerts."""

    def __init__(
        self,
        thresholds: Optional[QualityThresholds] = None,
        history_path=None,
        on_alert: Optional[Callable[[QualityAlert], None]] = None,
    ):
        self.thresholds = thresholds or QualityThresholds()
        self.history_path = Path(history_path) if history_path else None
        self.on_alert = on_alert
        self.history: Dict[str, List[QualityMetrics]] = {}
        self.alerts: List[QualityAlert] = []
        if self.history_path is not None and self.history_path.exists():
            self._load_history()

    def _load_history(self) -> None:
        loaded = 0
        with open(self.history_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    metrics = QualityMetrics.from_dict(json.loads(line))
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning(f"Skipping unreadable quality history line: {e}")
                    continue
                self.history.setdefault(metrics.entity_type, []).append(metrics)
                loaded += 1
        logger.debug(f"Loaded {loaded} quality history entries from {self.history_path}")

    def _append_history(self, metrics: QualityMetrics) -> None:
        if self.history_path is None:
            return
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.history_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(metrics.to_dict(), ensure_ascii=False) + "\n")

    def record_metrics(self, entity_type: str, result, duration: float) -> QualityMetrics:
        """
        Record metrics of one ValidationResult and check alert thresholds.

        Args:
            entity_type: Target table name
            result: ValidationResult of the batch or table
            duration: Seconds the validation took

        Returns:
            The recorded QualityMetrics
        """
        processed = result.processed_count
        errors_by_type = Counter(e.error_type.value for e in result.errors)
        field_counts = Counter((e.field, e.error_type.value) for e in result.errors)
        common_errors = [
            {
                "field": field_name,
                "type": error_type,
                "count": count,
                "percentage": round(count / processed * 100, 2) if processed else 0.0,
            }
            for (field_name, error_type), count in field_counts.most_common(10)
        ]

        try:
            required = [f.name for f in get_fields(entity_type) if f.required]
        except KeyError:
            required = []
        missing = errors_by_type.get("REQUIRED", 0)
        expected = processed * len(required)
        completeness_pct = 100.0 if not expected else round(100 - missing / expected * 100, 2)

        metrics = QualityMetrics(
            timestamp=datetime.now(),
            entity_type=entity_type,
            total_records=processed,
            valid_records=processed - result.invalid_count,
            invalid_records=result.invalid_count,
            error_count=result.error_count,
            warning_count=result.warning_count,
            quality_score=result.data_quality_score,
            errors_by_type=dict(errors_by_type),
            common_errors=common_errors,
            completeness={
                "required_fields": len(required),
                "missing_values": missing,
                "percentage": completeness_pct,
            },
            performance={
                "duration": round(duration, 4),
                "records_per_second": round(processed / duration, 2) if duration > 0 else float(processed),
            },
        )

        self.history.setdefault(entity_type, []).append(metrics)
        self._append_history(metrics)
        self._check_alerts(metrics)
        return metrics

    def _check_alerts(self, metrics: QualityMetrics) -> List[QualityAlert]:
        t = self.thresholds
        raised = []

        if metrics.total_records and metrics.quality_score < t.quality_score_min:
            severity = (
                AlertSeverity.HIGH
                if metrics.quality_score < t.quality_score_high
                else AlertSeverity.MEDIUM
            )
            raised.append(
                self._alert(
                    metrics.entity_type,
                    "quality_score",
                    severity,
                    f"Data quality score dropped to {metrics.quality_score}% "
                    f"(threshold: {t.quality_score_min:g}%)",
                    {"score": metrics.quality_score, "threshold": t.quality_score_min},
                )
            )

        error_rate = metrics.error_rate
        if error_rate > t.error_rate_max:
            severity = (
                AlertSeverity.CRITICAL if error_rate > t.error_rate_critical else AlertSeverity.HIGH
            )
            raised.append(
                self._alert(
                    metrics.entity_type,
                    "error_rate",
                    severity,
                    f"Error rate is {error_rate * 100:.2f}% (threshold: {t.error_rate_max * 100:.0f}%)",
                    {"error_rate": error_rate, "threshold": t.error_rate_max},
                )
            )

        missing_rate = 1 - metrics.completeness.get("percentage", 100.0) / 100
        if missing_rate > t.missing_data_max:
            raised.append(
                self._alert(
                    metrics.entity_type,
                    "missing_data",
                    AlertSeverity.MEDIUM,
                    f"{missing_rate * 100:.0f}% of required fields are missing "
                    f"(threshold: {t.missing_data_max * 100:.0f}%)",
                    {"missing_rate": missing_rate, "completeness": metrics.completeness},
                )
            )
        return raised

    def _alert(self, entity_type: str, alert_type: str, severity: AlertSeverity,
               message: str, details: Dict[str, Any]) -> QualityAlert:
        alert = QualityAlert(
            id=uuid.uuid4().hex[:12],
            timestamp=datetime.now(),
            entity_type=entity_type,
            type=alert_type,
            severity=severity,
            message=message,
            details=details,
        )
        self.alerts.append(alert)
        logger.warning(f"Quality alert [{severity.value}] {entity_type}: {message}")
        if self.on_alert is not None:
            self.on_alert(alert)
        return alert

    def active_alerts(self, entity_type: Optional[str] = None) -> List[QualityAlert]:
        return [
            a for a in self.alerts
            if not a.resolved and (entity_type is None or a.entity_type == entity_type)
        ]

    def resolve_alert(self, alert_id: str, resolution: str = "") -> bool:
        for alert in self.alerts:
            if alert.id == alert_id and not alert.resolved:
                alert.resolved = True
                alert.resolution = resolution
                return True
        return False

    def get_quality_trends(self, entity_type: str, period: str = "daily", days: int = 30) -> QualityTrend:
        """
        Group the history of ``entity_type`` by period.

        The direction compares the first and last period's average score:
        improving, declining or stable within a small tolerance.
        """
        since = datetime.now() - timedelta(days=days)
        grouped: Dict[str, List[QualityMetrics]] = {}
        for metrics in self.history.get(entity_type, []):
            if metrics.timestamp >= since:
                grouped.setdefault(_period_key(metrics.timestamp, period), []).append(metrics)

        points = []
        for key in sorted(grouped):
            bucket = grouped[key]
            records = sum(m.total_records for m in bucket)
            invalid = sum(m.invalid_records for m in bucket)
            points.append(
                {
                    "period": key,
                    "average_score": round(sum(m.quality_score for m in bucket) / len(bucket), 1),
                    "error_rate": round(invalid / records, 4) if records else 0.0,
                    "record_count": records,
                }
            )

        direction = "stable"
        if len(points) > 1:
            delta = points[-1]["average_score"] - points[0]["average_score"]
            if delta > TREND_TOLERANCE:
                direction = "improving"
            elif delta < -TREND_TOLERANCE:
                direction = "declining"
        return QualityTrend(entity_type, period, points, direction)

    def _all_metrics(self, entity_type: Optional[str] = None) -> List[QualityMetrics]:
        if entity_type is not None:
            return list(self.history.get(entity_type, []))
        return [m for entries in self.history.values() for m in entries]

    def generate_quality_report(self, entity_type: Optional[str] = None) -> str:
        """Render the recorded history as a markdown report."""
        lines = ["# Data Quality Report", "", f"Generated: {datetime.now().isoformat(timespec='seconds')}", ""]
        entity_types = [entity_type] if entity_type else list(self.history)

        if not any(self.history.get(e) for e in entity_types):
            lines.append("No quality metrics recorded.")
            return "\n".join(lines) + "\n"

        lines += [
            "## Summary",
            "",
            "| Entity | Records | Invalid | Avg Quality | Completeness |",
            "|---|---|---|---|---|",
        ]
        for name in entity_types:
            entries = self.history.get(name, [])
            if not entries:
                continue
            records = sum(m.total_records for m in entries)
            invalid = sum(m.invalid_records for m in entries)
            score = sum(m.quality_score for m in entries) / len(entries)
            completeness = sum(m.completeness.get("percentage", 100.0) for m in entries) / len(entries)
            lines.append(f"| {name} | {records} | {invalid} | {score:.1f}% | {completeness:.1f}% |")

        errors = Counter()
        for metrics in self._all_metrics(entity_type):
            for error in metrics.common_errors:
                errors[(metrics.entity_type, error["field"], error["type"])] += error["count"]
        if errors:
            lines += ["", "## Most Common Errors", "", "| Entity | Field | Type | Count |", "|---|---|---|---|"]
            for (name, field_name, error_type), count in errors.most_common(10):
                lines.append(f"| {name} | {field_name} | {error_type} | {count} |")

        open_alerts = self.active_alerts(entity_type)
        if open_alerts:
            lines += ["", "## Active Alerts", ""]
            for alert in open_alerts:
                lines.append(f"- [{alert.severity.value}] {alert.entity_type}: {alert.message}")

        lines += ["", "## Recommendations", ""]
        lines += self._recommendations(self._all_metrics(entity_type))
        return "\n".join(lines) + "\n"

    def _recommendations(self, metrics: List[QualityMetrics]) -> List[str]:
        advice = []
        average = sum(m.quality_score for m in metrics) / len(metrics)
        if average < self.thresholds.quality_score_min:
            advice.append(
                f"- Average quality score is below {self.thresholds.quality_score_min:g}%; "
                f"complete required fields and fix validation errors"
            )

        by_type = Counter()
        for m in metrics:
            by_type.update(m.errors_by_type)
        if by_type:
            top_type = by_type.most_common(1)[0][0]
            hints = {
                "REQUIRED": "Many records miss required fields; review how the sheets are filled in",
                "FORMAT": "Format errors dominate; normalise phones, emails and dates in the source",
                "RANGE": "Values out of range dominate; check units and date columns",
                "REFERENCE": "Referential errors dominate; make sure referenced organizations exist first",
                "BUSINESS_RULE": "Business rule violations dominate; review stages, priorities and outcomes",
                "DUPLICATE": "Duplicates detected; deduplicate the workbook before migrating",
            }
            advice.append(f"- {hints.get(top_type, f'Most errors are {top_type}')}")

        if not advice:
            advice.append("- Data quality is good; keep monitoring regular imports")
        return advice

    def export_metrics(self, format: str = "json", entity_type: Optional[str] = None,
                       start: Optional[datetime] = None, end: Optional[datetime] = None) -> str:
        """Export the history as a JSON document or CSV table."""
        selected = [
            m for m in self._all_metrics(entity_type)
            if (start is None or m.timestamp >= start) and (end is None or m.timestamp <= end)
        ]

        if format == "json":
            return json.dumps([m.to_dict() for m in selected], indent=2, ensure_ascii=False)
        if format == "csv":
            columns = [
                "timestamp", "entity_type", "total_records", "valid_records",
                "error_count", "warning_count", "quality_score", "error_rate",
            ]
            frame = pd.DataFrame(
                [
                    {
                        "timestamp": m.timestamp.isoformat(),
                        "entity_type": m.entity_type,
                        "total_records": m.total_records,
                        "valid_records": m.valid_records,
                        "error_count": m.error_count,
                        "warning_count": m.warning_count,
                        "quality_score": m.quality_score,
                        "error_rate": round(m.error_rate * 100, 2),
                    }
                    for m in selected
                ],
                columns=columns,
            )
            return frame.to_csv(index=False)
        raise ValueError(f"Unsupported export format: {format}")
