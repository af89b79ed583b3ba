#!/usr/bin/env python3
"""
Record validation for crm-migrate.

The ValidationEngine checks one transformed record through four layers that
always all run, so every problem of a row is reported at once:

1. Schema/domain integrity: required fields, formats, ranges, enums, dates
2. Business rules: cross-field policies (priority contacts, stage bands, ...)
3. Referential integrity: foreign keys against the run's reference cache
4. Duplicate detection: organization names/emails, primary contacts

Each record also gets a 0-100 data quality score. The ValidationService runs
the engine over batches and aggregates a ValidationResult. Findings are
collected as data; nothing in this module raises for bad input rows.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .logging_config import get_logger
from .parsers import digits
from .records import Record
from .reference_cache import ReferenceCache
from .rules import DEFAULT_RULES, ValidationRules
from .target_schema import (
    CONTACTS,
    INTERACTIONS,
    OPPORTUNITIES,
    ORGANIZATIONS,
    get_fields,
)

logger = get_logger(__name__)

CRITICAL_FIELDS = ("id", "organization_id")
BOOLEAN_FIELDS = ("is_primary", "is_active")


class ErrorType(str, Enum):
    REQUIRED = "REQUIRED"
    FORMAT = "FORMAT"
    RANGE = "RANGE"
    REFERENCE = "REFERENCE"
    BUSINESS_RULE = "BUSINESS_RULE"
    DUPLICATE = "DUPLICATE"


class Severity(str, Enum):
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class RecordError:
    """One validation failure of one field of one row."""

    row: Optional[int]
    field: str
    value: Any
    message: str
    error_type: ErrorType
    severity: Severity = Severity.ERROR
    table: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "field": self.field,
            "value": self.value if isinstance(self.value, (str, int, float, bool)) or self.value is None else str(self.value),
            "message": self.message,
            "error_type": self.error_type.value,
            "severity": self.severity.value,
            "table": self.table,
        }


@dataclass(frozen=True)
class RecordWarning:
    """A non-blocking data quality observation."""

    row: Optional[int]
    field: str
    value: Any
    message: str
    suggestion: Optional[str] = None
    table: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "field": self.field,
            "value": self.value if isinstance(self.value, (str, int, float, bool)) or self.value is None else str(self.value),
            "message": self.message,
            "suggestion": self.suggestion,
            "table": self.table,
        }


@dataclass
class RowValidation:
    """Outcome of validating a single record."""

    errors: List[RecordError] = field(default_factory=list)
    warnings: List[RecordWarning] = field(default_factory=list)
    quality_score: int = 100

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_critical(self) -> bool:
        return any(e.severity == Severity.CRITICAL for e in self.errors)


@dataclass
class ValidationResult:
    """Aggregate outcome of validating a batch of one entity type."""

    table: str
    is_valid: bool = True
    errors: List[RecordError] = field(default_factory=list)
    warnings: List[RecordWarning] = field(default_factory=list)
    data_quality_score: int = 100
    processed_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    invalid_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "is_valid": self.is_valid,
            "data_quality_score": self.data_quality_score,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "invalid_count": self.invalid_count,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class ValidationOptions:
    stop_on_error: bool = False
    calculate_quality: bool = True
    max_workers: int = 1


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return None


def _shift_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def _has_time_of_day(moment: datetime) -> bool:
    return (moment.hour, moment.minute, moment.second) != (0, 0, 0)


class _Findings:
    """Collects errors and warnings for one record."""

    def __init__(self, table: str, row: Optional[int]):
        self.table = table
        self.row = row
        self.errors: List[RecordError] = []
        self.warnings: List[RecordWarning] = []

    def error(self, field_name: str, value: Any, message: str, error_type: ErrorType,
              severity: Optional[Severity] = None) -> None:
        if severity is None:
            severity = Severity.CRITICAL if field_name in CRITICAL_FIELDS else Severity.ERROR
        self.errors.append(
            RecordError(self.row, field_name, value, message, error_type, severity, self.table)
        )

    def warning(self, field_name: str, value: Any, message: str,
                suggestion: Optional[str] = None) -> None:
        self.warnings.append(
            RecordWarning(self.row, field_name, value, message, suggestion, self.table)
        )


class ValidationEngine:
    """Four-layer validation of transformed records.

    ``validate_row`` only reads the reference cache and rule data, so given
    the same record, cache and ``as_of`` moment it always returns the same
    findings.
    """

    def __init__(
        self,
        rules: Optional[ValidationRules] = None,
        cache: Optional[ReferenceCache] = None,
        as_of: Optional[datetime] = None,
        validate_references: bool = True,
        check_duplicates: bool = True,
    ):
        self.rules = rules or DEFAULT_RULES
        self.cache = cache if cache is not None else ReferenceCache()
        self.as_of = as_of or datetime.now()
        self.validate_references = validate_references
        self.check_duplicates = check_duplicates

    def validate_row(self, table: str, record: Record, row: Optional[int] = None) -> RowValidation:
        """
        Validate one record of ``table``.

        Args:
            table: Target table name
            record: Transformed record
            row: Spreadsheet row number used in findings

        Returns:
            RowValidation with errors, warnings and quality score
        """
        findings = _Findings(table, row)

        self._check_schema(table, record, findings)
        self._check_business_rules(table, record, findings)
        if self.validate_references:
            self._check_references(table, record, findings)
        if self.check_duplicates:
            self._check_duplicates(table, record, findings)
        self._collect_warnings(table, record, findings)

        score = self.quality_score(table, record)
        if score < self.rules.low_quality_threshold:
            findings.warning(
                "_record",
                score,
                f"Low data quality score: {score}",
                "Fill in missing optional fields to improve data quality",
            )

        return RowValidation(findings.errors, findings.warnings, score)

    # Layer 1: schema / domain integrity

    def _check_schema(self, table: str, record: Record, findings: _Findings) -> None:
        rules = self.rules
        patterns = rules.compiled

        if not _present(record.id):
            findings.error("id", record.id, "Record id is missing", ErrorType.REQUIRED)

        for target in get_fields(table):
            if target.required and not _present(getattr(record, target.name, None)):
                findings.error(
                    target.name, None, f"{target.name} is required", ErrorType.REQUIRED
                )

        for target in get_fields(table):
            name = target.name
            if not hasattr(record, name):
                continue
            value = getattr(record, name)
            if not _present(value):
                continue

            if isinstance(value, str):
                minimum, maximum = rules.length_limits(table, name)
                if minimum is not None and len(value.strip()) < minimum:
                    findings.error(name, value, f"{name} must be at least {minimum} characters",
                                   ErrorType.FORMAT)
                if maximum is not None and len(value) > maximum:
                    findings.error(name, value, f"{name} cannot exceed {maximum} characters",
                                   ErrorType.FORMAT)

            if name == "email" and not patterns["email"].match(str(value)):
                findings.error(name, value, "Invalid email format", ErrorType.FORMAT)
            elif name == "phone":
                text = str(value)
                if not patterns["phone"].match(text):
                    findings.error(name, value, "Invalid phone number format", ErrorType.FORMAT)
                elif len(digits(text)) < rules.min_phone_digits:
                    findings.error(
                        name, value,
                        f"Phone number must have at least {rules.min_phone_digits} digits",
                        ErrorType.FORMAT,
                    )
            elif name == "zip_code" and not patterns["zip"].match(str(value)):
                findings.error(name, value, "Invalid ZIP code format (12345 or 12345-6789)",
                               ErrorType.FORMAT)
            elif name == "state" and not patterns["state"].match(str(value)):
                findings.error(name, value, "State must be a 2-letter code", ErrorType.FORMAT)
            elif name == "website" and not patterns["url"].match(str(value)):
                findings.error(name, value, "Invalid website URL format", ErrorType.FORMAT)

            if name in rules.ranges:
                bounds = rules.ranges[name]
                if not _is_number(value):
                    findings.error(name, value, f"{name} must be a number", ErrorType.FORMAT)
                elif not bounds.contains(value):
                    findings.error(name, value, f"{name} must be {bounds.describe()}",
                                   ErrorType.RANGE)

            allowed = rules.enum_for(table, name)
            if allowed is not None and str(value).upper() not in allowed:
                findings.error(
                    name, value, f"{name} must be one of: {', '.join(allowed)}", ErrorType.FORMAT
                )

            if name in BOOLEAN_FIELDS and not isinstance(value, bool):
                findings.error(name, value, f"{name} must be yes/no", ErrorType.FORMAT)

            if target.type == "date" and _as_datetime(value) is None:
                findings.error(name, value, f"Invalid date for {name}", ErrorType.FORMAT)

        if table == ORGANIZATIONS:
            name = record.name
            if isinstance(name, str) and patterns["invalid_org_name"].match(name.strip()):
                findings.error("name", name, "Invalid organization name pattern", ErrorType.FORMAT)
            last_contact = _as_datetime(record.last_contact_date)
            if last_contact is not None and last_contact > self.as_of:
                findings.error("last_contact_date", record.last_contact_date,
                               "Last contact date cannot be in the future", ErrorType.RANGE)

        elif table == CONTACTS:
            for name in ("first_name", "last_name"):
                value = getattr(record, name)
                if isinstance(value, str) and any(ch.isdigit() for ch in value):
                    findings.error(name, value, f"{name} cannot contain numbers", ErrorType.FORMAT)

        elif table == INTERACTIONS:
            moment = _as_datetime(record.date)
            if moment is not None:
                if moment > self.as_of:
                    findings.error("date", record.date, "Interaction date cannot be in the future",
                                   ErrorType.RANGE)
                oldest = _shift_years(self.as_of, -rules.interaction_max_age_years)
                if moment < oldest:
                    findings.error(
                        "date", record.date,
                        f"Interaction date cannot be more than "
                        f"{rules.interaction_max_age_years} years in the past",
                        ErrorType.RANGE,
                    )

        elif table == OPPORTUNITIES:
            close = _as_datetime(record.expected_close_date)
            latest = _shift_years(self.as_of, rules.close_date_max_future_years)
            if close is not None and close > latest:
                findings.error(
                    "expected_close_date", record.expected_close_date,
                    f"Expected close date cannot be more than "
                    f"{rules.close_date_max_future_years} years in the future",
                    ErrorType.RANGE,
                )

    # Layer 2: business rules

    def _check_business_rules(self, table: str, record: Record, findings: _Findings) -> None:
        rules = self.rules

        if table == ORGANIZATIONS:
            if record.priority in rules.high_priority_values:
                if not (_present(record.phone) or _present(record.email)):
                    findings.error("phone", None,
                                   "High priority organizations must have phone or email",
                                   ErrorType.BUSINESS_RULE, Severity.ERROR)
                if record.estimated_revenue is None:
                    findings.error("estimated_revenue", None,
                                   "High priority organizations must have estimated revenue",
                                   ErrorType.BUSINESS_RULE, Severity.ERROR)
            if record.status == rules.inactive_status and not _present(record.notes):
                findings.error("notes", None,
                               "Inactive organizations must have notes explaining status",
                               ErrorType.BUSINESS_RULE, Severity.ERROR)

        elif table == OPPORTUNITIES:
            band = rules.stage_probability.get(str(record.stage))
            if band is not None and _is_number(record.probability):
                low, high = band
                if not low <= record.probability <= high:
                    findings.error(
                        "probability", record.probability,
                        f"Probability {record.probability:g}% is unusual for stage "
                        f"{record.stage} (expected {low:g}-{high:g}%)",
                        ErrorType.BUSINESS_RULE, Severity.ERROR,
                    )
            if record.stage in rules.closed_stages and not _present(record.reason):
                findings.error("reason", None, "Closed opportunities must have a reason",
                               ErrorType.BUSINESS_RULE, Severity.ERROR)
            if (
                _is_number(record.value)
                and record.value > rules.high_value_threshold
                and not _present(record.contact_id)
            ):
                findings.error(
                    "contact_id", None,
                    f"Opportunities over {rules.high_value_threshold:,.0f} must have an assigned contact",
                    ErrorType.BUSINESS_RULE, Severity.ERROR,
                )

        elif table == INTERACTIONS:
            moment = _as_datetime(record.date)
            if (
                moment is not None
                and record.type not in rules.time_exempt_types
                and record.type in rules.in_person_types
                and _has_time_of_day(moment)
            ):
                for start, end in rules.service_windows:
                    if start <= moment.hour < end:
                        windows = ", ".join(f"{s}:00-{e}:00" for s, e in rules.service_windows)
                        findings.error(
                            "date", record.date,
                            f"{record.type} interactions should not be scheduled during "
                            f"service hours ({windows})",
                            ErrorType.BUSINESS_RULE, Severity.ERROR,
                        )
                        break
            if record.outcome == rules.follow_up_outcome and not _present(record.next_action):
                findings.error("next_action", None,
                               "Follow-up outcomes must specify the next action",
                               ErrorType.BUSINESS_RULE, Severity.ERROR)

    # Layer 3: referential integrity

    def _check_references(self, table: str, record: Record, findings: _Findings) -> None:
        cache = self.cache

        organization_id = getattr(record, "organization_id", None)
        if _present(organization_id) and str(organization_id) not in cache.organization_ids:
            findings.error("organization_id", organization_id,
                           f"Organization '{organization_id}' does not exist",
                           ErrorType.REFERENCE, Severity.CRITICAL)

        contact_id = getattr(record, "contact_id", None)
        if _present(contact_id):
            if str(contact_id) not in cache.contact_ids:
                findings.error("contact_id", contact_id, f"Contact '{contact_id}' does not exist",
                               ErrorType.REFERENCE, Severity.ERROR)
            else:
                owner = cache.contact_organizations.get(str(contact_id))
                if _present(organization_id) and owner is not None and owner != str(organization_id):
                    findings.error("contact_id", contact_id,
                                   "Contact does not belong to the specified organization",
                                   ErrorType.REFERENCE, Severity.ERROR)

        opportunity_id = getattr(record, "opportunity_id", None)
        if _present(opportunity_id) and str(opportunity_id) not in cache.opportunity_ids:
            findings.error("opportunity_id", opportunity_id,
                           f"Opportunity '{opportunity_id}' does not exist",
                           ErrorType.REFERENCE, Severity.ERROR)

    # Layer 4: duplicates

    def _check_duplicates(self, table: str, record: Record, findings: _Findings) -> None:
        cache = self.cache

        if table == ORGANIZATIONS:
            if isinstance(record.name, str) and record.name.strip():
                existing = cache.organization_names.get(record.name.strip().lower())
                if existing is not None and existing != record.id:
                    findings.error("name", record.name,
                                   f"Organization '{record.name}' already exists",
                                   ErrorType.DUPLICATE, Severity.ERROR)
            if isinstance(record.email, str) and record.email.strip():
                existing = cache.organization_emails.get(record.email.strip().lower())
                if existing is not None and existing != record.id:
                    findings.error("email", record.email,
                                   f"Email '{record.email}' is already used by another organization",
                                   ErrorType.DUPLICATE, Severity.ERROR)

        elif table == CONTACTS:
            if (
                record.is_primary is True
                and _present(record.organization_id)
                and str(record.organization_id) in cache.primary_contact_organizations
            ):
                findings.error("is_primary", True,
                               "Organization already has a primary contact",
                               ErrorType.DUPLICATE, Severity.ERROR)

    # Warnings and quality

    def _collect_warnings(self, table: str, record: Record, findings: _Findings) -> None:
        if table == ORGANIZATIONS:
            if not _present(record.segment):
                findings.warning("segment", None, "Missing segment classification",
                                 "Add segment (e.g., FINE_DINING, CASUAL_DINING) for better categorization")
            if not _present(record.address):
                findings.warning("address", None, "Missing address",
                                 "Add an address so visits can be planned")
        elif table == CONTACTS:
            if not _present(record.position):
                findings.warning("position", None, "Missing contact position",
                                 "Add the contact's role to help target communication")
        elif table == INTERACTIONS:
            if record.type in self.rules.detail_outcome_types and not _present(record.outcome):
                findings.warning("outcome", None, f"{record.type} interaction has no outcome",
                                 "Record the outcome of in-person interactions")
        elif table == OPPORTUNITIES:
            if not _present(record.expected_close_date):
                findings.warning("expected_close_date", None, "Missing expected close date",
                                 "Add an expected close date for pipeline forecasting")

    def quality_score(self, table: str, record: Record) -> int:
        """Score completeness of a record: 100 minus penalties, clamped to [0, 100]."""
        rules = self.rules
        penalties = 0

        def penalize(key: str) -> None:
            nonlocal penalties
            penalties += rules.penalty(table, key)

        if table == ORGANIZATIONS:
            if not _present(record.name):
                penalize("name")
            if not _present(record.priority):
                penalize("priority")
            if not _present(record.segment):
                penalize("segment")
            if not (_present(record.phone) or _present(record.email)):
                penalize("contact_method")
            if not _present(record.address):
                penalize("address")
            if record.estimated_revenue is None:
                penalize("estimated_revenue")
            if record.employee_count is None:
                penalize("employee_count")
            last_contact = _as_datetime(record.last_contact_date)
            if last_contact is not None:
                stale_days, very_stale_days = rules.stale_contact_days
                age = (self.as_of - last_contact).days
                if age > very_stale_days:
                    penalize("very_stale_contact")
                elif age > stale_days:
                    penalize("stale_contact")

        elif table == CONTACTS:
            if not (_present(record.first_name) and _present(record.last_name)):
                penalize("name")
            if not (_present(record.email) or _present(record.phone)):
                penalize("contact_method")
            if not _present(record.position):
                penalize("position")

        elif table == INTERACTIONS:
            if not _present(record.subject):
                penalize("subject")
            if not _present(record.description):
                penalize("description")
            if not _present(record.outcome):
                penalize("outcome")
            if record.outcome == rules.follow_up_outcome and not _present(record.next_action):
                penalize("follow_up")

        elif table == OPPORTUNITIES:
            if record.value is None:
                penalize("value")
            if record.expected_close_date is None:
                penalize("expected_close_date")
            if not _present(record.contact_id):
                penalize("contact")
            if (
                record.stage == "PROPOSAL"
                and _is_number(record.probability)
                and record.probability < 25
            ):
                penalize("low_proposal_probability")

        return max(0, min(100, 100 - penalties))


class ValidationService:
    """Runs the ValidationEngine over batches of records."""

    def __init__(self, engine: Optional[ValidationEngine] = None):
        self.engine = engine or ValidationEngine()

    def validate_records(
        self,
        table: str,
        records: Sequence[Record],
        options: Optional[ValidationOptions] = None,
        row_numbers: Optional[Sequence[int]] = None,
    ) -> ValidationResult:
        """
        Validate a batch of records of one table.

        Args:
            table: Target table name
            records: Transformed records
            options: Batch options (stop on error, quality, parallelism)
            row_numbers: Spreadsheet row of each record; defaults to 1..n

        Returns:
            ValidationResult aggregating every record processed
        """
        options = options or ValidationOptions()
        if row_numbers is None:
            row_numbers = range(1, len(records) + 1)
        pairs = list(zip(records, row_numbers))

        result = ValidationResult(table=table)
        scores: List[int] = []

        for row_result in self._iter_results(table, pairs, options):
            result.processed_count += 1
            result.errors.extend(row_result.errors)
            result.warnings.extend(row_result.warnings)
            scores.append(row_result.quality_score)
            if row_result.errors:
                result.invalid_count += 1
                if options.stop_on_error:
                    logger.debug(f"Stopping {table} validation at first invalid record")
                    break

        result.error_count = len(result.errors)
        result.warning_count = len(result.warnings)
        result.is_valid = result.error_count == 0
        if options.calculate_quality and scores:
            result.data_quality_score = round(sum(scores) / len(scores))
        return result

    def _iter_results(self, table: str, pairs, options: ValidationOptions) -> Iterable[RowValidation]:
        if options.max_workers > 1 and not options.stop_on_error and len(pairs) > 1:
            with ThreadPoolExecutor(max_workers=options.max_workers) as pool:
                # map() yields in submission order; the caller is the only writer
                yield from pool.map(
                    lambda pair: self.engine.validate_row(table, pair[0], pair[1]), pairs
                )
        else:
            for record, row in pairs:
                yield self.engine.validate_row(table, record, row)


def generate_report(results: Dict[str, ValidationResult]) -> str:
    """Render validation results of several tables as markdown."""
    total_processed = sum(r.processed_count for r in results.values())
    total_errors = sum(r.error_count for r in results.values())
    total_warnings = sum(r.warning_count for r in results.values())
    scores = [r.data_quality_score for r in results.values() if r.processed_count]
    average_quality = round(sum(scores) / len(scores)) if scores else 100

    lines = [
        "# Data Validation Report",
        "",
        "## Summary",
        f"- Records processed: {total_processed}",
        f"- Errors: {total_errors}",
        f"- Warnings: {total_warnings}",
        f"- Average data quality: {average_quality}%",
        "",
    ]

    for table, result in results.items():
        status = "valid" if result.is_valid else "invalid"
        lines.append(f"## {table} ({status})")
        lines.append(f"- Processed: {result.processed_count}")
        lines.append(f"- Invalid records: {result.invalid_count}")
        lines.append(f"- Data quality score: {result.data_quality_score}%")
        if result.errors:
            lines.append("")
            lines.append("| Row | Field | Type | Severity | Message |")
            lines.append("|---|---|---|---|---|")
            for error in result.errors[:20]:
                lines.append(
                    f"| {error.row} | {error.field} | {error.error_type.value} | "
                    f"{error.severity.value} | {error.message} |"
                )
            if len(result.errors) > 20:
                lines.append(f"\n... and {len(result.errors) - 20} more errors")
        lines.append("")

    return "\n".join(lines)
