#!/usr/bin/env python3
"""
Schema validation for YAML config and override files.

This module provides Pydantic models for validating:
- config.yaml: Main configuration file
- mapping_overrides.yaml: Pre-supplied sheet/field mapping overrides
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

TARGET_TABLES = ("organizations", "contacts", "opportunities", "interactions")


class ValidationError(Exception):
    """Custom validation error for clearer error messages."""

    pass


# Config.yaml schemas
class MigrationOptionsSchema(BaseModel):
    """Migration options recognised by the orchestrator."""

    batch_size: int = Field(default=500, ge=1)
    stop_on_error: bool = False
    validate_references: bool = True
    check_duplicates: bool = True
    calculate_quality: bool = True
    min_quality_score: int = Field(default=70, ge=0, le=100)
    enable_rollback: bool = True
    dry_run: bool = False
    checkpoint_frequency: int = Field(default=1000, ge=1)
    sample_size: int = Field(default=100, ge=1)
    header_scan_rows: int = Field(default=10, ge=1)
    rollback_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    allow_low_confidence: bool = False
    max_workers: int = Field(default=1, ge=1)


class ConfigSchema(BaseModel):
    """Schema for config.yaml."""

    migration: MigrationOptionsSchema | None = None
    state_dir: str = ".migration-state"
    output_dir: str = "output"
    rules_path: str | None = None
    overrides_path: str | None = None


# Mapping overrides schemas
class ManualMappingSchema(BaseModel):
    """Schema for a forced source -> target field mapping."""

    sheet: str
    source_field: str
    target_field: str
    comment: str | None = None


class SkipFieldSchema(BaseModel):
    """Schema for a source column that must never be mapped."""

    source_field: str
    sheet: str | None = None
    comment: str | None = None


class MappingOverridesSchema(BaseModel):
    """Schema for mapping_overrides.yaml."""

    sheet_tables: dict[str, str] | None = None
    manual_mappings: list[ManualMappingSchema] | None = None
    skip_fields: list[SkipFieldSchema] | None = None
    synonyms: dict[str, list[str]] | None = None

    @field_validator("sheet_tables")
    @classmethod
    def validate_sheet_tables(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        """Validate that every sheet points at a known target table."""
        if v is None:
            return v
        for sheet, table in v.items():
            if table not in TARGET_TABLES:
                raise ValueError(
                    f"sheet '{sheet}' maps to unknown table '{table}' "
                    f"(expected one of {', '.join(TARGET_TABLES)})"
                )
        return v


def validate_config(data: dict[str, Any]) -> ConfigSchema:
    """
    Validate config.yaml data.

    Args:
        data: Dictionary loaded from config.yaml

    Returns:
        Validated ConfigSchema instance

    Raises:
        ValidationError: If validation fails
    """
    try:
        return ConfigSchema(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid config.yaml: {e}") from e


def validate_mapping_overrides(data: dict[str, Any]) -> MappingOverridesSchema:
    """
    Validate mapping_overrides.yaml data.

    Args:
        data: Dictionary loaded from the overrides file

    Returns:
        Validated MappingOverridesSchema instance

    Raises:
        ValidationError: If validation fails
    """
    try:
        return MappingOverridesSchema(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid mapping overrides: {e}") from e
