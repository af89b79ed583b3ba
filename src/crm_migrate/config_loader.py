#!/usr/bin/env python3
"""
Configuration loading and management for crm-migrate.

Handles loading configuration from config.yaml and merging with CLI arguments.
CLI arguments take precedence over config.yaml values.
"""

from pathlib import Path
from typing import Optional

import yaml

from .logging_config import get_logger
from .schema import MigrationOptionsSchema, ValidationError, validate_config

# Initialize logger for this module
logger = get_logger(__name__)

OPTION_NAMES = tuple(MigrationOptionsSchema.model_fields)


class Config:
    """Configuration management class for crm-migrate."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration with defaults and load from file if available."""
        # Migration options
        self.batch_size = 500
        self.stop_on_error = False
        self.validate_references = True
        self.check_duplicates = True
        self.calculate_quality = True
        self.min_quality_score = 70
        self.enable_rollback = True
        self.dry_run = False
        self.checkpoint_frequency = 1000
        self.sample_size = 100
        self.header_scan_rows = 10
        self.rollback_threshold = 0.5
        self.allow_low_confidence = False
        self.max_workers = 1

        # Locations
        self.state_dir = ".migration-state"
        self.output_dir = "output"
        self.rules_path: Optional[str] = None
        self.overrides_path: Optional[str] = None

        if config_path is None:
            config_path = Path.cwd() / "config" / "config.yaml"
            if not config_path.exists():
                config_path = Path.cwd() / "config.yaml"

        if config_path.exists():
            self._load_from_file(config_path)

    def _load_from_file(self, config_path: Path) -> None:
        """Load configuration from YAML file."""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f)

            if config_data:
                validated = validate_config(config_data)
                if validated.migration is not None:
                    self.update(**validated.migration.model_dump())
                self.state_dir = validated.state_dir
                self.output_dir = validated.output_dir
                self.rules_path = validated.rules_path
                self.overrides_path = validated.overrides_path

        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.warning(f"Could not load {config_path.name}: {e}")
            logger.info("Using default values")

    def update(self, **options) -> "Config":
        """Set migration options by name; unknown names raise ValueError."""
        for name, value in options.items():
            if name not in OPTION_NAMES:
                raise ValueError(f"Unknown migration option: {name}")
            setattr(self, name, value)
        return self

    def merge_with_cli_args(self, args) -> None:
        """Merge CLI arguments with config values. CLI args take precedence."""
        for name in OPTION_NAMES:
            value = getattr(args, name, None)
            if value is not None:
                setattr(self, name, value)

        if getattr(args, "state_dir", None) is not None:
            self.state_dir = args.state_dir
        if getattr(args, "output_dir", None) is not None:
            self.output_dir = args.output_dir
        if getattr(args, "rules", None) is not None:
            self.rules_path = args.rules
        if getattr(args, "overrides", None) is not None:
            self.overrides_path = args.overrides

    def options(self) -> dict:
        """Return the migration options as a plain dict (for reports)."""
        return {name: getattr(self, name) for name in OPTION_NAMES}

    def get_state_dir(self) -> Path:
        """Get the directory holding migration state and checkpoints."""
        return Path.cwd() / self.state_dir

    def get_output_dir(self) -> Path:
        """Get the full output directory path."""
        return Path.cwd() / self.output_dir


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from file or use defaults."""
    return Config(config_path)
