#!/usr/bin/env python3
"""
Tests for configuration loading, schema validation and rule files.
"""

import argparse
import logging

import pytest
import yaml

from crm_migrate.config_loader import Config
from crm_migrate.logging_config import get_logger, setup_logging
from crm_migrate.rules import DEFAULT_RULES, load_rules, validate_rules
from crm_migrate.schema import ValidationError, validate_config


def test_defaults_without_file(tmp_path):
    """A missing config file leaves every option at its default."""
    config = Config(config_path=tmp_path / "missing.yaml")

    assert config.batch_size == 500
    assert config.min_quality_score == 70
    assert config.rollback_threshold == 0.5
    assert config.enable_rollback is True
    assert config.dry_run is False
    assert config.state_dir == ".migration-state"
    assert config.options()["sample_size"] == 100


def test_load_from_file(tmp_path):
    """Values from config.yaml override the defaults."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "migration": {"batch_size": 50, "dry_run": True, "min_quality_score": 80},
                "state_dir": "state",
                "rules_path": "rules.yaml",
            }
        ),
        encoding="utf-8",
    )
    config = Config(config_path=path)

    assert config.batch_size == 50
    assert config.dry_run is True
    assert config.min_quality_score == 80
    assert config.state_dir == "state"
    assert config.rules_path == "rules.yaml"
    # Options not in the file keep their defaults
    assert config.checkpoint_frequency == 1000


def test_invalid_file_falls_back_to_defaults(tmp_path):
    """An invalid config file is reported and ignored."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"migration": {"batch_size": 0}}), encoding="utf-8")

    config = Config(config_path=path)
    assert config.batch_size == 500


def test_validate_config_rejects_bad_values():
    """Schema validation catches out-of-range options."""
    with pytest.raises(ValidationError):
        validate_config({"migration": {"rollback_threshold": 2.0}})
    assert validate_config({}).output_dir == "output"


def test_update_and_cli_merge(tmp_path):
    """update() checks option names; CLI arguments win over file values."""
    config = Config(config_path=tmp_path / "missing.yaml")
    config.update(batch_size=10)
    assert config.batch_size == 10
    with pytest.raises(ValueError):
        config.update(colour="blue")

    args = argparse.Namespace(batch_size=None, dry_run=True, state_dir="elsewhere", rules=None)
    config.merge_with_cli_args(args)
    assert config.batch_size == 10
    assert config.dry_run is True
    assert config.state_dir == "elsewhere"
    assert config.get_state_dir().name == "elsewhere"


def test_load_rules(tmp_path):
    """Rule files replace only the keys they name."""
    assert load_rules(None) is DEFAULT_RULES

    path = tmp_path / "rules.yaml"
    path.write_text(
        yaml.safe_dump({"high_value_threshold": 5000, "service_windows": [[12, 15]]}),
        encoding="utf-8",
    )
    rules = load_rules(path)
    assert rules.high_value_threshold == 5000
    assert rules.service_windows == [(12, 15)]
    assert rules.stage_probability["PROPOSAL"] == (40, 75)


def test_invalid_rules():
    """Broken patterns and windows are rejected."""
    with pytest.raises(ValidationError):
        validate_rules({"email_pattern": "([unclosed"})
    with pytest.raises(ValidationError):
        validate_rules({"service_windows": [[14, 11]]})
    with pytest.raises(ValidationError):
        load_rules("/nonexistent/rules.yaml")


def test_logging_namespace():
    """Module loggers live under the package logger."""
    logger = setup_logging("DEBUG")
    assert logger.name == "crm_migrate"
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
    assert get_logger("some.module").name == "crm_migrate.module"
    assert get_logger("crm_migrate.store").name == "crm_migrate.store"
    assert get_logger("__main__").name == "crm_migrate.main"
