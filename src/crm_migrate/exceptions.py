#!/usr/bin/env python3
"""
Infrastructure-level exceptions for crm-migrate.

Row-level validation findings are collected as data and never raised; only
faults that make the current phase impossible to continue are exceptions.
"""


class MigrationError(Exception):
    """Base class for migration engine failures."""

    pass


class WorkbookReadError(MigrationError):
    """The workbook could not be opened or parsed."""

    pass


class StoreError(MigrationError):
    """The record store rejected or failed an operation."""

    pass


class InvalidStateTransition(MigrationError):
    """A migration state left in_progress was asked to change again."""

    pass


class MigrationAborted(MigrationError):
    """Raised inside the orchestrator when the cancellation signal is set."""

    pass
