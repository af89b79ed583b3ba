#!/usr/bin/env python3
"""
Entry point for running crm_migrate as a module.

This allows running the package with: python -m crm_migrate
"""

from .logging_config import setup_logging
from .main import main

if __name__ == "__main__":
    # Initialize logging before running main
    setup_logging()
    main()
