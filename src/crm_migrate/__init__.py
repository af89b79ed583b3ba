#!/usr/bin/env python3
"""
CRM Migrate - Spreadsheet to CRM Migration Engine

Main package for crm-migrate providing confidence-scored field mapping,
multi-layer record validation and checkpoint/rollback support for moving
workbook data into organizations, contacts, opportunities and interactions.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "CRM Migrate Team"
__description__ = "Confidence-scored spreadsheet migration into a CRM schema"
