"""
Cash Call Engine Settings

Environment-driven configuration for the cash call engine.
Database connection settings live in database.py.
"""

import os

# Prefix used when generating call numbers (e.g. CC-1718000000000-042)
CASH_CALL_NUMBER_PREFIX = os.getenv("CASH_CALL_NUMBER_PREFIX", "CC")

CASH_CALL_DEFAULT_CURRENCY = os.getenv("CASH_CALL_DEFAULT_CURRENCY", "USD")

# Optimistic-concurrency retries for a single write before giving up
CASH_CALL_MAX_WRITE_ATTEMPTS = int(os.getenv("CASH_CALL_MAX_WRITE_ATTEMPTS", "3"))

# Maximum ids accepted by one bulk request
CASH_CALL_BULK_LIMIT = int(os.getenv("CASH_CALL_BULK_LIMIT", "500"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
