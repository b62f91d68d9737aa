"""Time-off service — leave policies, balance ledger and request lifecycle."""

__version__ = "1.0.0"
