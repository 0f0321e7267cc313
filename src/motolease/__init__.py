"""Payment reconciliation and rental lifecycle engine for motorcycle leasing."""

__version__ = "0.1.0"
