"""Maintenance jobs for prime accounts: fee sweeps, debt-coverage tiers, QA sync."""

__version__ = "0.1.0"
