"""Redemption and payment-reconciliation engine for a shared seat pool."""

__version__ = "1.0.0"
