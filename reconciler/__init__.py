"""Order/payment webhook reconciliation service."""

__version__ = "0.1.0"
