"""Recurring job entrypoints for ledger automation."""

__all__ = ["ledger"]
