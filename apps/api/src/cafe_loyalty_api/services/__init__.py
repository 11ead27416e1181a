"""Service layer for the loyalty ledger."""
