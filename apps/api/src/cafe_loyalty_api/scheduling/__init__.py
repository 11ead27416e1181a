"""Scheduling utilities for recurring ledger maintenance."""

from .config import JobDefinition, RetryPolicy, load_job_definitions
from .runner import LedgerJobScheduler

__all__ = ["JobDefinition", "LedgerJobScheduler", "RetryPolicy", "load_job_definitions"]
