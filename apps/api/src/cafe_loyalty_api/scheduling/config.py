"""Load recurring ledger job schedules from TOML."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after `attempt` failed, without jitter."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        return max(delay, 0.0)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
            base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
            backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
            max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
            jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
        )


@dataclass(slots=True)
class JobDefinition:
    """A dotted async task path run on a crontab expression."""

    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def parse_schedule(data: Mapping[str, Any]) -> ScheduleConfig:
    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            raise ValueError(f"Job {key} must be a table")
        task = payload.get("task")
        cron = payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            raise ValueError(f"Job {key} requires string 'task' and 'cron' entries")
        kwargs = payload.get("kwargs") or {}
        if not isinstance(kwargs, dict):
            raise ValueError(f"Job {key} kwargs must be a table")
        jobs.append(
            JobDefinition(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                kwargs=dict(kwargs),
                retry=RetryPolicy.from_mapping(payload),
            )
        )
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")
    return parse_schedule(tomllib.loads(config_path.read_text()))


__all__ = ["JobDefinition", "RetryPolicy", "ScheduleConfig", "load_job_definitions", "parse_schedule"]
