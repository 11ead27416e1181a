"""Scheduler runtime for ledger maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from cafe_loyalty_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task: str) -> JobCallable:
    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


class LedgerJobScheduler:
    """Run TOML-configured ledger jobs (expiration sweeps) on cron triggers."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.jobs:
            scheduler.add_job(
                self.build_runner(job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered ledger job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Ledger job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Ledger job scheduler stopped")

    def build_runner(self, job: JobDefinition, func: JobCallable | None = None) -> Callable[[], Awaitable[Any]]:
        """Wrap a job so each dispatch is retried with backoff and recorded."""

        target = func or resolve_task(job.task)

        async def _runner() -> Any:
            policy = job.retry
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await target(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error_message = str(exc) or exc.__class__.__name__
                    if attempt >= policy.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error_message,
                        )
                        logger.exception(
                            "Scheduled ledger job failed after retries",
                            job_id=job.id,
                            attempts=attempt,
                            error=error_message,
                        )
                        return None

                    delay = policy.delay_for(attempt)
                    if policy.jitter_seconds:
                        delay += random.uniform(0, policy.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, attempts=attempt, error=error_message)
                    logger.warning(
                        "Scheduled ledger job retrying",
                        job_id=job.id,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await self._sleep(delay)
                    continue

                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=time.perf_counter() - started_at,
                    attempts=attempt,
                    result=result if isinstance(result, dict) else None,
                )
                logger.info("Scheduled ledger job completed", job_id=job.id, attempts=attempt)
                return result

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["LedgerJobScheduler", "resolve_task"]
