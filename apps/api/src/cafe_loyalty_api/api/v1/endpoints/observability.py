"""Observability endpoints for ledger counters and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from cafe_loyalty_api.api.dependencies.security import require_staff_api_key
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/ledger",
    dependencies=[Depends(require_staff_api_key)],
    summary="Points ledger observability snapshot",
)
async def get_ledger_snapshot() -> dict[str, object]:
    return {
        "ledger": get_ledger_store().snapshot().as_dict(),
        "scheduler": get_scheduler_store().snapshot().as_dict(),
    }


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted ledger metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    ledger = get_ledger_store().snapshot()
    scheduler = get_scheduler_store().snapshot()

    lines: list[str] = []
    for operation, value in sorted(ledger.operations.items()):
        lines.extend(
            _format_metric(
                "cafe_loyalty_ledger_operations_total",
                "Ledger operations completed, grouped by kind",
                value,
                labels={"operation": operation},
            )
        )
    for bucket, value in sorted(ledger.points.items()):
        lines.extend(
            _format_metric(
                "cafe_loyalty_ledger_points_total",
                "Points moved through the ledger, grouped by direction",
                value,
                labels={"bucket": bucket},
            )
        )
    for key, value in sorted(ledger.failures.items()):
        operation, _, code = key.partition(":")
        lines.extend(
            _format_metric(
                "cafe_loyalty_ledger_failures_total",
                "Rejected or failed ledger operations",
                value,
                labels={"operation": operation, "code": code},
            )
        )

    for bucket, value in sorted(scheduler.totals.items()):
        lines.extend(
            _format_metric(
                f"cafe_loyalty_scheduler_{bucket}_total",
                f"Ledger scheduler job {bucket.replace('_', ' ')}",
                value,
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
