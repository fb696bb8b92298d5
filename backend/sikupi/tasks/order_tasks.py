from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="sikupi.tasks.order_tasks.run_stale_pending_sweep",
    max_retries=3,
)
def run_stale_pending_sweep_task(self, *, trace_id: str = ""):
    started = time.perf_counter()
    try:
        limit = int((os.getenv("STALE_SWEEP_LIMIT") or "100").strip() or 100)
    except ValueError:
        limit = 100
    from sikupi.jobs.stale_order_runner import run_stale_pending_sweep

    try:
        result = run_stale_pending_sweep(limit=max(1, min(limit, 500)))
        _task_log(
            "run_stale_pending_sweep",
            status="ok" if bool(result.get("ok")) else "failed",
            started_at=started,
            trace_id=trace_id,
            limit=limit,
            cancelled=len(result.get("cancelled") or []),
        )
        return result
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "run_stale_pending_sweep",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log(
            "run_stale_pending_sweep",
            status="failed",
            started_at=started,
            trace_id=trace_id,
            detail=str(exc),
        )
        raise
