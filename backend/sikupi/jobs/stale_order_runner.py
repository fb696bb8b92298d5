from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from sikupi.errors import OrderEngineError, StateConflictError
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.order_status import Actor


logger = logging.getLogger(__name__)

STALE_CANCEL_NOTE = "auto-cancelled: payment window expired"


def _now():
    return datetime.utcnow()


def stale_pending_hours() -> int:
    raw = (os.getenv("STALE_PENDING_HOURS") or "0").strip()
    try:
        return max(0, int(raw))
    except ValueError:
        return 0


def sweep_stale_pending(engine: OrderLifecycleEngine, *, older_than: datetime, limit: int = 100) -> dict:
    """Cancel pending transactions created before ``older_than`` as the system actor."""
    actor = Actor.system("stale_sweep")
    cancelled: list[int] = []
    skipped: list[int] = []
    errors: list[dict] = []
    for txn in engine.stores.transactions.list_stale_pending(older_than, limit=int(limit)):
        try:
            engine.cancel(txn.id, actor, reason=STALE_CANCEL_NOTE, metadata={"job": "stale_pending_sweep"})
            cancelled.append(int(txn.id))
        except StateConflictError:
            # Confirmed or cancelled since it was listed.
            skipped.append(int(txn.id))
        except OrderEngineError as exc:
            logger.warning("stale_sweep_cancel_failed transaction_id=%s err=%s", txn.id, exc.message)
            errors.append({"transaction_id": int(txn.id), "error": exc.code})
    return {
        "ok": not errors,
        "cancelled": cancelled,
        "skipped": skipped,
        "errors": errors,
        "older_than": older_than.isoformat(),
    }


def run_stale_pending_sweep(*, max_age_hours: int | None = None, limit: int = 100) -> dict:
    """App-context entry point used by the Celery task, the CLI and the ops script."""
    from sikupi.services.factory import get_order_services
    from sikupi.utils.job_runs import record_job_run

    started = _now()
    hours = stale_pending_hours() if max_age_hours is None else int(max_age_hours)
    if hours <= 0:
        logger.info("stale_sweep_disabled")
        return {"ok": True, "disabled": True, "cancelled": [], "skipped": [], "errors": []}

    services = get_order_services()
    try:
        result = sweep_stale_pending(services.engine, older_than=started - timedelta(hours=hours), limit=limit)
    except Exception as exc:
        record_job_run(job_name="stale_pending_sweep", ok=False, started_at=started, error=str(exc))
        raise
    record_job_run(
        job_name="stale_pending_sweep",
        ok=bool(result.get("ok")),
        started_at=started,
        error=None if result.get("ok") else f"{len(result['errors'])} cancellation(s) failed",
    )
    logger.info(
        "stale_sweep_done hours=%s cancelled=%s skipped=%s errors=%s",
        hours,
        len(result["cancelled"]),
        len(result["skipped"]),
        len(result["errors"]),
    )
    return result
