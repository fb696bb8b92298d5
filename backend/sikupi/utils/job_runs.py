from __future__ import annotations

import logging
from datetime import datetime

from sikupi.extensions import db
from sikupi.models import JobRun


logger = logging.getLogger(__name__)


def record_job_run(*, job_name: str, ok: bool, started_at: datetime, error: str | None = None) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except Exception as exc:
        db.session.rollback()
        logger.warning("job_run_record_failed job=%s err=%s", job_name, exc)
        return None
