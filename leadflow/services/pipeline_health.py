"""
Pipeline Health: SLA dashboard for one pipeline.

Buckets every active entry green / yellow / red at a single ``now`` and
refreshes ``PipelineEntry.health_cache`` so list views can sort without
recomputing.  The cache is never read back here.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from leadflow.models import db
from leadflow.models.entry import ENTRY_STATUS_ACTIVE, PipelineEntry
from leadflow.services import sla_clock
from leadflow.services.pipeline_config import get_pipeline

logger = logging.getLogger(__name__)


def pipeline_health_summary(pipeline_id: int, now: datetime | None = None) -> dict:
    """Counts per bucket, overdue entries (worst first), compliance % and average age."""
    now = now or datetime.now(timezone.utc)
    pipeline = get_pipeline(pipeline_id)
    window = current_app.config.get("SLA_WARNING_WINDOW_DAYS", sla_clock.DEFAULT_WARNING_WINDOW_DAYS)

    entries = PipelineEntry.query.filter_by(pipeline_id=pipeline.id, status=ENTRY_STATUS_ACTIVE).all()

    counts = {b.value: 0 for b in sla_clock.HealthBucket}
    by_stage: dict[int, dict] = {
        s.id: {"stage_id": s.id, "name": s.name, "order": s.order, "active": 0,
               **{b.value: 0 for b in sla_clock.HealthBucket}}
        for s in pipeline.stages
    }
    overdue = []
    total_days = 0

    for entry in entries:
        h = sla_clock.health(entry.stage, entry, now, warning_window_days=window)
        counts[h.bucket.value] += 1
        stage_row = by_stage.get(entry.stage_id)
        if stage_row is not None:
            stage_row["active"] += 1
            stage_row[h.bucket.value] += 1
        total_days += h.elapsed_days
        entry.health_cache = h.bucket.value
        if h.overdue_days > 0:
            overdue.append({
                "entry_id": entry.id,
                "lead_id": entry.lead_id,
                "stage_id": entry.stage_id,
                "stage_name": entry.stage.name,
                "overdue_days": h.overdue_days,
                "elapsed_days": h.elapsed_days,
            })

    db.session.commit()

    total = len(entries)
    overdue.sort(key=lambda o: (-o["overdue_days"], o["entry_id"]))
    compliance = 100.0 if total == 0 else round((total - counts["red"]) / total * 100, 1)
    avg_days = 0.0 if total == 0 else round(total_days / total, 1)

    logger.debug("Health summary pipeline=%s active=%d red=%d", pipeline.id, total, counts["red"],
                 extra={"pipeline_id": pipeline.id})

    return {
        "pipeline_id": pipeline.id,
        "as_of": now.isoformat(),
        "active": total,
        "counts": counts,
        "by_stage": sorted(by_stage.values(), key=lambda r: r["order"]),
        "overdue": overdue,
        "sla_compliance_pct": compliance,
        "avg_days_in_stage": avg_days,
    }
