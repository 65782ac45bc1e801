"""
Stage Transition Manager: enroll, advance, archive and transfer pipeline entries.

Every operation:
  1. takes the per-(lead, pipeline) lock (one per key for transfers and
     bulk enrollment; plus the target stage's capacity lock when the stage
     has a WIP limit),
  2. re-reads the entry status under the lock,
  3. validates the move (status, target stage, WIP limit),
  4. for advancement, evaluates the current stage's criteria,
  5. mutates the entry and appends one audit row in the same transaction,
  6. commits, or rolls back and leaves everything untouched.

Failures are typed: ``AlreadyEnrolled`` / ``NotActive`` (state conflicts),
``InvalidTarget``, ``ConcurrencyTimeout`` and ``ConfigurationError`` are
raised.  Unmet mandatory criteria are an expected outcome and come back as a
``TransitionResult`` with ``outcome == "criteria_not_met"``.

Usage:
    from leadflow.services.stage_transition import get_transition_manager

    manager = get_transition_manager()
    entry = manager.enroll(lead_id=7, pipeline_id=1, actor="maria")
    result = manager.advance_stage(entry.id, target_stage_id=2, actor="maria")
    if not result.ok:
        result.evaluation.blockers
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy.exc import IntegrityError

from leadflow.core.exceptions import (
    AlreadyEnrolled,
    InvalidTarget,
    NotActive,
    NotFoundError,
    StageCapacityReached,
    ValidationError,
)
from leadflow.models import db
from leadflow.models.audit import AuditLog, write_audit
from leadflow.models.entry import (
    ENTRY_STATUS_ACTIVE,
    ENTRY_STATUS_ARCHIVED,
    ENTRY_STATUS_COMPLETED,
    PipelineEntry,
    as_utc,
    validate_entry_transition,
)
from leadflow.models.lead import Lead
from leadflow.models.pipeline import Pipeline, PipelineStage
from leadflow.services import sla_clock
from leadflow.services.criteria_aggregator import AggregateResult, aggregate
from leadflow.services.criterion_state_service import states_for
from leadflow.services.entry_locks import EntryLockRegistry, entry_locks
from leadflow.services.pipeline_config import get_pipeline, load_stage_criteria, validate_pipeline

logger = logging.getLogger(__name__)

OUTCOME_ADVANCED = "advanced"
OUTCOME_REGRESSED = "regressed"
OUTCOME_COMPLETED = "completed"
OUTCOME_CRITERIA_NOT_MET = "criteria_not_met"

TRANSFER_ARCHIVE_REASON = "transferred"
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Result types
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EntrySnapshot:
    """Read-only copy of a pipeline entry with health computed at ``as_of``."""
    id: int
    lead_id: int
    pipeline_id: int
    stage_id: int
    stage_name: str | None
    status: str
    enrolled_at: datetime
    entered_stage_at: datetime
    closed_at: datetime | None
    archive_reason: str | None
    stage_note: str | None
    transferred_from_id: int | None
    health: sla_clock.SLAHealth | None
    as_of: datetime

    @property
    def is_active(self) -> bool:
        return self.status == ENTRY_STATUS_ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "pipeline_id": self.pipeline_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "status": self.status,
            "enrolled_at": self.enrolled_at.isoformat() if self.enrolled_at else None,
            "entered_stage_at": self.entered_stage_at.isoformat() if self.entered_stage_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "archive_reason": self.archive_reason,
            "stage_note": self.stage_note,
            "transferred_from_id": self.transferred_from_id,
            "health": self.health.to_dict() if self.health else None,
            "as_of": self.as_of.isoformat(),
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of ``advance_stage``.

    ``ok`` is false only for ``criteria_not_met``; the entry is then the
    unchanged pre-call snapshot and ``evaluation.blockers`` says why.
    """
    outcome: str
    entry: EntrySnapshot
    evaluation: AggregateResult
    sla_before: sla_clock.SLAHealth
    from_stage_id: int
    to_stage_id: int

    @property
    def ok(self) -> bool:
        return self.outcome != OUTCOME_CRITERIA_NOT_MET

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "outcome": self.outcome,
            "entry": self.entry.to_dict(),
            "evaluation": self.evaluation.to_dict(),
            "sla_before": self.sla_before.to_dict(),
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
        }


@dataclass(frozen=True)
class TransferResult:
    source: EntrySnapshot
    target: EntrySnapshot

    def to_dict(self) -> dict:
        return {"source": self.source.to_dict(), "target": self.target.to_dict()}


@dataclass(frozen=True)
class BulkEnrollResult:
    """Outcome of ``enroll_many``: new entries plus leads left alone."""
    enrolled: list[EntrySnapshot] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enrolled": [e.to_dict() for e in self.enrolled],
            "skipped": list(self.skipped),
            "summary": {"enrolled": len(self.enrolled), "skipped": len(self.skipped)},
        }


# ═════════════════════════════════════════════════════════════════════════════
# Manager
# ═════════════════════════════════════════════════════════════════════════════


class StageTransitionManager:
    """Single writer of ``PipelineEntry`` rows."""

    def __init__(
        self,
        *,
        locks: EntryLockRegistry | None = None,
        lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT_SECONDS,
        warning_window_days: int = sla_clock.DEFAULT_WARNING_WINDOW_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.locks = locks or entry_locks
        self.lock_timeout = lock_timeout
        self.warning_window_days = warning_window_days
        self.clock = clock

    def _timeout(self, lock_timeout: float | None) -> float | None:
        """Per-call lock wait; ``None`` falls back to the manager default."""
        return self.lock_timeout if lock_timeout is None else lock_timeout

    # ── Snapshots ────────────────────────────────────────────────────────

    def health_of(self, entry: PipelineEntry, now: datetime) -> sla_clock.SLAHealth:
        return sla_clock.health(entry.stage, entry, now, warning_window_days=self.warning_window_days)

    def snapshot(self, entry: PipelineEntry, now: datetime | None = None) -> EntrySnapshot:
        now = now or self.clock()
        return EntrySnapshot(
            id=entry.id,
            lead_id=entry.lead_id,
            pipeline_id=entry.pipeline_id,
            stage_id=entry.stage_id,
            stage_name=entry.stage.name if entry.stage else None,
            status=entry.status,
            enrolled_at=as_utc(entry.enrolled_at),
            entered_stage_at=as_utc(entry.entered_stage_at),
            closed_at=as_utc(entry.closed_at),
            archive_reason=entry.archive_reason,
            stage_note=entry.stage_note,
            transferred_from_id=entry.transferred_from_id,
            health=self.health_of(entry, now) if entry.is_active else None,
            as_of=now,
        )

    # ── Read paths ───────────────────────────────────────────────────────

    def _load_entry(self, entry_id: int) -> PipelineEntry:
        entry = db.session.get(PipelineEntry, entry_id)
        if not entry:
            raise NotFoundError(resource="PipelineEntry", resource_id=entry_id)
        return entry

    def get_entry(self, entry_id: int, now: datetime | None = None) -> EntrySnapshot:
        return self.snapshot(self._load_entry(entry_id), now)

    def list_active_entries(self, pipeline_id: int, now: datetime | None = None) -> list[EntrySnapshot]:
        now = now or self.clock()
        rows = (
            PipelineEntry.query
            .filter_by(pipeline_id=pipeline_id, status=ENTRY_STATUS_ACTIVE)
            .order_by(PipelineEntry.entered_stage_at, PipelineEntry.id)
            .all()
        )
        return [self.snapshot(e, now) for e in rows]

    def entry_history(self, entry_id: int) -> list[AuditLog]:
        """Audit rows for an entry, oldest first, including the transfer that created it."""
        entry = self._load_entry(entry_id)
        q = AuditLog.query.filter(
            AuditLog.entity_type == "pipeline_entry",
            AuditLog.entity_id == str(entry.id),
        )
        rows = q.all()
        if entry.transferred_from_id:
            rows += AuditLog.query.filter_by(
                entity_type="pipeline_entry",
                entity_id=str(entry.transferred_from_id),
                action="pipeline_entry.transfer",
            ).all()
        return sorted(rows, key=lambda r: (as_utc(r.timestamp), r.id))

    def evaluate_exit(
        self,
        entry: PipelineEntry,
        *,
        snapshot: dict | None = None,
        context: dict | None = None,
        now: datetime | None = None,
    ) -> tuple[AggregateResult, sla_clock.SLAHealth]:
        """Aggregate the current stage's criteria for ``entry`` without mutating anything."""
        now = now or self.clock()
        stage = entry.stage
        specs = load_stage_criteria(stage)
        sla = self.health_of(entry, now)

        merged_context = sla_clock.time_metrics(stage, entry, now, sla)
        merged_context.update(context or {})
        lead_snapshot = snapshot if snapshot is not None else entry.lead.to_snapshot()
        states = states_for(entry.lead_id, [s.id for s in specs])

        return aggregate(specs, lead_snapshot, merged_context, states), sla

    def preview_advancement(self, entry_id: int, **kwargs) -> AggregateResult:
        entry = self._load_entry(entry_id)
        if not entry.is_active:
            raise NotActive(entry.id, entry.status)
        evaluation, _ = self.evaluate_exit(entry, **kwargs)
        return evaluation

    # ── Enroll ───────────────────────────────────────────────────────────

    def enroll(
        self,
        lead_id: int,
        pipeline_id: int,
        *,
        actor: str = "system",
        note: str | None = None,
        now: datetime | None = None,
        lock_timeout: float | None = None,
    ) -> EntrySnapshot:
        """Create an active entry at the pipeline's first stage.

        Raises:
            NotFoundError, ValidationError (inactive pipeline),
            ConfigurationError, AlreadyEnrolled, ConcurrencyTimeout
        """
        now = now or self.clock()
        lead = db.session.get(Lead, lead_id)
        if not lead:
            raise NotFoundError(resource="Lead", resource_id=lead_id)
        pipeline = get_pipeline(pipeline_id)
        self._check_enrollable(pipeline)

        with self.locks.hold(lead_id, pipeline_id, self._timeout(lock_timeout)):
            try:
                entry = self._enroll_locked(lead_id, pipeline, now=now, note=note)
                self._audit_enroll(entry, actor, now)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise AlreadyEnrolled(lead_id, pipeline_id) from None
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Lead %s enrolled in pipeline %s (entry=%s)", lead_id, pipeline_id, entry.id,
            extra={"entry_id": entry.id, "pipeline_id": pipeline_id, "event_type": "enroll"},
        )
        return self.snapshot(entry, now)

    def enroll_many(
        self,
        lead_ids: Iterable[int],
        pipeline_id: int,
        *,
        skip_existing: bool = True,
        actor: str = "system",
        note: str | None = None,
        now: datetime | None = None,
        lock_timeout: float | None = None,
    ) -> BulkEnrollResult:
        """Enroll several leads at the pipeline's first stage in one transaction.

        Leads that already have an active entry are reported in ``skipped``
        when ``skip_existing`` is set; otherwise the first one raises
        ``AlreadyEnrolled`` and nothing is enrolled.  Duplicate ids are
        enrolled once.  All keys are locked together under one deadline.

        Raises:
            NotFoundError (pipeline or any lead), ValidationError,
            ConfigurationError, AlreadyEnrolled, ConcurrencyTimeout
        """
        now = now or self.clock()
        lead_ids = list(dict.fromkeys(lead_ids))
        pipeline = get_pipeline(pipeline_id)
        self._check_enrollable(pipeline)
        if not lead_ids:
            return BulkEnrollResult()

        found = {row.id for row in Lead.query.filter(Lead.id.in_(lead_ids)).all()}
        missing = [lid for lid in lead_ids if lid not in found]
        if missing:
            raise NotFoundError(resource="Lead", resource_id=missing[0])

        enrolled, skipped = [], []
        keys = [(lid, pipeline_id) for lid in lead_ids]
        with self.locks.hold_many(keys, self._timeout(lock_timeout)):
            current = None
            try:
                for current in lead_ids:
                    try:
                        entry = self._enroll_locked(current, pipeline, now=now, note=note)
                    except AlreadyEnrolled as exc:
                        if not skip_existing:
                            raise
                        skipped.append({"lead_id": current, "entry_id": exc.entry_id, "reason": exc.code})
                        continue
                    self._audit_enroll(entry, actor, now, bulk=True)
                    enrolled.append(entry)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise AlreadyEnrolled(current, pipeline_id) from None
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Bulk enrollment in pipeline %s: %d enrolled, %d skipped", pipeline_id, len(enrolled), len(skipped),
            extra={"pipeline_id": pipeline_id, "event_type": "enroll_bulk"},
        )
        return BulkEnrollResult(enrolled=[self.snapshot(e, now) for e in enrolled], skipped=skipped)

    def _audit_enroll(self, entry: PipelineEntry, actor: str, now: datetime, bulk: bool = False) -> None:
        diff = {
            "status": {"old": None, "new": ENTRY_STATUS_ACTIVE},
            "stage": {"old": None, "new": _stage_ref(entry.stage)},
        }
        if bulk:
            diff["bulk"] = True
        write_audit(
            entity_type="pipeline_entry",
            entity_id=entry.id,
            action="pipeline_entry.enroll",
            actor=actor,
            lead_id=entry.lead_id,
            pipeline_id=entry.pipeline_id,
            timestamp=now,
            diff=diff,
        )

    def _check_enrollable(self, pipeline: Pipeline) -> None:
        if not pipeline.is_active:
            raise ValidationError(f"Pipeline {pipeline.id} is inactive", details={"pipeline_id": pipeline.id})
        validate_pipeline(pipeline)

    def _active_entry(self, lead_id: int, pipeline_id: int) -> PipelineEntry | None:
        return (
            PipelineEntry.query
            .filter_by(lead_id=lead_id, pipeline_id=pipeline_id, status=ENTRY_STATUS_ACTIVE)
            .populate_existing()
            .first()
        )

    def _enroll_locked(self, lead_id, pipeline, *, now, note=None, transferred_from_id=None):
        existing = self._active_entry(lead_id, pipeline.id)
        if existing:
            raise AlreadyEnrolled(lead_id, pipeline.id, entry_id=existing.id)

        first = pipeline.first_stage
        entry = PipelineEntry(
            lead_id=lead_id,
            pipeline_id=pipeline.id,
            stage=first,
            status=ENTRY_STATUS_ACTIVE,
            enrolled_at=now,
            entered_stage_at=now,
            stage_note=note,
            transferred_from_id=transferred_from_id,
        )
        db.session.add(entry)
        db.session.flush()
        entry.health_cache = self.health_of(entry, now).bucket.value
        return entry

    # ── Advance ──────────────────────────────────────────────────────────

    def advance_stage(
        self,
        entry_id: int,
        target_stage_id: int,
        *,
        snapshot: dict | None = None,
        context: dict | None = None,
        actor: str = "system",
        note: str | None = None,
        now: datetime | None = None,
        lock_timeout: float | None = None,
    ) -> TransitionResult:
        """Move an active entry to ``target_stage_id`` if the current stage's criteria allow it.

        Raises:
            NotFoundError, NotActive, InvalidTarget (incl. StageCapacityReached),
            ConfigurationError, ConcurrencyTimeout
        """
        now = now or self.clock()
        entry = self._load_entry(entry_id)
        timeout = self._timeout(lock_timeout)
        deadline = None if timeout is None else time.monotonic() + timeout

        with self.locks.hold(entry.lead_id, entry.pipeline_id, timeout):
            with self._capacity_lock(entry, target_stage_id, deadline):
                try:
                    db.session.refresh(entry)
                    result = self._advance_locked(entry, target_stage_id, snapshot, context, actor, note, now)
                    if result.ok:
                        db.session.commit()
                except Exception:
                    db.session.rollback()
                    raise

        if result.ok:
            logger.info(
                "Entry %s %s: stage %s -> %s", entry.id, result.outcome, result.from_stage_id, result.to_stage_id,
                extra={"entry_id": entry.id, "pipeline_id": entry.pipeline_id, "event_type": result.outcome},
            )
        else:
            logger.debug(
                "Entry %s blocked by %d criteria", entry.id, len(result.evaluation.blockers),
                extra={"entry_id": entry.id, "pipeline_id": entry.pipeline_id, "event_type": OUTCOME_CRITERIA_NOT_MET},
            )
        return result

    def _resolve_target(self, entry: PipelineEntry, target_stage_id: int) -> PipelineStage:
        current = entry.stage
        pipeline = entry.pipeline
        target = db.session.get(PipelineStage, target_stage_id)

        if target is None or target.pipeline_id != entry.pipeline_id:
            raise InvalidTarget(entry.id, target_stage_id, "stage does not belong to the entry's pipeline")
        if target.id == current.id:
            raise InvalidTarget(entry.id, target_stage_id, "entry is already in this stage")
        if target.order > current.order:
            if target.order != current.order + 1 and not pipeline.allow_stage_jumps:
                raise InvalidTarget(entry.id, target_stage_id, "stage jumps are not enabled for this pipeline")
        elif not pipeline.allow_regression:
            raise InvalidTarget(entry.id, target_stage_id, "moving back is not enabled for this pipeline")

        if target.wip_limit:
            occupied = PipelineEntry.query.filter_by(stage_id=target.id, status=ENTRY_STATUS_ACTIVE).count()
            if occupied >= target.wip_limit:
                raise StageCapacityReached(entry.id, target.id, target.wip_limit)
        return target

    def _capacity_lock(self, entry: PipelineEntry, target_stage_id: int, deadline: float | None):
        """Stage lock held across the WIP count and the commit; a no-op for uncapped stages."""
        target = db.session.get(PipelineStage, target_stage_id)
        if target is None or not target.wip_limit:
            return nullcontext()
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
        return self.locks.hold_stage(
            target.id, remaining, lead_id=entry.lead_id, pipeline_id=entry.pipeline_id,
        )

    def _advance_locked(self, entry, target_stage_id, snapshot, context, actor, note, now) -> TransitionResult:
        if not entry.is_active:
            raise NotActive(entry.id, entry.status)

        current = entry.stage
        target = self._resolve_target(entry, target_stage_id)
        evaluation, sla_before = self.evaluate_exit(entry, snapshot=snapshot, context=context, now=now)

        if not evaluation.can_advance:
            return TransitionResult(
                outcome=OUTCOME_CRITERIA_NOT_MET,
                entry=self.snapshot(entry, now),
                evaluation=evaluation,
                sla_before=sla_before,
                from_stage_id=current.id,
                to_stage_id=target.id,
            )

        old_status = entry.status
        entry.stage = target
        entry.entered_stage_at = now
        if note is not None:
            entry.stage_note = note

        if target.terminal:
            if not validate_entry_transition(old_status, ENTRY_STATUS_COMPLETED):
                raise NotActive(entry.id, old_status)
            entry.status = ENTRY_STATUS_COMPLETED
            entry.closed_at = now
            entry.health_cache = None
            outcome, action = OUTCOME_COMPLETED, "pipeline_entry.complete"
        else:
            entry.health_cache = self.health_of(entry, now).bucket.value
            if target.order > current.order:
                outcome, action = OUTCOME_ADVANCED, "pipeline_entry.advance"
            else:
                outcome, action = OUTCOME_REGRESSED, "pipeline_entry.regress"

        write_audit(
            entity_type="pipeline_entry",
            entity_id=entry.id,
            action=action,
            actor=actor,
            lead_id=entry.lead_id,
            pipeline_id=entry.pipeline_id,
            timestamp=now,
            diff={
                "stage": {"old": _stage_ref(current), "new": _stage_ref(target)},
                "status": {"old": old_status, "new": entry.status},
                "sla_at_exit": sla_before.to_dict(),
                "warnings": [w.name for w in evaluation.warnings],
            },
        )
        db.session.flush()

        return TransitionResult(
            outcome=outcome,
            entry=self.snapshot(entry, now),
            evaluation=evaluation,
            sla_before=sla_before,
            from_stage_id=current.id,
            to_stage_id=target.id,
        )

    # ── Archive ──────────────────────────────────────────────────────────

    def archive(
        self,
        entry_id: int,
        reason: str | None = None,
        *,
        actor: str = "system",
        now: datetime | None = None,
        lock_timeout: float | None = None,
    ) -> EntrySnapshot:
        """Archive an active entry.  No criteria are required.

        Raises:
            NotFoundError, NotActive, ConcurrencyTimeout
        """
        now = now or self.clock()
        entry = self._load_entry(entry_id)

        with self.locks.hold(entry.lead_id, entry.pipeline_id, self._timeout(lock_timeout)):
            try:
                db.session.refresh(entry)
                if not validate_entry_transition(entry.status, ENTRY_STATUS_ARCHIVED):
                    raise NotActive(entry.id, entry.status)
                self._archive_mutation(entry, reason, now)
                write_audit(
                    entity_type="pipeline_entry",
                    entity_id=entry.id,
                    action="pipeline_entry.archive",
                    actor=actor,
                    lead_id=entry.lead_id,
                    pipeline_id=entry.pipeline_id,
                    timestamp=now,
                    diff={
                        "status": {"old": ENTRY_STATUS_ACTIVE, "new": ENTRY_STATUS_ARCHIVED},
                        "stage": _stage_ref(entry.stage),
                        "reason": reason,
                    },
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Entry %s archived: %s", entry.id, (reason or "")[:200],
            extra={"entry_id": entry.id, "pipeline_id": entry.pipeline_id, "event_type": "archive"},
        )
        return self.snapshot(entry, now)

    @staticmethod
    def _archive_mutation(entry: PipelineEntry, reason: str | None, now: datetime) -> None:
        entry.status = ENTRY_STATUS_ARCHIVED
        entry.archive_reason = (reason or "")[:500] or None
        entry.closed_at = now
        entry.health_cache = None

    # ── Transfer ─────────────────────────────────────────────────────────

    def transfer(
        self,
        entry_id: int,
        target_pipeline_id: int,
        *,
        reason: str | None = None,
        actor: str = "system",
        note: str | None = None,
        now: datetime | None = None,
        lock_timeout: float | None = None,
    ) -> TransferResult:
        """Archive ``entry`` and enroll its lead in ``target_pipeline_id`` atomically.

        The target is checked before the source is touched, so a failed
        transfer leaves the source entry active and unchanged.

        Raises:
            NotFoundError, NotActive, AlreadyEnrolled, ValidationError,
            ConfigurationError, ConcurrencyTimeout
        """
        now = now or self.clock()
        entry = self._load_entry(entry_id)
        target_pipeline = get_pipeline(target_pipeline_id)
        self._check_enrollable(target_pipeline)
        lead_id, source_pipeline_id = entry.lead_id, entry.pipeline_id

        keys = [(lead_id, source_pipeline_id), (lead_id, target_pipeline_id)]
        with self.locks.hold_many(keys, self._timeout(lock_timeout)):
            try:
                db.session.refresh(entry)
                if not entry.is_active:
                    raise NotActive(entry.id, entry.status)
                existing = self._active_entry(lead_id, target_pipeline_id)
                if existing:
                    raise AlreadyEnrolled(lead_id, target_pipeline_id, entry_id=existing.id)

                source_stage = entry.stage
                archive_reason = TRANSFER_ARCHIVE_REASON if not reason else f"{TRANSFER_ARCHIVE_REASON}: {reason}"
                self._archive_mutation(entry, archive_reason, now)
                db.session.flush()

                new_entry = self._enroll_locked(
                    lead_id, target_pipeline, now=now, note=note, transferred_from_id=entry.id,
                )
                write_audit(
                    entity_type="pipeline_entry",
                    entity_id=entry.id,
                    action="pipeline_entry.transfer",
                    actor=actor,
                    lead_id=lead_id,
                    pipeline_id=source_pipeline_id,
                    timestamp=now,
                    diff={
                        "reason": reason,
                        "source": {
                            "entry_id": entry.id,
                            "pipeline_id": source_pipeline_id,
                            "stage": _stage_ref(source_stage),
                            "status": {"old": ENTRY_STATUS_ACTIVE, "new": ENTRY_STATUS_ARCHIVED},
                        },
                        "destination": {
                            "entry_id": new_entry.id,
                            "pipeline_id": target_pipeline_id,
                            "stage": _stage_ref(new_entry.stage),
                            "status": {"old": None, "new": ENTRY_STATUS_ACTIVE},
                        },
                    },
                )
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise AlreadyEnrolled(lead_id, target_pipeline_id) from None
            except Exception:
                db.session.rollback()
                raise

        logger.info(
            "Entry %s transferred: pipeline %s -> %s (new entry=%s)",
            entry.id, source_pipeline_id, target_pipeline_id, new_entry.id,
            extra={"entry_id": entry.id, "pipeline_id": target_pipeline_id, "event_type": "transfer"},
        )
        return TransferResult(source=self.snapshot(entry, now), target=self.snapshot(new_entry, now))


def _stage_ref(stage: PipelineStage | None) -> dict | None:
    if stage is None:
        return None
    return {"id": stage.id, "name": stage.name, "order": stage.order}


def get_transition_manager() -> StageTransitionManager:
    """Manager configured from the current Flask app (one per app)."""
    app = current_app._get_current_object()
    manager = app.extensions.get("leadflow.transitions")
    if manager is None:
        manager = StageTransitionManager(
            lock_timeout=app.config.get("PIPELINE_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS),
            warning_window_days=app.config.get("SLA_WARNING_WINDOW_DAYS", sla_clock.DEFAULT_WARNING_WINDOW_DAYS),
        )
        app.extensions["leadflow.transitions"] = manager
    return manager
