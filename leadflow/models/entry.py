"""
Lead Pipeline Tracker
Enrollment domain models.

Models:
    - PipelineEntry: one enrollment of a lead in a pipeline.
    - CriterionState: per (lead, criterion) checklist / approval flags.

Status lifecycle (see ENTRY_TRANSITIONS):
    active -> archived | completed      (both terminal; transfer creates a new entry)
"""

from datetime import UTC, datetime

from leadflow.models import db

ENTRY_STATUS_ACTIVE = "active"
ENTRY_STATUS_ARCHIVED = "archived"
ENTRY_STATUS_COMPLETED = "completed"

ENTRY_STATUSES = (ENTRY_STATUS_ACTIVE, ENTRY_STATUS_ARCHIVED, ENTRY_STATUS_COMPLETED)

ENTRY_TRANSITIONS = {
    ENTRY_STATUS_ACTIVE: [ENTRY_STATUS_ARCHIVED, ENTRY_STATUS_COMPLETED],
    ENTRY_STATUS_ARCHIVED: [],
    ENTRY_STATUS_COMPLETED: [],
}


def validate_entry_transition(old_status, new_status):
    """Check if a pipeline-entry status transition is allowed."""
    return new_status in ENTRY_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PipelineEntry(db.Model):
    """
    Enrollment of one lead in one pipeline.

    Never deleted: archived and completed entries stay for history.  At most
    one *active* entry may exist per (lead, pipeline); the partial unique
    index backs up the in-process lock held by the transition manager.
    ``health_cache`` is a query convenience only and is recomputed on read.
    """

    __tablename__ = "pipeline_entries"
    __table_args__ = (
        db.Index("idx_entry_lead_pipeline", "lead_id", "pipeline_id"),
        db.Index("idx_entry_stage_status", "stage_id", "status"),
        db.Index(
            "uq_entry_one_active",
            "lead_id",
            "pipeline_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    pipeline_id = db.Column(db.Integer, db.ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False)
    stage_id = db.Column(db.Integer, db.ForeignKey("pipeline_stages.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ENTRY_STATUS_ACTIVE)

    enrolled_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    entered_stage_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    archive_reason = db.Column(db.String(500), nullable=True)
    stage_note = db.Column(db.Text, nullable=True)
    health_cache = db.Column(db.String(10), nullable=True, comment="green | yellow | red (cache, not authoritative)")
    transferred_from_id = db.Column(
        db.Integer, db.ForeignKey("pipeline_entries.id", ondelete="SET NULL"), nullable=True,
    )

    pipeline = db.relationship("Pipeline")
    stage = db.relationship("PipelineStage")

    @property
    def is_active(self) -> bool:
        return self.status == ENTRY_STATUS_ACTIVE

    def to_dict(self) -> dict:
        entered = as_utc(self.entered_stage_at)
        enrolled = as_utc(self.enrolled_at)
        closed = as_utc(self.closed_at)
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "pipeline_id": self.pipeline_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage.name if self.stage else None,
            "status": self.status,
            "enrolled_at": enrolled.isoformat() if enrolled else None,
            "entered_stage_at": entered.isoformat() if entered else None,
            "closed_at": closed.isoformat() if closed else None,
            "archive_reason": self.archive_reason,
            "stage_note": self.stage_note,
            "transferred_from_id": self.transferred_from_id,
        }

    def __repr__(self):
        return f"<PipelineEntry {self.id}: lead={self.lead_id} pipeline={self.pipeline_id} {self.status}>"


class CriterionState(db.Model):
    """Checklist ``done`` / manual ``approved`` flag for one lead and one criterion."""

    __tablename__ = "criterion_states"
    __table_args__ = (
        db.UniqueConstraint("lead_id", "criterion_id", name="uq_criterion_state_lead"),
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    criterion_id = db.Column(
        db.Integer, db.ForeignKey("stage_criteria.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    done = db.Column(db.Boolean, nullable=False, default=False)
    approved = db.Column(db.Boolean, nullable=False, default=False)
    validated_by = db.Column(db.String(150), nullable=True)
    validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        validated = as_utc(self.validated_at)
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "criterion_id": self.criterion_id,
            "done": self.done,
            "approved": self.approved,
            "validated_by": self.validated_by,
            "validated_at": validated.isoformat() if validated else None,
            "notes": self.notes,
        }
