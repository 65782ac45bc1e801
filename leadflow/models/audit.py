"""
Lead Pipeline Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for pipeline events.
"""

import json
from datetime import UTC, datetime

from leadflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "pipeline_entry", "criterion_state", "pipeline", "stage", "criterion",
}

AUDIT_ACTIONS = {
    # Entry lifecycle
    "pipeline_entry.enroll",
    "pipeline_entry.advance",
    "pipeline_entry.regress",
    "pipeline_entry.complete",
    "pipeline_entry.archive",
    "pipeline_entry.transfer",
    # Criterion state collaborators
    "criterion_state.checklist",
    "criterion_state.approval",
    # Configuration
    "create",
    "update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every committed pipeline event.

    One row per action.  ``diff_json`` carries the before/after snapshot
    (stage, status, pipeline) of the transition.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_lead", "lead_id"),
        db.Index("idx_audit_pipeline", "pipeline_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="pipeline_entry | criterion_state | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    lead_id = db.Column(db.Integer, nullable=True)
    pipeline_id = db.Column(db.Integer, nullable=True)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="pipeline_entry.advance | pipeline_entry.transfer | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "lead_id": self.lead_id,
            "pipeline_id": self.pipeline_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    lead_id: int | None = None,
    pipeline_id: int | None = None,
    diff: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: the row commits together with the mutation
    it describes, or not at all.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        lead_id=lead_id,
        pipeline_id=pipeline_id,
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
        timestamp=timestamp or datetime.now(UTC),
    )
    db.session.add(log)
    db.session.flush()
    return log
