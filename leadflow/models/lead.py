"""
Lead Pipeline Tracker
Lead domain model.

Models:
    - Lead: the tracked entity that moves through pipelines.
"""

from datetime import UTC, datetime

from leadflow.models import db

# Columns exposed to ``entity-field`` rule leaves.
SNAPSHOT_FIELDS = (
    "id", "name", "email", "phone", "company", "source", "lead_score",
)


class Lead(db.Model):
    """A sales lead.  Custom attributes live in ``custom_fields`` (JSON)."""

    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    company = db.Column(db.String(200), nullable=True)
    source = db.Column(db.String(50), nullable=True)
    lead_score = db.Column(db.Integer, nullable=True)
    custom_fields = db.Column(db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    entries = db.relationship("PipelineEntry", backref="lead", lazy="dynamic")

    def to_snapshot(self) -> dict:
        """Flat read snapshot for rule evaluation.

        Custom fields are merged at the top level but never shadow a core column.
        """
        snapshot = dict(self.custom_fields or {})
        for name in SNAPSHOT_FIELDS:
            snapshot[name] = getattr(self, name)
        return snapshot

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "source": self.source,
            "lead_score": self.lead_score,
            "custom_fields": self.custom_fields or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Lead {self.id}: {self.name}>"
