"""Pipeline configuration models.

Pipelines own an ordered list of stages; each stage owns the criteria that
gate advancement out of it.  These rows are configuration: the transition
engine reads them but never mutates them.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from leadflow.models import db


CRITERION_KINDS = ("checklist", "automatic", "manual", "conditional")
RULE_BACKED_KINDS = frozenset({"automatic", "conditional"})


def _utcnow():
    return datetime.now(timezone.utc)


class Pipeline(db.Model):
    """Named container of ordered stages."""

    __tablename__ = "pipelines"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    allow_stage_jumps = Column(Boolean, nullable=False, default=False)  # forward moves past order+1
    allow_regression = Column(Boolean, nullable=False, default=False)   # moves to an earlier stage
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    stages = db.relationship(
        "PipelineStage",
        backref="pipeline",
        order_by="PipelineStage.order",
        cascade="all, delete-orphan",
    )

    @property
    def first_stage(self):
        return self.stages[0] if self.stages else None

    def to_dict(self, include_stages=False):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "is_primary": self.is_primary,
            "allow_stage_jumps": self.allow_stage_jumps,
            "allow_regression": self.allow_regression,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_stages:
            data["stages"] = [s.to_dict(include_criteria=True) for s in self.stages]
        return data


class PipelineStage(db.Model):
    """One ordered step of a pipeline with its SLA deadline."""

    __tablename__ = "pipeline_stages"
    __table_args__ = (
        db.UniqueConstraint("pipeline_id", "order", name="uq_stage_pipeline_order"),
    )

    id = Column(Integer, primary_key=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    order = Column(Integer, nullable=False)
    sla_deadline_days = Column(Integer, nullable=False, default=0)
    entry_criteria = Column(Text, nullable=True)  # informational only
    exit_criteria = Column(Text, nullable=True)   # informational only
    is_terminal = Column(Boolean, nullable=False, default=False)
    wip_limit = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    criteria = db.relationship(
        "StageCriterion",
        backref="stage",
        order_by="[StageCriterion.sort_order, StageCriterion.id]",
        cascade="all, delete-orphan",
    )

    @property
    def terminal(self) -> bool:
        """Flagged terminal, or the last stage of its pipeline."""
        if self.is_terminal:
            return True
        stages = self.pipeline.stages if self.pipeline else []
        return bool(stages) and stages[-1].id == self.id

    def to_dict(self, include_criteria=False):
        data = {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "order": self.order,
            "sla_deadline_days": self.sla_deadline_days,
            "entry_criteria": self.entry_criteria,
            "exit_criteria": self.exit_criteria,
            "is_terminal": self.terminal,
            "wip_limit": self.wip_limit,
        }
        if include_criteria:
            data["criteria"] = [c.to_dict() for c in self.criteria]
        return data


class StageCriterion(db.Model):
    """A named condition gating advancement out of a stage."""

    __tablename__ = "stage_criteria"

    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey("pipeline_stages.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True, default="")
    kind = Column(String(20), nullable=False)  # checklist | automatic | manual | conditional
    mandatory = Column(Boolean, nullable=False, default=True)
    rule = Column(JSON, nullable=True)  # automatic / conditional only
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "mandatory": self.mandatory,
            "rule": self.rule,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
