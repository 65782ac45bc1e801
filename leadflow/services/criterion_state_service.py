"""
Criterion State Service: checklist and manual-approval flags.

These are the collaborators that own ``CriterionState``: the checklist
subsystem flips ``done`` and a human approver flips ``approved``.  The
transition engine only reads them.

Usage:
    from leadflow.services.criterion_state_service import set_manual_approval

    set_manual_approval(lead_id=7, criterion_id=12, approved=True, actor="maria")
"""

from datetime import datetime, timezone

from leadflow.core.exceptions import NotFoundError, ValidationError
from leadflow.models import db
from leadflow.models.audit import write_audit
from leadflow.models.entry import CriterionState
from leadflow.models.lead import Lead
from leadflow.services.criteria_aggregator import CriterionStateView
from leadflow.services.pipeline_config import get_criterion


def _get_or_create_state(lead_id: int, criterion_id: int) -> CriterionState:
    state = CriterionState.query.filter_by(lead_id=lead_id, criterion_id=criterion_id).first()
    if state is None:
        state = CriterionState(lead_id=lead_id, criterion_id=criterion_id, done=False, approved=False)
        db.session.add(state)
    return state


def _set_flag(lead_id, criterion_id, *, kind, flag, value, actor, notes, action):
    if not db.session.get(Lead, lead_id):
        raise NotFoundError(resource="Lead", resource_id=lead_id)
    criterion = get_criterion(criterion_id)
    if criterion.kind != kind:
        raise ValidationError(
            f"Criterion {criterion_id} is a {criterion.kind} criterion, not {kind}",
            details={"kind": criterion.kind},
        )

    state = _get_or_create_state(lead_id, criterion_id)
    old = bool(getattr(state, flag))
    setattr(state, flag, bool(value))
    state.validated_by = actor
    state.validated_at = datetime.now(timezone.utc)
    if notes is not None:
        state.notes = notes
    db.session.flush()

    write_audit(
        entity_type="criterion_state",
        entity_id=state.id,
        action=action,
        actor=actor,
        lead_id=lead_id,
        pipeline_id=criterion.stage.pipeline_id,
        diff={flag: {"old": old, "new": bool(value)}, "criterion_id": criterion_id},
    )
    db.session.commit()
    return state


def set_checklist_done(lead_id: int, criterion_id: int, done: bool, actor: str = "system",
                       notes: str | None = None) -> CriterionState:
    """Mark a checklist criterion done / not done for a lead."""
    return _set_flag(
        lead_id, criterion_id,
        kind="checklist", flag="done", value=done,
        actor=actor, notes=notes, action="criterion_state.checklist",
    )


def set_manual_approval(lead_id: int, criterion_id: int, approved: bool, actor: str = "system",
                        notes: str | None = None) -> CriterionState:
    """Record a human approval (or its withdrawal) for a manual criterion."""
    return _set_flag(
        lead_id, criterion_id,
        kind="manual", flag="approved", value=approved,
        actor=actor, notes=notes, action="criterion_state.approval",
    )


def states_for(lead_id: int, criterion_ids) -> dict[int, CriterionStateView]:
    """Read snapshot of the flags for ``criterion_ids`` keyed by criterion id."""
    ids = list(criterion_ids)
    if not ids:
        return {}
    rows = (
        CriterionState.query
        .filter(CriterionState.lead_id == lead_id, CriterionState.criterion_id.in_(ids))
        .all()
    )
    return {
        row.criterion_id: CriterionStateView(done=bool(row.done), approved=bool(row.approved))
        for row in rows
    }
