"""
Criteria Aggregator: one pass/block/warn verdict for a stage's criteria.

Every criterion is first judged *met* or *not met* by the evaluator for
its kind:

    checklist    CriterionState.done
    manual       CriterionState.approved
    automatic    rule evaluated against snapshot + context
    conditional  same as automatic

and then classified the same way regardless of kind:

    met                       -> passed
    not met, mandatory        -> blocker
    not met, optional         -> warning

``can_advance`` is true iff there are no blockers.  Output lists keep the
configured display order.

Usage:
    from leadflow.services.criteria_aggregator import aggregate

    result = aggregate(criteria, snapshot, context, states)
    if not result.can_advance:
        ...  # result.blockers
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from leadflow.core.exceptions import ConfigurationError
from leadflow.services.rule_evaluator import Rule, evaluate

logger = logging.getLogger(__name__)


class CriterionKind(str, Enum):
    CHECKLIST = "checklist"
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    CONDITIONAL = "conditional"


class Classification(str, Enum):
    PASSED = "passed"
    BLOCKER = "blocker"
    WARNING = "warning"


@dataclass(frozen=True)
class CriterionSpec:
    """Compiled, immutable view of one configured criterion."""
    id: int
    name: str
    kind: CriterionKind
    mandatory: bool
    rule: Rule | None = None

    def __post_init__(self):
        if self.kind in (CriterionKind.AUTOMATIC, CriterionKind.CONDITIONAL) and self.rule is None:
            raise ConfigurationError(f"{self.kind.value} criterion '{self.name}' has no rule")


@dataclass(frozen=True)
class CriterionStateView:
    """Externally owned checklist / approval flags for one criterion."""
    done: bool = False
    approved: bool = False


@dataclass
class CriterionOutcome:
    criterion_id: int
    name: str
    kind: CriterionKind
    mandatory: bool
    met: bool
    classification: Classification
    message: str

    def to_dict(self) -> dict:
        return {
            "criterion_id": self.criterion_id,
            "name": self.name,
            "kind": self.kind.value,
            "mandatory": self.mandatory,
            "met": self.met,
            "classification": self.classification.value,
            "message": self.message,
        }


@dataclass
class AggregateResult:
    """Aggregate verdict for one stage."""
    can_advance: bool
    blockers: list[CriterionOutcome] = field(default_factory=list)
    warnings: list[CriterionOutcome] = field(default_factory=list)
    passed: list[CriterionOutcome] = field(default_factory=list)

    @property
    def summary(self) -> str:
        total = len(self.blockers) + len(self.warnings) + len(self.passed)
        if self.blockers:
            return f"BLOCKED - {len(self.blockers)} mandatory criteria not met"
        if self.warnings:
            return f"WARNINGS - {len(self.passed)}/{total} met, optional criteria pending"
        return f"ALL PASSED - {total}/{total} criteria met"

    def to_dict(self) -> dict:
        return {
            "can_advance": self.can_advance,
            "blockers": [o.to_dict() for o in self.blockers],
            "warnings": [o.to_dict() for o in self.warnings],
            "passed": [o.to_dict() for o in self.passed],
            "summary": self.summary,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Per-kind evaluators
# ═════════════════════════════════════════════════════════════════════════════


def _flag(state: Any, name: str) -> bool:
    if state is None:
        return False
    if isinstance(state, Mapping):
        return bool(state.get(name, False))
    return bool(getattr(state, name, False))


def _checklist_met(criterion: CriterionSpec, snapshot, context, state) -> tuple[bool, str]:
    done = _flag(state, "done")
    return done, "Checklist complete" if done else f"Checklist pending: {criterion.name}"


def _manual_met(criterion: CriterionSpec, snapshot, context, state) -> tuple[bool, str]:
    approved = _flag(state, "approved")
    if approved:
        return True, f"{criterion.name}: approved"
    return False, f"{criterion.name}: awaiting manual approval"


def _rule_met(criterion: CriterionSpec, snapshot, context, state) -> tuple[bool, str]:
    met = evaluate(criterion.rule, snapshot, context)
    return met, f"{criterion.name}: {'met' if met else 'not met'}"


_EVALUATORS: dict[CriterionKind, Callable[..., tuple[bool, str]]] = {
    CriterionKind.CHECKLIST: _checklist_met,
    CriterionKind.MANUAL: _manual_met,
    CriterionKind.AUTOMATIC: _rule_met,
    CriterionKind.CONDITIONAL: _rule_met,
}


def evaluate_criterion(
    criterion: CriterionSpec,
    snapshot: dict | None,
    context: dict | None,
    state: Any = None,
) -> CriterionOutcome:
    """Judge and classify a single criterion."""
    met, message = _EVALUATORS[criterion.kind](criterion, snapshot or {}, context or {}, state)
    if met:
        classification = Classification.PASSED
    elif criterion.mandatory:
        classification = Classification.BLOCKER
    else:
        classification = Classification.WARNING
    return CriterionOutcome(
        criterion_id=criterion.id,
        name=criterion.name,
        kind=criterion.kind,
        mandatory=criterion.mandatory,
        met=met,
        classification=classification,
        message=message,
    )


def aggregate(
    criteria: Iterable[CriterionSpec],
    snapshot: dict | None,
    context: dict | None = None,
    states: Mapping[int, Any] | None = None,
) -> AggregateResult:
    """Evaluate every criterion of a stage and build the aggregate verdict.

    Args:
        criteria: Compiled criteria in display order.
        snapshot: Lead snapshot for ``entity-field`` leaves.
        context: Precomputed metrics for activity / time / relationship leaves.
        states: ``{criterion_id: state}`` where a state exposes ``done`` and
            ``approved`` (attribute or mapping).  Missing states count as
            not done / not approved.
    """
    states = states or {}
    result = AggregateResult(can_advance=True)
    buckets = {
        Classification.PASSED: result.passed,
        Classification.BLOCKER: result.blockers,
        Classification.WARNING: result.warnings,
    }
    for criterion in criteria:
        outcome = evaluate_criterion(criterion, snapshot, context, states.get(criterion.id))
        buckets[outcome.classification].append(outcome)

    result.can_advance = not result.blockers
    logger.debug(
        "Aggregated criteria: passed=%d warnings=%d blockers=%d",
        len(result.passed), len(result.warnings), len(result.blockers),
    )
    return result
