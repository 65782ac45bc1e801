"""
Pipeline Configuration Service

Loads and validates pipeline / stage / criterion configuration.  All
structural problems surface here as ``ConfigurationError`` so the
evaluation path never sees a malformed rule:

  - stage orders unique and contiguous, at least one stage
  - SLA deadlines >= 0, WIP limits >= 1 when set
  - criterion kind is one of checklist | automatic | manual | conditional
  - automatic / conditional criteria carry a well-formed rule tree

Compiled stage criteria are cached per stage and invalidated whenever a
criterion row changes.

Usage:
    from leadflow.services.pipeline_config import load_stage_criteria

    specs = load_stage_criteria(stage)   # tuple[CriterionSpec, ...]
"""

import json
import logging
import threading

from leadflow.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from leadflow.models import db
from leadflow.models.audit import write_audit
from leadflow.models.pipeline import (
    CRITERION_KINDS,
    RULE_BACKED_KINDS,
    Pipeline,
    PipelineStage,
    StageCriterion,
)
from leadflow.services.criteria_aggregator import CriterionKind, CriterionSpec
from leadflow.services.rule_evaluator import parse_rule, rule_to_dict

logger = logging.getLogger(__name__)

# stage_id -> (fingerprint, compiled specs)
_criteria_cache: dict[int, tuple[tuple, tuple[CriterionSpec, ...]]] = {}
_cache_lock = threading.Lock()


def invalidate_criteria_cache(stage_id: int | None = None) -> None:
    with _cache_lock:
        if stage_id is None:
            _criteria_cache.clear()
        else:
            _criteria_cache.pop(stage_id, None)


# ═════════════════════════════════════════════════════════════════════════════
# Compilation
# ═════════════════════════════════════════════════════════════════════════════


def compile_criterion(criterion: StageCriterion) -> CriterionSpec:
    """Turn a criterion row into an immutable ``CriterionSpec``."""
    path = f"criterion[{criterion.id}]"
    if criterion.kind not in CRITERION_KINDS:
        raise ConfigurationError(f"unknown criterion kind {criterion.kind!r}", path=f"{path}.kind")

    rule = None
    if criterion.kind in RULE_BACKED_KINDS:
        if criterion.rule is None:
            raise ConfigurationError(f"{criterion.kind} criterion requires a rule", path=f"{path}.rule")
        rule = parse_rule(criterion.rule, path=f"{path}.rule")
    elif criterion.rule:
        logger.warning("Ignoring rule on %s criterion id=%s", criterion.kind, criterion.id)

    return CriterionSpec(
        id=criterion.id,
        name=criterion.name,
        kind=CriterionKind(criterion.kind),
        mandatory=bool(criterion.mandatory),
        rule=rule,
    )


def _fingerprint(rows) -> tuple:
    return tuple(
        (c.id, c.kind, bool(c.mandatory), c.name, json.dumps(c.rule, sort_keys=True, default=str))
        for c in rows
    )


def load_stage_criteria(stage: PipelineStage) -> tuple[CriterionSpec, ...]:
    """Compiled active criteria of ``stage`` in display order.

    Raises:
        ConfigurationError: any active criterion is malformed.  The whole
            stage is refused rather than evaluated with a criterion missing.
    """
    rows = [c for c in stage.criteria if c.is_active]
    fingerprint = _fingerprint(rows)
    with _cache_lock:
        cached = _criteria_cache.get(stage.id)
    if cached and cached[0] == fingerprint:
        return cached[1]

    try:
        specs = tuple(compile_criterion(c) for c in rows)
    except ConfigurationError as exc:
        logger.warning("Stage %s has invalid criteria configuration: %s", stage.id, exc)
        raise

    with _cache_lock:
        _criteria_cache[stage.id] = (fingerprint, specs)
    return specs


def validate_pipeline(pipeline: Pipeline) -> None:
    """Structural checks over a pipeline and its stages."""
    stages = list(pipeline.stages)
    if not stages:
        raise ConfigurationError(f"pipeline {pipeline.id} has no stages")

    orders = sorted(s.order for s in stages)
    if len(set(orders)) != len(orders):
        raise ConfigurationError(f"pipeline {pipeline.id} has duplicate stage orders: {orders}")
    if orders != list(range(orders[0], orders[0] + len(orders))):
        raise ConfigurationError(f"pipeline {pipeline.id} stage orders are not contiguous: {orders}")

    for stage in stages:
        _validate_stage_values(stage.sla_deadline_days, stage.wip_limit, path=f"stage[{stage.id}]")


def _validate_stage_values(deadline, wip_limit, path="stage"):
    if not isinstance(deadline, int) or isinstance(deadline, bool) or deadline < 0:
        raise ConfigurationError("sla_deadline_days must be an integer >= 0", path=f"{path}.sla_deadline_days")
    if wip_limit is not None and (not isinstance(wip_limit, int) or isinstance(wip_limit, bool) or wip_limit < 1):
        raise ConfigurationError("wip_limit must be an integer >= 1", path=f"{path}.wip_limit")


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def get_pipeline(pipeline_id: int) -> Pipeline:
    pipeline = db.session.get(Pipeline, pipeline_id)
    if not pipeline:
        raise NotFoundError(resource="Pipeline", resource_id=pipeline_id)
    return pipeline


def get_stage(stage_id: int) -> PipelineStage:
    stage = db.session.get(PipelineStage, stage_id)
    if not stage:
        raise NotFoundError(resource="PipelineStage", resource_id=stage_id)
    return stage


def get_criterion(criterion_id: int) -> StageCriterion:
    criterion = db.session.get(StageCriterion, criterion_id)
    if not criterion:
        raise NotFoundError(resource="StageCriterion", resource_id=criterion_id)
    return criterion


# ═════════════════════════════════════════════════════════════════════════════
# Configuration writes
# ═════════════════════════════════════════════════════════════════════════════


def _require_name(data: dict, limit: int = 100) -> str:
    name = str(data.get("name") or "").strip()
    if not name or len(name) > limit:
        raise ValidationError(f"name is required and must be <= {limit} chars", details={"name": "invalid"})
    return name


def create_pipeline(data: dict, actor: str = "system") -> Pipeline:
    """Create a pipeline, optionally with its stages in one call."""
    pipeline = Pipeline(
        name=_require_name(data),
        description=str(data.get("description") or "")[:2000],
        is_active=bool(data.get("is_active", True)),
        is_primary=bool(data.get("is_primary", False)),
        allow_stage_jumps=bool(data.get("allow_stage_jumps", False)),
        allow_regression=bool(data.get("allow_regression", False)),
    )
    db.session.add(pipeline)
    db.session.flush()

    for stage_data in data.get("stages") or []:
        add_stage(pipeline, stage_data, commit=False, actor=actor)

    if pipeline.stages:
        validate_pipeline(pipeline)
    write_audit(
        entity_type="pipeline", entity_id=pipeline.id, action="create", actor=actor,
        pipeline_id=pipeline.id, diff={"name": pipeline.name, "stages": len(pipeline.stages)},
    )
    db.session.commit()
    logger.info("Pipeline created: id=%s name=%s stages=%d", pipeline.id, pipeline.name[:200], len(pipeline.stages))
    return pipeline


def add_stage(pipeline: Pipeline, data: dict, *, commit: bool = True, actor: str = "system") -> PipelineStage:
    """Append a stage.  ``order`` defaults to the next free position."""
    next_order = (max(s.order for s in pipeline.stages) + 1) if pipeline.stages else 1
    order = data.get("order", next_order)
    if order != next_order:
        raise ConfigurationError(f"stage order must be {next_order} to keep orders contiguous", path="stage.order")

    deadline = data.get("sla_deadline_days", 0)
    wip_limit = data.get("wip_limit")
    _validate_stage_values(deadline, wip_limit)

    stage = PipelineStage(
        name=_require_name(data),
        order=order,
        sla_deadline_days=deadline,
        entry_criteria=data.get("entry_criteria"),
        exit_criteria=data.get("exit_criteria"),
        is_terminal=bool(data.get("is_terminal", False)),
        wip_limit=wip_limit,
    )
    pipeline.stages.append(stage)
    db.session.flush()
    write_audit(
        entity_type="stage", entity_id=stage.id, action="create", actor=actor,
        pipeline_id=pipeline.id, diff={"name": stage.name, "order": order, "sla_deadline_days": deadline},
    )

    for criterion_data in data.get("criteria") or []:
        add_criterion(stage, criterion_data, commit=False, actor=actor)

    if commit:
        db.session.commit()
    return stage


def _normalise_rule(kind: str, rule):
    if kind in RULE_BACKED_KINDS:
        if rule is None:
            raise ConfigurationError(f"{kind} criterion requires a rule", path="criterion.rule")
        return rule_to_dict(parse_rule(rule, path="criterion.rule"))
    return None


def add_criterion(stage: PipelineStage, data: dict, *, commit: bool = True, actor: str = "system") -> StageCriterion:
    """Attach a criterion to a stage after validating its kind and rule."""
    kind = data.get("kind")
    if kind not in CRITERION_KINDS:
        raise ConfigurationError(f"kind must be one of {list(CRITERION_KINDS)}", path="criterion.kind")

    criterion = StageCriterion(
        name=_require_name(data),
        description=str(data.get("description") or "")[:2000],
        kind=kind,
        mandatory=bool(data.get("mandatory", True)),
        rule=_normalise_rule(kind, data.get("rule")),
        sort_order=int(data.get("sort_order", len(stage.criteria))),
        is_active=bool(data.get("is_active", True)),
    )
    stage.criteria.append(criterion)
    db.session.flush()
    write_audit(
        entity_type="criterion", entity_id=criterion.id, action="create", actor=actor,
        pipeline_id=stage.pipeline_id, diff={"name": criterion.name, "kind": kind, "stage_id": stage.id},
    )
    invalidate_criteria_cache(stage.id)

    if commit:
        db.session.commit()
    logger.info("Criterion added: id=%s stage=%s kind=%s", criterion.id, stage.id, kind)
    return criterion


def update_criterion(criterion: StageCriterion, data: dict, actor: str = "system") -> StageCriterion:
    """Partial update; the resulting kind/rule pair is re-validated before commit."""
    kind = data.get("kind", criterion.kind)
    if kind not in CRITERION_KINDS:
        raise ConfigurationError(f"kind must be one of {list(CRITERION_KINDS)}", path="criterion.kind")

    rule = data["rule"] if "rule" in data else criterion.rule
    normalised = _normalise_rule(kind, rule)
    before = criterion.to_dict()

    if "name" in data:
        criterion.name = _require_name(data)
    if "description" in data:
        criterion.description = str(data["description"] or "")[:2000]
    if "mandatory" in data:
        criterion.mandatory = bool(data["mandatory"])
    if "sort_order" in data:
        criterion.sort_order = int(data["sort_order"])
    if "is_active" in data:
        criterion.is_active = bool(data["is_active"])
    criterion.kind = kind
    criterion.rule = normalised

    after = criterion.to_dict()
    changes = {
        k: {"old": before[k], "new": after[k]}
        for k in ("name", "description", "kind", "mandatory", "rule", "sort_order", "is_active")
        if before.get(k) != after.get(k)
    }
    write_audit(
        entity_type="criterion", entity_id=criterion.id, action="update", actor=actor,
        pipeline_id=criterion.stage.pipeline_id, diff=changes,
    )
    db.session.commit()
    invalidate_criteria_cache(criterion.stage_id)
    return criterion
