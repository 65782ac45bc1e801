"""
Tests for the stage transition manager.

Covers:
    - Enrollment (first stage, duplicate active entry, inactive/empty pipeline)
    - Advancement gated by criteria (blocked, warning-only, all passed)
    - Target validation (next stage only, jumps, regression, WIP limit)
    - Terminal stage completes the entry
    - Archive and transfer, including transfer atomicity
    - Audit rows and entry history
    - Lock timeout surfaces as ConcurrencyTimeout

Every test runs against a manager whose clock is pinned to ``T0``.
"""

import collections
import random
import threading
import time
from contextlib import contextmanager
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from leadflow.core.exceptions import (
    AlreadyEnrolled,
    ConcurrencyTimeout,
    ConfigurationError,
    InvalidTarget,
    NotActive,
    NotFoundError,
    StageCapacityReached,
    StateConflict,
    ValidationError,
)
from leadflow.models import db
from leadflow.models.audit import AuditLog
from leadflow.models.entry import PipelineEntry
from leadflow.models.pipeline import StageCriterion
from leadflow.services.criterion_state_service import set_checklist_done, set_manual_approval
from leadflow.services.entry_locks import EntryLockRegistry
from leadflow.services.pipeline_config import add_criterion
from leadflow.services.stage_transition import (
    OUTCOME_ADVANCED,
    OUTCOME_COMPLETED,
    OUTCOME_CRITERIA_NOT_MET,
    OUTCOME_REGRESSED,
    EntrySnapshot,
    StageTransitionManager,
    TransitionResult,
)

SCORE_RULE = {"domain": "entity-field", "field": "lead_score", "operator": ">", "value": 50}


def _stages(pipeline):
    return {s.name: s for s in pipeline.stages}


def _active_count(lead_id, pipeline_id):
    return PipelineEntry.query.filter_by(lead_id=lead_id, pipeline_id=pipeline_id, status="active").count()


def _run_concurrently(app, *calls):
    """Start ``calls`` together, each in its own thread and app context.

    Returns each call's result or raised exception, in call order. Contexts
    stay open until every call is done; closing one rolls back the shared
    in-memory connection.
    """
    start = threading.Barrier(len(calls))
    finished = threading.Event()
    done = [threading.Event() for _ in calls]
    results = [None] * len(calls)

    def _worker(i, call):
        with app.app_context():
            start.wait(5)
            try:
                results[i] = call()
            except Exception as exc:  # noqa: BLE001
                results[i] = exc
            done[i].set()
            finished.wait(10)

    threads = [threading.Thread(target=_worker, args=(i, c), daemon=True) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    try:
        for event in done:
            assert event.wait(10)
    finally:
        finished.set()
        for t in threads:
            t.join(5)
    return results


@contextmanager
def _held_elsewhere(acquire):
    """Hold the lock returned by ``acquire()`` from a background thread."""
    held, release = threading.Event(), threading.Event()

    def _holder():
        with acquire():
            held.set()
            release.wait(10)

    t = threading.Thread(target=_holder, daemon=True)
    t.start()
    assert held.wait(2)
    try:
        yield
    finally:
        release.set()
        t.join(2)


# ═════════════════════════════════════════════════════════════════════════════
# 1. ENROLL
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_enroll_places_lead_at_first_stage(manager, lead, pipeline, t0):
    entry = manager.enroll(lead.id, pipeline.id, actor="maria", note="from webinar")

    assert entry.status == "active"
    assert entry.stage_name == "Qualify"
    assert entry.enrolled_at == t0
    assert entry.entered_stage_at == t0
    assert entry.stage_note == "from webinar"
    assert entry.health.bucket.value == "green"

    audit = AuditLog.query.filter_by(action="pipeline_entry.enroll").one()
    assert audit.actor == "maria"
    assert audit.entity_id == str(entry.id)
    assert audit.diff["stage"]["new"]["name"] == "Qualify"


@pytest.mark.integration
def test_second_enroll_in_same_pipeline_is_already_enrolled(manager, lead, pipeline):
    first = manager.enroll(lead.id, pipeline.id)
    with pytest.raises(AlreadyEnrolled) as exc:
        manager.enroll(lead.id, pipeline.id)
    assert exc.value.entry_id == first.id
    assert _active_count(lead.id, pipeline.id) == 1


@pytest.mark.integration
def test_enroll_same_lead_in_two_pipelines(manager, lead, make_pipeline):
    a = make_pipeline(name="A")
    b = make_pipeline(name="B")
    manager.enroll(lead.id, a.id)
    manager.enroll(lead.id, b.id)
    assert _active_count(lead.id, a.id) == 1
    assert _active_count(lead.id, b.id) == 1


@pytest.mark.integration
def test_reenroll_after_archive_is_allowed(manager, lead, pipeline):
    first = manager.enroll(lead.id, pipeline.id)
    manager.archive(first.id, "lost")
    second = manager.enroll(lead.id, pipeline.id)
    assert second.id != first.id
    assert PipelineEntry.query.filter_by(lead_id=lead.id).count() == 2


@pytest.mark.integration
def test_enroll_errors(manager, lead, make_pipeline):
    with pytest.raises(NotFoundError):
        manager.enroll(999, make_pipeline().id)
    with pytest.raises(NotFoundError):
        manager.enroll(lead.id, 999)
    with pytest.raises(ConfigurationError):
        manager.enroll(lead.id, make_pipeline(stages=[], name="Empty").id)
    with pytest.raises(ValidationError):
        manager.enroll(lead.id, make_pipeline(name="Off", is_active=False).id)


@pytest.mark.integration
def test_database_index_backs_up_one_active_entry(lead, pipeline):
    stage = pipeline.first_stage
    db.session.add(PipelineEntry(lead_id=lead.id, pipeline_id=pipeline.id, stage_id=stage.id, status="active"))
    db.session.commit()
    db.session.add(PipelineEntry(lead_id=lead.id, pipeline_id=pipeline.id, stage_id=stage.id, status="active"))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


# ═════════════════════════════════════════════════════════════════════════════
# 2. ADVANCE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_advance_without_criteria_moves_to_next_stage(manager, lead, pipeline, t0):
    entry = manager.enroll(lead.id, pipeline.id)
    later = t0 + timedelta(days=2, hours=3)

    result = manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id, actor="maria", now=later)

    assert result.ok
    assert result.outcome == OUTCOME_ADVANCED
    assert result.entry.stage_name == "Demo"
    assert result.entry.entered_stage_at == later
    assert result.entry.enrolled_at == t0
    assert result.sla_before.elapsed_days == 2

    audit = AuditLog.query.filter_by(action="pipeline_entry.advance").one()
    assert audit.diff["stage"]["old"]["name"] == "Qualify"
    assert audit.diff["stage"]["new"]["name"] == "Demo"


@pytest.mark.integration
def test_mandatory_blocker_returns_criteria_not_met_and_changes_nothing(manager, lead, pipeline):
    qualify = _stages(pipeline)["Qualify"]
    add_criterion(qualify, {"name": "Discovery call", "kind": "checklist"})
    entry = manager.enroll(lead.id, pipeline.id)

    result = manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)

    assert not result.ok
    assert result.outcome == OUTCOME_CRITERIA_NOT_MET
    assert [b.name for b in result.evaluation.blockers] == ["Discovery call"]
    assert result.entry.stage_id == qualify.id

    db.session.expire_all()
    assert manager.get_entry(entry.id).stage_id == qualify.id
    assert AuditLog.query.filter(AuditLog.action.like("pipeline_entry.advance")).count() == 0


@pytest.mark.integration
def test_optional_unmet_criterion_only_warns(manager, lead, pipeline):
    qualify = _stages(pipeline)["Qualify"]
    add_criterion(qualify, {"name": "LinkedIn connected", "kind": "checklist", "mandatory": False})
    entry = manager.enroll(lead.id, pipeline.id)

    result = manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)

    assert result.ok
    assert [w.name for w in result.evaluation.warnings] == ["LinkedIn connected"]
    audit = AuditLog.query.filter_by(action="pipeline_entry.advance").one()
    assert audit.diff["warnings"] == ["LinkedIn connected"]


@pytest.mark.integration
def test_all_criterion_kinds_gate_advancement(manager, lead, pipeline):
    qualify = _stages(pipeline)["Qualify"]
    call = add_criterion(qualify, {"name": "Call", "kind": "checklist"})
    signoff = add_criterion(qualify, {"name": "Sign-off", "kind": "manual"})
    add_criterion(qualify, {"name": "Score", "kind": "automatic", "rule": SCORE_RULE})
    add_criterion(qualify, {"name": "Has email", "kind": "conditional",
                            "rule": {"domain": "entity-field", "field": "email", "operator": "exists"}})
    entry = manager.enroll(lead.id, pipeline.id)
    demo_id = _stages(pipeline)["Demo"].id

    blocked = manager.advance_stage(entry.id, demo_id)
    assert [b.name for b in blocked.evaluation.blockers] == ["Call", "Sign-off"]
    assert [p.name for p in blocked.evaluation.passed] == ["Score", "Has email"]

    set_checklist_done(lead.id, call.id, True, actor="rep")
    set_manual_approval(lead.id, signoff.id, True, actor="manager")

    result = manager.advance_stage(entry.id, demo_id)
    assert result.outcome == OUTCOME_ADVANCED
    assert result.evaluation.summary.startswith("ALL PASSED")


@pytest.mark.integration
def test_caller_snapshot_and_context_are_used(manager, lead, pipeline):
    qualify = _stages(pipeline)["Qualify"]
    add_criterion(qualify, {"name": "Score", "kind": "automatic", "rule": SCORE_RULE})
    add_criterion(qualify, {"name": "Two calls", "kind": "automatic",
                            "rule": {"domain": "activity-metric", "field": "calls", "operator": ">=", "value": 2}})
    entry = manager.enroll(lead.id, pipeline.id)
    demo_id = _stages(pipeline)["Demo"].id

    preview = manager.preview_advancement(entry.id, snapshot={"lead_score": 10}, context={"calls": 3})
    assert [b.name for b in preview.blockers] == ["Score"]

    result = manager.advance_stage(entry.id, demo_id, context={"calls": 2})
    assert result.ok


@pytest.mark.integration
def test_time_metrics_are_injected_and_caller_keys_win(manager, lead, pipeline, t0):
    qualify = _stages(pipeline)["Qualify"]
    add_criterion(qualify, {"name": "Cooled off", "kind": "automatic",
                            "rule": {"domain": "time-metric", "field": "days_in_stage", "operator": ">=", "value": 2}})
    entry = manager.enroll(lead.id, pipeline.id)

    assert not manager.preview_advancement(entry.id, now=t0 + timedelta(days=1)).can_advance
    assert manager.preview_advancement(entry.id, now=t0 + timedelta(days=2)).can_advance
    assert manager.preview_advancement(
        entry.id, now=t0 + timedelta(days=1), context={"days_in_stage": 9},
    ).can_advance


@pytest.mark.integration
def test_criteria_of_other_stages_are_ignored(manager, lead, pipeline):
    add_criterion(_stages(pipeline)["Demo"], {"name": "Demo done", "kind": "checklist"})
    entry = manager.enroll(lead.id, pipeline.id)
    assert manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id).ok


@pytest.mark.integration
def test_malformed_criteria_fail_closed(manager, lead, pipeline):
    qualify = _stages(pipeline)["Qualify"]
    entry = manager.enroll(lead.id, pipeline.id)
    db.session.add(StageCriterion(stage=qualify, name="Broken", kind="automatic", rule={"field": "x"}))
    db.session.commit()

    with pytest.raises(ConfigurationError):
        manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)
    assert manager.get_entry(entry.id).stage_id == qualify.id


# ═════════════════════════════════════════════════════════════════════════════
# 3. TARGET VALIDATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_skipping_a_stage_requires_allow_stage_jumps(manager, lead, make_pipeline, make_lead):
    strict = make_pipeline(name="Strict")
    entry = manager.enroll(lead.id, strict.id)
    with pytest.raises(InvalidTarget, match="jumps"):
        manager.advance_stage(entry.id, _stages(strict)["Won"].id)

    loose = make_pipeline(name="Loose", allow_stage_jumps=True)
    other = manager.enroll(make_lead("Grace").id, loose.id)
    assert manager.advance_stage(other.id, _stages(loose)["Won"].id).outcome == OUTCOME_COMPLETED


@pytest.mark.integration
def test_moving_back_requires_allow_regression(manager, lead, make_pipeline, make_lead):
    strict = make_pipeline(name="Strict")
    entry = manager.enroll(lead.id, strict.id)
    manager.advance_stage(entry.id, _stages(strict)["Demo"].id)
    with pytest.raises(InvalidTarget, match="back"):
        manager.advance_stage(entry.id, _stages(strict)["Qualify"].id)

    lenient = make_pipeline(name="Lenient", allow_regression=True)
    other = manager.enroll(make_lead("Grace").id, lenient.id)
    manager.advance_stage(other.id, _stages(lenient)["Demo"].id)
    result = manager.advance_stage(other.id, _stages(lenient)["Qualify"].id)
    assert result.outcome == OUTCOME_REGRESSED
    assert AuditLog.query.filter_by(action="pipeline_entry.regress").count() == 1


@pytest.mark.integration
def test_same_stage_and_foreign_stage_are_invalid(manager, lead, make_pipeline):
    mine = make_pipeline(name="Mine")
    theirs = make_pipeline(name="Theirs")
    entry = manager.enroll(lead.id, mine.id)
    with pytest.raises(InvalidTarget, match="already"):
        manager.advance_stage(entry.id, mine.first_stage.id)
    with pytest.raises(InvalidTarget, match="belong"):
        manager.advance_stage(entry.id, _stages(theirs)["Demo"].id)
    with pytest.raises(InvalidTarget):
        manager.advance_stage(entry.id, 999)


@pytest.mark.integration
def test_wip_limit_blocks_target_stage(manager, make_lead, make_pipeline):
    pipeline = make_pipeline(stages=[
        {"name": "Qualify", "sla_deadline_days": 3},
        {"name": "Demo", "sla_deadline_days": 5, "wip_limit": 1},
        {"name": "Won", "sla_deadline_days": 0},
    ])
    demo_id = _stages(pipeline)["Demo"].id
    first = manager.enroll(make_lead("One").id, pipeline.id)
    second = manager.enroll(make_lead("Two").id, pipeline.id)

    manager.advance_stage(first.id, demo_id)
    with pytest.raises(StageCapacityReached) as exc:
        manager.advance_stage(second.id, demo_id)
    assert exc.value.wip_limit == 1

    manager.advance_stage(first.id, _stages(pipeline)["Won"].id)
    assert manager.advance_stage(second.id, demo_id).ok


# ═════════════════════════════════════════════════════════════════════════════
# 4. TERMINAL / ARCHIVE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_reaching_terminal_stage_completes_entry(manager, lead, pipeline, t0):
    entry = manager.enroll(lead.id, pipeline.id)
    manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)
    done_at = t0 + timedelta(days=4)

    result = manager.advance_stage(entry.id, _stages(pipeline)["Won"].id, now=done_at)

    assert result.outcome == OUTCOME_COMPLETED
    assert result.entry.status == "completed"
    assert result.entry.closed_at == done_at
    assert result.entry.health is None
    with pytest.raises(NotActive):
        manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)
    with pytest.raises(NotActive):
        manager.archive(entry.id, "too late")


@pytest.mark.integration
def test_archive_requires_no_criteria_and_is_final(manager, lead, pipeline, t0):
    add_criterion(pipeline.first_stage, {"name": "Call", "kind": "checklist"})
    entry = manager.enroll(lead.id, pipeline.id)

    archived = manager.archive(entry.id, "budget cut", actor="maria")

    assert archived.status == "archived"
    assert archived.archive_reason == "budget cut"
    assert archived.closed_at == t0
    with pytest.raises(NotActive):
        manager.archive(entry.id, "again")
    with pytest.raises(NotActive):
        manager.advance_stage(entry.id, _stages(pipeline)["Demo"].id)
    with pytest.raises(NotActive):
        manager.preview_advancement(entry.id)


@pytest.mark.integration
def test_unknown_entry_is_not_found(manager):
    with pytest.raises(NotFoundError):
        manager.advance_stage(999, 1)
    with pytest.raises(NotFoundError):
        manager.archive(999)
    with pytest.raises(NotFoundError):
        manager.get_entry(999)


# ═════════════════════════════════════════════════════════════════════════════
# 5. TRANSFER
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_transfer_archives_source_and_enrolls_target(manager, lead, make_pipeline, t0):
    sales = make_pipeline(name="Sales")
    nurture = make_pipeline(name="Nurture")
    source = manager.enroll(lead.id, sales.id)
    manager.advance_stage(source.id, _stages(sales)["Demo"].id)

    result = manager.transfer(source.id, nurture.id, reason="not ready", actor="maria")

    assert result.source.status == "archived"
    assert result.source.archive_reason == "transferred: not ready"
    assert result.target.status == "active"
    assert result.target.pipeline_id == nurture.id
    assert result.target.stage_id == nurture.first_stage.id
    assert result.target.transferred_from_id == source.id
    assert result.target.enrolled_at == t0

    audits = AuditLog.query.filter_by(action="pipeline_entry.transfer").all()
    assert len(audits) == 1
    assert audits[0].diff["destination"]["entry_id"] == result.target.id
    assert AuditLog.query.filter_by(action="pipeline_entry.archive").count() == 0


@pytest.mark.integration
def test_transfer_into_pipeline_with_active_entry_leaves_source_untouched(manager, lead, make_pipeline):
    sales = make_pipeline(name="Sales")
    nurture = make_pipeline(name="Nurture")
    source = manager.enroll(lead.id, sales.id)
    existing = manager.enroll(lead.id, nurture.id)

    with pytest.raises(AlreadyEnrolled) as exc:
        manager.transfer(source.id, nurture.id)
    assert exc.value.entry_id == existing.id

    db.session.expire_all()
    assert manager.get_entry(source.id).status == "active"
    assert _active_count(lead.id, sales.id) == 1
    assert _active_count(lead.id, nurture.id) == 1
    assert AuditLog.query.filter_by(action="pipeline_entry.transfer").count() == 0


@pytest.mark.integration
def test_transfer_to_same_pipeline_is_already_enrolled(manager, lead, pipeline):
    entry = manager.enroll(lead.id, pipeline.id)
    with pytest.raises(AlreadyEnrolled):
        manager.transfer(entry.id, pipeline.id)
    assert manager.get_entry(entry.id).status == "active"


@pytest.mark.integration
def test_transfer_of_inactive_entry_or_into_broken_pipeline(manager, lead, make_pipeline):
    sales = make_pipeline(name="Sales")
    empty = make_pipeline(name="Empty", stages=[])
    nurture = make_pipeline(name="Nurture")
    entry = manager.enroll(lead.id, sales.id)

    with pytest.raises(ConfigurationError):
        manager.transfer(entry.id, empty.id)
    assert manager.get_entry(entry.id).status == "active"

    manager.archive(entry.id)
    with pytest.raises(NotActive):
        manager.transfer(entry.id, nurture.id)


# ═════════════════════════════════════════════════════════════════════════════
# 6. HISTORY / READS / CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_entry_history_includes_the_transfer_that_created_it(manager, lead, make_pipeline, t0):
    sales = make_pipeline(name="Sales")
    nurture = make_pipeline(name="Nurture")
    source = manager.enroll(lead.id, sales.id, now=t0)
    moved = manager.transfer(source.id, nurture.id, now=t0 + timedelta(hours=1)).target
    manager.advance_stage(moved.id, _stages(nurture)["Demo"].id, now=t0 + timedelta(hours=2))

    assert [r.action for r in manager.entry_history(source.id)] == [
        "pipeline_entry.enroll", "pipeline_entry.transfer",
    ]
    # a transfer-created entry has no enroll row of its own
    assert [r.action for r in manager.entry_history(moved.id)] == [
        "pipeline_entry.transfer", "pipeline_entry.advance",
    ]


@pytest.mark.integration
def test_list_active_entries_reports_live_health(manager, make_lead, pipeline, t0):
    old = manager.enroll(make_lead("Old").id, pipeline.id, now=t0 - timedelta(days=5))
    fresh = manager.enroll(make_lead("Fresh").id, pipeline.id, now=t0)
    archived = manager.enroll(make_lead("Gone").id, pipeline.id, now=t0)
    manager.archive(archived.id)

    entries = manager.list_active_entries(pipeline.id, now=t0)

    assert [e.id for e in entries] == [old.id, fresh.id]
    assert entries[0].health.bucket.value == "red"
    assert entries[0].health.overdue_days == 2
    assert entries[1].health.bucket.value == "green"


@pytest.mark.integration
def test_lock_timeout_surfaces_as_concurrency_timeout(lead, pipeline, t0):
    registry = EntryLockRegistry()
    manager = StageTransitionManager(locks=registry, lock_timeout=0.05, clock=lambda: t0)
    lead_id, pipeline_id = lead.id, pipeline.id
    held, release = threading.Event(), threading.Event()

    def _holder():
        with registry.hold(lead_id, pipeline_id):
            held.set()
            release.wait(5)

    t = threading.Thread(target=_holder, daemon=True)
    t.start()
    assert held.wait(2)
    try:
        with pytest.raises(ConcurrencyTimeout):
            manager.enroll(lead_id, pipeline_id)
    finally:
        release.set()
        t.join(2)

    assert _active_count(lead_id, pipeline_id) == 0
    assert manager.enroll(lead_id, pipeline_id).status == "active"


@pytest.mark.integration
def test_per_call_lock_timeout_overrides_manager_default(lead, make_pipeline, t0):
    registry = EntryLockRegistry()
    manager = StageTransitionManager(locks=registry, lock_timeout=30.0, clock=lambda: t0)
    pipeline = make_pipeline()
    other = make_pipeline(name="Nurture")
    entry = manager.enroll(lead.id, pipeline.id)
    demo_id = _stages(pipeline)["Demo"].id
    lead_id, pipeline_id = lead.id, pipeline.id

    with _held_elsewhere(lambda: registry.hold(lead_id, pipeline_id)):
        started = time.monotonic()
        with pytest.raises(ConcurrencyTimeout) as exc:
            manager.advance_stage(entry.id, demo_id, lock_timeout=0.05)
        assert exc.value.timeout == 0.05
        with pytest.raises(ConcurrencyTimeout):
            manager.archive(entry.id, lock_timeout=0.05)
        with pytest.raises(ConcurrencyTimeout):
            manager.transfer(entry.id, other.id, lock_timeout=0.05)
        with pytest.raises(ConcurrencyTimeout):
            manager.enroll_many([lead_id], pipeline_id, lock_timeout=0.05)
        assert time.monotonic() - started < 5

    current = manager.get_entry(entry.id)
    assert current.status == "active"
    assert current.stage_name == "Qualify"


# ═════════════════════════════════════════════════════════════════════════════
# 7. STAGE CAPACITY UNDER CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════════


def _capped_pipeline(make_pipeline, **flags):
    return make_pipeline(stages=[
        {"name": "Qualify", "sla_deadline_days": 3},
        {"name": "Demo", "sla_deadline_days": 5, "wip_limit": 1},
        {"name": "Won", "sla_deadline_days": 0, "is_terminal": True},
    ], **flags)


@pytest.mark.integration
def test_advance_into_capped_stage_waits_for_its_capacity_lock(lead, make_pipeline, t0):
    registry = EntryLockRegistry()
    manager = StageTransitionManager(locks=registry, lock_timeout=1.0, clock=lambda: t0)
    pipeline = _capped_pipeline(make_pipeline, allow_stage_jumps=True)
    demo_id, won_id = _stages(pipeline)["Demo"].id, _stages(pipeline)["Won"].id
    entry = manager.enroll(lead.id, pipeline.id)

    with _held_elsewhere(lambda: registry.hold_stage(demo_id)):
        with pytest.raises(ConcurrencyTimeout) as exc:
            manager.advance_stage(entry.id, demo_id, lock_timeout=0.05)
        assert exc.value.stage_id == demo_id
        assert manager.get_entry(entry.id).stage_name == "Qualify"

        # uncapped targets never touch a stage lock
        assert manager.advance_stage(entry.id, won_id).outcome == OUTCOME_COMPLETED


@pytest.mark.integration
def test_concurrent_advances_never_overfill_a_capped_stage(app, manager, make_lead, make_pipeline):
    pipeline = _capped_pipeline(make_pipeline)
    demo_id = _stages(pipeline)["Demo"].id
    first = manager.enroll(make_lead("One").id, pipeline.id)
    second = manager.enroll(make_lead("Two").id, pipeline.id)

    results = _run_concurrently(
        app,
        lambda: manager.advance_stage(first.id, demo_id),
        lambda: manager.advance_stage(second.id, demo_id),
    )

    advanced = [r for r in results if isinstance(r, TransitionResult)]
    refused = [r for r in results if isinstance(r, StageCapacityReached)]
    assert len(advanced) == 1 and len(refused) == 1
    assert advanced[0].outcome == OUTCOME_ADVANCED
    assert PipelineEntry.query.filter_by(stage_id=demo_id, status="active").count() == 1
    assert AuditLog.query.filter_by(action="pipeline_entry.advance").count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# 8. CONCURRENT CALLERS ON ONE (LEAD, PIPELINE)
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_concurrent_enrollments_of_one_lead_create_one_entry(app, manager, lead, pipeline):
    lead_id, pipeline_id = lead.id, pipeline.id

    results = _run_concurrently(
        app,
        lambda: manager.enroll(lead_id, pipeline_id),
        lambda: manager.enroll(lead_id, pipeline_id),
    )

    created = [r for r in results if isinstance(r, EntrySnapshot)]
    conflicts = [r for r in results if isinstance(r, AlreadyEnrolled)]
    assert len(created) == 1 and len(conflicts) == 1
    assert conflicts[0].entry_id == created[0].id
    assert _active_count(lead_id, pipeline_id) == 1
    assert AuditLog.query.filter_by(action="pipeline_entry.enroll").count() == 1


@pytest.mark.integration
def test_concurrent_advances_of_one_entry_move_it_once(app, manager, lead, pipeline):
    entry = manager.enroll(lead.id, pipeline.id)
    demo_id = _stages(pipeline)["Demo"].id

    results = _run_concurrently(
        app,
        lambda: manager.advance_stage(entry.id, demo_id),
        lambda: manager.advance_stage(entry.id, demo_id),
    )

    moved = [r for r in results if isinstance(r, TransitionResult)]
    refused = [r for r in results if isinstance(r, InvalidTarget)]
    assert len(moved) == 1 and len(refused) == 1
    assert moved[0].ok
    assert manager.get_entry(entry.id).stage_name == "Demo"
    assert AuditLog.query.filter_by(action="pipeline_entry.advance").count() == 1


@pytest.mark.integration
def test_one_active_entry_per_pair_survives_mixed_operations(manager, make_lead, make_pipeline):
    rng = random.Random(20260302)
    pipelines = [
        make_pipeline(name="Sales"),
        make_pipeline(name="Nurture", allow_stage_jumps=True, allow_regression=True),
    ]
    stage_ids = {p.id: [s.id for s in p.stages] for p in pipelines}
    pipeline_ids = list(stage_ids)
    lead_ids = [make_lead(f"Lead {i}").id for i in range(3)]
    succeeded = collections.Counter()
    rejected = 0

    for _ in range(150):
        entries = [(e.id, e.pipeline_id) for e in PipelineEntry.query.order_by(PipelineEntry.id).all()]
        op = rng.choice(["enroll", "advance", "archive", "transfer"]) if entries else "enroll"
        try:
            if op == "enroll":
                manager.enroll(rng.choice(lead_ids), rng.choice(pipeline_ids))
            else:
                entry_id, pid = rng.choice(entries)
                if op == "advance":
                    manager.advance_stage(entry_id, rng.choice(stage_ids[pid]))
                elif op == "archive":
                    manager.archive(entry_id)
                else:
                    manager.transfer(entry_id, rng.choice(pipeline_ids))
            succeeded[op] += 1
        except (StateConflict, InvalidTarget):
            rejected += 1

        active = (
            db.session.query(PipelineEntry.lead_id, PipelineEntry.pipeline_id, db.func.count(PipelineEntry.id))
            .filter(PipelineEntry.status == "active")
            .group_by(PipelineEntry.lead_id, PipelineEntry.pipeline_id)
            .all()
        )
        assert all(count == 1 for _, _, count in active)

    assert all(succeeded[op] for op in ("enroll", "advance", "archive", "transfer"))
    assert rejected


# ═════════════════════════════════════════════════════════════════════════════
# 9. BULK ENROLLMENT
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_enroll_many_enrolls_new_leads_and_skips_enrolled_ones(manager, make_lead, pipeline):
    ada, bob, cy = (make_lead(n).id for n in ("Ada", "Bob", "Cy"))
    existing = manager.enroll(bob, pipeline.id)

    result = manager.enroll_many([ada, bob, cy, ada], pipeline.id, actor="ops")

    assert [e.lead_id for e in result.enrolled] == [ada, cy]
    assert all(e.stage_name == "Qualify" for e in result.enrolled)
    assert result.skipped == [{"lead_id": bob, "entry_id": existing.id, "reason": "already_enrolled"}]
    assert result.to_dict()["summary"] == {"enrolled": 2, "skipped": 1}

    audits = AuditLog.query.filter_by(action="pipeline_entry.enroll", actor="ops").all()
    assert len(audits) == 2
    assert all(a.diff["bulk"] is True for a in audits)


@pytest.mark.integration
def test_enroll_many_without_skip_is_all_or_nothing(manager, make_lead, pipeline):
    ada, bob = make_lead("Ada").id, make_lead("Bob").id
    manager.enroll(bob, pipeline.id)

    with pytest.raises(AlreadyEnrolled) as exc:
        manager.enroll_many([ada, bob], pipeline.id, skip_existing=False)

    assert exc.value.lead_id == bob
    assert _active_count(ada, pipeline.id) == 0


@pytest.mark.integration
def test_enroll_many_validates_before_writing(manager, make_lead, make_pipeline):
    ada = make_lead("Ada").id
    pipeline = make_pipeline()

    with pytest.raises(NotFoundError):
        manager.enroll_many([ada, 999], pipeline.id)
    assert _active_count(ada, pipeline.id) == 0

    with pytest.raises(ValidationError):
        manager.enroll_many([ada], make_pipeline(name="Off", is_active=False).id)

    empty = manager.enroll_many([], pipeline.id)
    assert empty.enrolled == [] and empty.skipped == []
