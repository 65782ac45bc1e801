"""Pipeline entry lifecycle blueprint.

Endpoint groups
───────────────
  Enroll      POST /pipelines/<pid>/enroll                   Enroll a lead at the first stage
              POST /pipelines/<pid>/enroll-bulk              Enroll many leads, skipping enrolled ones
              GET  /pipelines/<pid>/entries                  Active entries with live health
  Entry       GET  /pipeline-entries/<eid>                   Entry snapshot + health
              GET  /pipeline-entries/<eid>/history           Audit trail
  Transitions POST /pipeline-entries/<eid>/preview           Evaluate exit criteria (read-only)
              POST /pipeline-entries/<eid>/advance           Move to another stage
              POST /pipeline-entries/<eid>/archive           Archive
              POST /pipeline-entries/<eid>/transfer          Move to another pipeline

A blocked advancement answers 409 ``ERR_CRITERIA_NOT_MET`` with the blockers
in ``details``; the entry is unchanged.
"""

import logging

from flask import Blueprint, jsonify, request

from leadflow.blueprints import request_actor
from leadflow.models import db
from leadflow.services.stage_transition import get_transition_manager
from leadflow.utils.errors import SERVICE_ERRORS, E, api_error, error_from_exception

logger = logging.getLogger(__name__)

entry_bp = Blueprint("entry", __name__, url_prefix="/api/v1")

MAX_BULK_ENROLL = 500


def _int_field(data, name, required=True):
    value = data.get(name)
    if value is None:
        return None, (api_error(E.VALIDATION_REQUIRED, f"{name} is required") if required else None)
    if not isinstance(value, int) or isinstance(value, bool):
        return None, api_error(E.VALIDATION_INVALID, f"{name} must be an integer")
    return value, None


def _dict_field(data, name):
    value = data.get(name)
    if value is not None and not isinstance(value, dict):
        return None, api_error(E.VALIDATION_INVALID, f"{name} must be an object")
    return value, None


def _str_field(data, name):
    value = data.get(name)
    if value is not None and not isinstance(value, str):
        return None, api_error(E.VALIDATION_INVALID, f"{name} must be a string")
    return value, None


# ══════════════════════════════════════════════════════════════════
# 1.  Enrollment
# ══════════════════════════════════════════════════════════════════

@entry_bp.route("/pipelines/<int:pipeline_id>/enroll", methods=["POST"])
def enroll(pipeline_id):
    data = request.get_json(silent=True) or {}
    lead_id, err = _int_field(data, "lead_id")
    if err:
        return err
    note, err = _str_field(data, "note")
    if err:
        return err
    try:
        entry = get_transition_manager().enroll(
            lead_id, pipeline_id, actor=request_actor(), note=note,
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(entry.to_dict()), 201


@entry_bp.route("/pipelines/<int:pipeline_id>/enroll-bulk", methods=["POST"])
def enroll_bulk(pipeline_id):
    """Enroll many leads at once; already-enrolled leads are skipped unless ``skip_existing`` is false."""
    data = request.get_json(silent=True) or {}
    lead_ids = data.get("lead_ids")
    if not lead_ids:
        return api_error(E.VALIDATION_REQUIRED, "lead_ids is required")
    if not isinstance(lead_ids, list) or any(
        not isinstance(lid, int) or isinstance(lid, bool) for lid in lead_ids
    ):
        return api_error(E.VALIDATION_INVALID, "lead_ids must be a list of integers")
    if len(lead_ids) > MAX_BULK_ENROLL:
        return api_error(E.VALIDATION_INVALID, f"at most {MAX_BULK_ENROLL} leads per request")
    skip_existing = data.get("skip_existing", True)
    if not isinstance(skip_existing, bool):
        return api_error(E.VALIDATION_INVALID, "skip_existing must be a boolean")
    note, err = _str_field(data, "note")
    if err:
        return err

    try:
        result = get_transition_manager().enroll_many(
            lead_ids, pipeline_id,
            skip_existing=skip_existing, actor=request_actor(), note=note,
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(result.to_dict()), 201 if result.enrolled else 200


@entry_bp.route("/pipelines/<int:pipeline_id>/entries", methods=["GET"])
def list_entries(pipeline_id):
    entries = get_transition_manager().list_active_entries(pipeline_id)
    bucket = request.args.get("health")
    if bucket:
        entries = [e for e in entries if e.health and e.health.bucket.value == bucket]
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


# ══════════════════════════════════════════════════════════════════
# 2.  Read
# ══════════════════════════════════════════════════════════════════

@entry_bp.route("/pipeline-entries/<int:entry_id>", methods=["GET"])
def get_entry(entry_id):
    try:
        return jsonify(get_transition_manager().get_entry(entry_id).to_dict())
    except SERVICE_ERRORS as exc:
        return error_from_exception(exc)


@entry_bp.route("/pipeline-entries/<int:entry_id>/history", methods=["GET"])
def entry_history(entry_id):
    try:
        rows = get_transition_manager().entry_history(entry_id)
    except SERVICE_ERRORS as exc:
        return error_from_exception(exc)
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})


# ══════════════════════════════════════════════════════════════════
# 3.  Transitions
# ══════════════════════════════════════════════════════════════════

@entry_bp.route("/pipeline-entries/<int:entry_id>/preview", methods=["POST"])
def preview(entry_id):
    """Evaluate the current stage's exit criteria without moving the entry."""
    data = request.get_json(silent=True) or {}
    context, err = _dict_field(data, "context")
    if err:
        return err
    try:
        evaluation = get_transition_manager().preview_advancement(entry_id, context=context)
    except SERVICE_ERRORS as exc:
        return error_from_exception(exc)
    return jsonify(evaluation.to_dict())


@entry_bp.route("/pipeline-entries/<int:entry_id>/advance", methods=["POST"])
def advance(entry_id):
    data = request.get_json(silent=True) or {}
    target_stage_id, err = _int_field(data, "target_stage_id")
    if err:
        return err
    context, err = _dict_field(data, "context")
    if err:
        return err
    note, err = _str_field(data, "note")
    if err:
        return err

    try:
        result = get_transition_manager().advance_stage(
            entry_id, target_stage_id,
            context=context, actor=request_actor(), note=note,
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)

    if not result.ok:
        return api_error(E.CRITERIA_NOT_MET, result.evaluation.summary, details=result.to_dict())
    return jsonify(result.to_dict())


@entry_bp.route("/pipeline-entries/<int:entry_id>/archive", methods=["POST"])
def archive(entry_id):
    data = request.get_json(silent=True) or {}
    reason, err = _str_field(data, "reason")
    if err:
        return err
    try:
        entry = get_transition_manager().archive(entry_id, reason, actor=request_actor())
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(entry.to_dict())


@entry_bp.route("/pipeline-entries/<int:entry_id>/transfer", methods=["POST"])
def transfer(entry_id):
    data = request.get_json(silent=True) or {}
    target_pipeline_id, err = _int_field(data, "target_pipeline_id")
    if err:
        return err
    reason, err = _str_field(data, "reason")
    if err:
        return err
    note, err = _str_field(data, "note")
    if err:
        return err
    try:
        result = get_transition_manager().transfer(
            entry_id, target_pipeline_id,
            reason=reason, actor=request_actor(), note=note,
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(result.to_dict()), 201
