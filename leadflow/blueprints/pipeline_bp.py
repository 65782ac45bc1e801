"""Pipeline configuration, leads and criterion-state blueprint.

Endpoint groups
───────────────
  Pipelines   POST /pipelines                                Create (optionally with stages)
              GET  /pipelines/<pid>                          Detail with stages + criteria
              GET  /pipelines/<pid>/health                   SLA health summary
  Stages      POST /pipelines/<pid>/stages                   Append a stage
  Criteria    POST /stages/<sid>/criteria                    Add a criterion
              PUT  /criteria/<cid>                           Update a criterion
  Leads       POST /leads                                    Create a lead
              GET  /leads/<lid>                              Lead detail
  States      PUT  /leads/<lid>/criteria/<cid>/checklist     Mark checklist item done
              PUT  /leads/<lid>/criteria/<cid>/approval      Record manual approval
"""

import logging

from flask import Blueprint, jsonify, request

from leadflow.blueprints import request_actor
from leadflow.models import db
from leadflow.models.lead import Lead
from leadflow.services import pipeline_config
from leadflow.services.criterion_state_service import set_checklist_done, set_manual_approval
from leadflow.services.pipeline_health import pipeline_health_summary
from leadflow.utils.errors import SERVICE_ERRORS, E, api_error, error_from_exception

logger = logging.getLogger(__name__)

pipeline_bp = Blueprint("pipeline", __name__, url_prefix="/api/v1")


# ══════════════════════════════════════════════════════════════════
# 1.  Pipelines / stages / criteria
# ══════════════════════════════════════════════════════════════════

@pipeline_bp.route("/pipelines", methods=["POST"])
def create_pipeline():
    data = request.get_json(silent=True) or {}
    try:
        pipeline = pipeline_config.create_pipeline(data, actor=request_actor())
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(pipeline.to_dict(include_stages=True)), 201


@pipeline_bp.route("/pipelines/<int:pipeline_id>", methods=["GET"])
def get_pipeline(pipeline_id):
    try:
        pipeline = pipeline_config.get_pipeline(pipeline_id)
    except SERVICE_ERRORS as exc:
        return error_from_exception(exc)
    return jsonify(pipeline.to_dict(include_stages=True))


@pipeline_bp.route("/pipelines/<int:pipeline_id>/health", methods=["GET"])
def pipeline_health(pipeline_id):
    """Green / yellow / red counts and the overdue list, computed now."""
    try:
        return jsonify(pipeline_health_summary(pipeline_id))
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)


@pipeline_bp.route("/pipelines/<int:pipeline_id>/stages", methods=["POST"])
def add_stage(pipeline_id):
    data = request.get_json(silent=True) or {}
    try:
        pipeline = pipeline_config.get_pipeline(pipeline_id)
        stage = pipeline_config.add_stage(pipeline, data, actor=request_actor())
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(stage.to_dict(include_criteria=True)), 201


@pipeline_bp.route("/stages/<int:stage_id>/criteria", methods=["POST"])
def add_criterion(stage_id):
    data = request.get_json(silent=True) or {}
    try:
        stage = pipeline_config.get_stage(stage_id)
        criterion = pipeline_config.add_criterion(stage, data, actor=request_actor())
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(criterion.to_dict()), 201


@pipeline_bp.route("/criteria/<int:criterion_id>", methods=["PUT"])
def update_criterion(criterion_id):
    data = request.get_json(silent=True) or {}
    try:
        criterion = pipeline_config.get_criterion(criterion_id)
        criterion = pipeline_config.update_criterion(criterion, data, actor=request_actor())
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(criterion.to_dict())


# ══════════════════════════════════════════════════════════════════
# 2.  Leads
# ══════════════════════════════════════════════════════════════════

@pipeline_bp.route("/leads", methods=["POST"])
def create_lead():
    data = request.get_json(silent=True) or {}

    name = str(data.get("name") or "").strip()
    if not name or len(name) > 200:
        return api_error(E.VALIDATION_REQUIRED, "name is required and must be <= 200 chars")
    custom_fields = data.get("custom_fields")
    if custom_fields is None:
        custom_fields = {}
    elif not isinstance(custom_fields, dict):
        return api_error(E.VALIDATION_INVALID, "custom_fields must be an object")
    lead_score = data.get("lead_score")
    if lead_score is not None and (not isinstance(lead_score, int) or isinstance(lead_score, bool)):
        return api_error(E.VALIDATION_INVALID, "lead_score must be an integer")

    lead = Lead(
        name=name,
        email=data.get("email"),
        phone=data.get("phone"),
        company=data.get("company"),
        source=data.get("source"),
        lead_score=lead_score,
        custom_fields=custom_fields,
    )
    db.session.add(lead)
    db.session.commit()
    logger.info("Lead created: id=%s", lead.id, extra={"lead_id": lead.id})
    return jsonify(lead.to_dict()), 201


@pipeline_bp.route("/leads/<int:lead_id>", methods=["GET"])
def get_lead(lead_id):
    lead = db.session.get(Lead, lead_id)
    if not lead:
        return api_error(E.NOT_FOUND, f"Lead id={lead_id} not found")
    return jsonify(lead.to_dict())


# ══════════════════════════════════════════════════════════════════
# 3.  Checklist / approval collaborators
# ══════════════════════════════════════════════════════════════════

@pipeline_bp.route("/leads/<int:lead_id>/criteria/<int:criterion_id>/checklist", methods=["PUT"])
def put_checklist(lead_id, criterion_id):
    data = request.get_json(silent=True) or {}
    if "done" not in data:
        return api_error(E.VALIDATION_REQUIRED, "done is required")
    try:
        state = set_checklist_done(
            lead_id, criterion_id, bool(data["done"]), actor=request_actor(), notes=data.get("notes"),
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(state.to_dict())


@pipeline_bp.route("/leads/<int:lead_id>/criteria/<int:criterion_id>/approval", methods=["PUT"])
def put_approval(lead_id, criterion_id):
    data = request.get_json(silent=True) or {}
    if "approved" not in data:
        return api_error(E.VALIDATION_REQUIRED, "approved is required")
    try:
        state = set_manual_approval(
            lead_id, criterion_id, bool(data["approved"]), actor=request_actor(), notes=data.get("notes"),
        )
    except SERVICE_ERRORS as exc:
        db.session.rollback()
        return error_from_exception(exc)
    return jsonify(state.to_dict())
