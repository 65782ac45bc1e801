"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register one mapping from type to
HTTP status and error code.  ``CriteriaNotMet`` is deliberately absent:
a blocked advancement is an expected outcome and comes back as a
``TransitionResult`` from the transition manager, not as an exception.

Usage:
    from leadflow.core.exceptions import NotFoundError, AlreadyEnrolled

    raise NotFoundError(resource="Pipeline", resource_id=42)
    raise AlreadyEnrolled(lead_id=7, pipeline_id=3)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Pipeline", "Lead").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ValidationError):
    """Malformed pipeline, stage, criterion or rule configuration.

    Raised at load time, never during evaluation.  A stage whose criteria
    fail to load cannot be advanced out of until the configuration is fixed.

    Args:
        message: What is wrong.
        path: Location inside the rule tree, e.g. ``rule.children[1].operator``.
    """

    def __init__(self, message: str, path: str | None = None, details: dict | None = None) -> None:
        self.path = path
        details = dict(details or {})
        if path:
            details.setdefault("path", path)
            message = f"{path}: {message}"
        super().__init__(message, details=details)


# ── Entry state conflicts (HTTP 409) ─────────────────────────────────────────


class StateConflict(Exception):
    """The operation is invalid given the entry's current status.

    Recoverable by the caller (re-fetch and choose another action); the
    engine never retries these.
    """

    code = "state_conflict"


class AlreadyEnrolled(StateConflict):
    """An active entry already exists for (lead, pipeline)."""

    code = "already_enrolled"

    def __init__(self, lead_id: int, pipeline_id: int, entry_id: int | None = None) -> None:
        self.lead_id = lead_id
        self.pipeline_id = pipeline_id
        self.entry_id = entry_id
        super().__init__(f"Lead {lead_id} already has an active entry in pipeline {pipeline_id}")


class NotActive(StateConflict):
    """The entry is archived or completed."""

    code = "not_active"

    def __init__(self, entry_id: int, status: str) -> None:
        self.entry_id = entry_id
        self.status = status
        super().__init__(f"Pipeline entry {entry_id} is not active (status={status})")


class InvalidTarget(Exception):
    """The requested stage move is not permitted by pipeline configuration."""

    code = "invalid_target"

    def __init__(self, entry_id: int, target_stage_id: int | None, reason: str) -> None:
        self.entry_id = entry_id
        self.target_stage_id = target_stage_id
        self.reason = reason
        super().__init__(f"Cannot move entry {entry_id} to stage {target_stage_id}: {reason}")


class StageCapacityReached(InvalidTarget):
    """The target stage is at its WIP limit."""

    code = "stage_capacity_reached"

    def __init__(self, entry_id: int, target_stage_id: int, wip_limit: int) -> None:
        self.wip_limit = wip_limit
        super().__init__(entry_id, target_stage_id, f"stage is at its WIP limit of {wip_limit}")


class ConcurrencyTimeout(Exception):
    """A per-(lead, pipeline) or stage capacity lock was not acquired in time.  Safe to retry."""

    def __init__(
        self, lead_id: int | None, pipeline_id: int | None, timeout: float, stage_id: int | None = None,
    ) -> None:
        self.lead_id = lead_id
        self.pipeline_id = pipeline_id
        self.stage_id = stage_id
        self.timeout = timeout
        target = f"lead {lead_id} / pipeline {pipeline_id}"
        if stage_id is not None:
            target += f" (capacity of stage {stage_id})"
        super().__init__(f"Timed out after {timeout:g}s waiting for {target}")
