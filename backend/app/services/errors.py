"""
Error taxonomy for the quantity-to-cost pipeline.

ValidationError        malformed input; collected per item where a loop can continue
InvalidTransition      approval state-machine call from a disallowed state
VersionLocked          edit attempted on a version/estimate that is no longer draft
NotFound               referenced project/run/version/estimate does not exist
DuplicateVersionNumber numbering race that survived the internal retry (transient)
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


@dataclass
class ValidationIssue:
    """One per-item validation failure reported in validation_errors lists."""
    code: str                       # "unit_mismatch" | "negative_quantity" | ...
    message: str
    ref: Optional[str] = None       # raw line id, pay item number or line index

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PipelineError(Exception):
    """Base class for every error raised by the estimating pipeline."""


class ValidationError(PipelineError):
    def __init__(self, message: str, issues: Optional[List[ValidationIssue]] = None):
        super().__init__(message)
        self.message = message
        self.issues: List[ValidationIssue] = issues or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "validation_error",
            "message": self.message,
            "issues": [i.to_dict() for i in self.issues],
        }


class InvalidTransition(PipelineError):
    def __init__(self, entity: str, current: str, action: str):
        super().__init__(f"Cannot {action} {entity} in status '{current}'")
        self.entity = entity
        self.current = current
        self.action = action

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "invalid_transition",
            "message": str(self),
            "entity": self.entity,
            "current_status": self.current,
            "action": self.action,
        }


class VersionLocked(InvalidTransition):
    def __init__(self, entity: str, current: str):
        super().__init__(entity, current, "edit")


class NotFound(PipelineError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "not_found",
            "message": str(self),
            "entity": self.entity,
            "id": str(self.entity_id),
        }


class DuplicateVersionNumber(PipelineError):
    def __init__(self, project_id: str, number: Any):
        super().__init__(
            f"Number {number} for project {project_id} was taken concurrently; retry the request"
        )
        self.project_id = project_id
        self.number = number

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "duplicate_version_number",
            "message": str(self),
            "project_id": self.project_id,
            "number": str(self.number),
        }
