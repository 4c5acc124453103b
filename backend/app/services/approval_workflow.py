"""
Approval state machine shared by takeoff versions and cost estimates.

    draft ──submit──▶ submitted ──approve──▶ approved ──supersede──▶ superseded
                          │
                          └──reject──▶ rejected

rejected and superseded are terminal. A rejected version is continued by
deriving a NEW draft from it, never by moving it back to draft.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.services.errors import InvalidTransition, ValidationError, ValidationIssue, VersionLocked

logger = logging.getLogger("estimator-approval")

DRAFT = "draft"
SUBMITTED = "submitted"
APPROVED = "approved"
REJECTED = "rejected"
SUPERSEDED = "superseded"

STATUSES = (DRAFT, SUBMITTED, APPROVED, REJECTED, SUPERSEDED)

# action → (allowed from, resulting status)
TRANSITIONS: Dict[str, tuple] = {
    "submit": (DRAFT, SUBMITTED),
    "approve": (SUBMITTED, APPROVED),
    "reject": (SUBMITTED, REJECTED),
    "supersede": (APPROVED, SUPERSEDED),
}


def allowed_actions(status: str) -> list:
    return [action for action, (source, _) in TRANSITIONS.items() if source == status]


def next_status(entity: str, status: str, action: str) -> str:
    """Target status for `action`, or InvalidTransition when it is not legal from `status`."""
    if action not in TRANSITIONS:
        raise InvalidTransition(entity, status, action)
    source, target = TRANSITIONS[action]
    if status != source:
        raise InvalidTransition(entity, status, action)
    return target


def apply_transition(
    record: Any,
    action: str,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    entity: str = "record",
    now: Optional[datetime] = None,
) -> str:
    """
    Move `record.status` through `action` and stamp the actor columns
    (submitted_by/at, approved_by/at, rejected_by/at + rejection_reason).

    The record is only touched after the transition is known to be legal,
    so a failed call leaves it unchanged.
    """
    target = next_status(entity, record.status, action)
    if action == "reject" and not (reason or "").strip():
        raise ValidationError(
            "A rejection reason is required",
            [ValidationIssue(code="missing_reason", message="reason must not be empty", ref=action)],
        )

    stamp = now or datetime.now(timezone.utc)
    previous = record.status
    record.status = target
    if action == "submit":
        record.submitted_by = actor
        record.submitted_at = stamp
    elif action == "approve":
        record.approved_by = actor
        record.approved_at = stamp
    elif action == "reject":
        record.rejected_by = actor
        record.rejected_at = stamp
        record.rejection_reason = reason.strip()
    elif action == "supersede":
        record.superseded_at = stamp

    logger.info(
        f"{entity} {getattr(record, 'id', '?')} {previous} → {target}"
        + (f" by {actor}" if actor else "")
    )
    return target


def ensure_editable(record: Any, entity: str = "record") -> None:
    """Snapshot fields may only change while the record is a draft."""
    if record.status != DRAFT:
        raise VersionLocked(entity, record.status)
