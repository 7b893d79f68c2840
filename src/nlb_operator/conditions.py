"""Condition ledger for NLB status.

At most one condition per type: setting an existing type replaces it in
place (ledger order preserved), a new type is appended.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import Condition, NLBStatus

CONDITION_READY = "Ready"
CONDITION_ERROR = "Error"

STATUS_TRUE = "True"
STATUS_FALSE = "False"

# Stable reason codes shared by conditions and events
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"
REASON_DELETION_SUCCESS = "DeletionSuccess"
REASON_DELETION_ERROR = "DeletionError"
REASON_PROVISIONING = "Provisioning"
REASON_DELETING = "Deleting"


def now_rfc3339() -> str:
    """Current UTC time as an RFC 3339 string with second precision."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def set_condition(
    status: NLBStatus,
    condition_type: str,
    condition_status: str,
    reason: str,
    message: str,
    generation: int = 0,
) -> Condition:
    """Append or replace the condition of the given type.

    The transition time only moves when the status changes; a repeated
    status keeps the time it was first recorded with.

    Returns:
        The condition now stored in the ledger.
    """
    condition = Condition(
        type=condition_type,
        status=condition_status,
        reason=reason,
        message=message,
        last_transition_time=now_rfc3339(),
        observed_generation=generation,
    )

    for i, existing in enumerate(status.conditions):
        if existing.type == condition_type:
            if existing.status == condition_status and existing.last_transition_time:
                condition.last_transition_time = existing.last_transition_time
            status.conditions[i] = condition
            return condition

    status.conditions.append(condition)
    return condition


def get_condition(status: NLBStatus, condition_type: str) -> Condition | None:
    """Return the condition of the given type, if recorded."""
    for condition in status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(status: NLBStatus, condition_type: str) -> bool:
    condition = get_condition(status, condition_type)
    return condition is not None and condition.status == STATUS_TRUE
