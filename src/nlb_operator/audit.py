"""Per-pass audit records.

Every reconciliation pass is stamped with one structured record that
answers:
- "Which branch did the controller take for this resource?"
- "Which provider operations were issued, in what order?"
- "What version of the operator was running?"

Records go to the structured logger (stdout, collected with container logs).
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .reconciler import ReconcileResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class AuditRecord:
    """Audit record for one reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    namespace: str = ""
    name: str = ""
    generation: int = 0
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""

    # Outcome
    path: str = ""
    operations: list[str] = field(default_factory=list)
    directive: str = ""
    load_balancer_id: str = ""

    duration_seconds: float = 0.0

    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class AuditLogger:
    """Logs one audit record per reconciliation pass."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("POD_NAME", os.environ.get("HOSTNAME", ""))

    def create_record(self, result: ReconcileResult) -> AuditRecord:
        load_balancer_id = ""
        if result.resource is not None:
            load_balancer_id = result.resource.status.load_balancer_id

        return AuditRecord(
            namespace=result.key.namespace,
            name=result.key.name,
            generation=result.generation,
            operator_instance_id=self._instance_id,
            path=result.path.value,
            operations=list(result.operations),
            directive=str(result.directive),
            load_balancer_id=load_balancer_id,
            duration_seconds=round(result.duration_seconds, 3),
            error=str(result.error) if result.error is not None else None,
            error_kind=result.error_kind,
        )

    def log_pass(self, result: ReconcileResult) -> AuditRecord:
        """Log the audit record for a completed pass.

        Level is ERROR when the pass failed, WARNING for an immediate
        requeue (drift) and INFO otherwise.
        """
        record = self.create_record(result)

        log_level = logging.INFO
        if record.error and record.error_kind != "cancelled":
            log_level = logging.ERROR
        elif record.directive == "requeue-immediate":
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation audit",
            extra={
                "audit": record.to_dict(),
                # Flatten key fields for easier querying
                "resource": f"{record.namespace}/{record.name}",
                "path": record.path,
                "directive": record.directive,
                "operator_version": record.operator_version,
            },
        )
        return record


# Global singleton for audit logging
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
