"""Convergence controller for NLB resources.

This module implements the reconciliation state machine:
1. Deletion requested -> Terminating: listeners, then the load balancer,
   then release the deletion guard (finalizer)
2. No recorded load balancer -> create, persist the id, wait until active
3. Recorded load balancer -> verify it still exists (absent means drift:
   forget it and requeue immediately so the next pass recreates it)
4. Join security groups and converge listeners by port
5. Write observed status and conditions, return a retry directive

ARCHITECTURE:
The controller holds no locks and no state between passes. The dispatcher
guarantees at most one pass per resource at a time; every pass re-reads
live state from the provider. Retries are never loops in here: a failed
pass returns requeue-after(error delay) and the dispatcher calls again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .audit import get_audit_logger
from .conditions import (
    CONDITION_ERROR,
    CONDITION_READY,
    REASON_DELETING,
    REASON_DELETION_ERROR,
    REASON_DELETION_SUCCESS,
    REASON_PROVISIONING,
    REASON_RECONCILE_ERROR,
    REASON_RECONCILE_SUCCESS,
    STATUS_FALSE,
    STATUS_TRUE,
    is_condition_true,
    set_condition,
)
from .config import Config
from .errors import NotFoundError, OperationCancelledError, ProviderError
from .events import EVENT_NORMAL, EVENT_WARNING, EventRecorder
from .models import (
    LB_STATUS_DELETING,
    LB_STATUS_PROVISIONING,
    LISTENER_STATUS_ACTIVE,
    NLB_FINALIZER,
    ListenerSpec,
    ListenerStatus,
    NLBResource,
    ResourceKey,
)
from .provider import ProviderClient
from .store import ResourceStore, StoreError

logger = logging.getLogger(__name__)


class RequeueKind(str, Enum):
    """Retry directive vocabulary returned to the dispatcher."""

    NONE = "none"
    IMMEDIATE = "requeue-immediate"
    AFTER = "requeue-after"


@dataclass(frozen=True)
class RetryDirective:
    """What the dispatcher should do with this resource next."""

    kind: RequeueKind
    delay_seconds: float = 0.0

    @classmethod
    def none(cls) -> RetryDirective:
        return cls(RequeueKind.NONE)

    @classmethod
    def immediate(cls) -> RetryDirective:
        return cls(RequeueKind.IMMEDIATE)

    @classmethod
    def after(cls, seconds: float) -> RetryDirective:
        return cls(RequeueKind.AFTER, float(seconds))

    def __str__(self) -> str:
        if self.kind == RequeueKind.AFTER:
            return f"{self.kind.value}({self.delay_seconds:g}s)"
        return self.kind.value


class ReconcilePath(str, Enum):
    """Branch of the state machine a pass took."""

    CREATE = "create"
    VERIFY = "verify"
    DRIFT = "drift"
    DELETE = "delete"
    SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    key: ResourceKey
    generation: int
    path: ReconcilePath = ReconcilePath.SKIPPED
    directive: RetryDirective = field(default_factory=RetryDirective.none)
    resource: NLBResource | None = None
    error: Exception | None = None
    operations: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    # Wire form of the status last read from or written to the store
    stored_status: dict[str, Any] | None = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> str | None:
        if self.error is None:
            return None
        if isinstance(self.error, ProviderError):
            return self.error.kind
        if isinstance(self.error, StoreError):
            return "store"
        return "unexpected"


# =============================================================================
# Listener diff
# =============================================================================


@dataclass
class ListenerDiff:
    """Listener changes needed to converge one load balancer.

    Attributes:
        desired: Desired listeners in spec order.
        existing: Provider listener id per port, for ports already provisioned.
        to_create: Desired listeners with no recorded id.
        stale: Recorded listeners whose port is no longer desired. They are
            dropped from status but never deleted while the resource is active.
    """

    desired: list[ListenerSpec]
    existing: dict[int, str]
    to_create: list[ListenerSpec]
    stale: list[ListenerStatus]


def diff_listeners(desired: list[ListenerSpec], current: list[ListenerStatus]) -> ListenerDiff:
    """Compare desired listeners with recorded listener status, keyed by port.

    Only presence by port is compared; other listener fields are not diffed.
    """
    recorded = {record.listener_port: record.listener_id for record in current if record.listener_id}
    desired_ports = {listener.listener_port for listener in desired}

    return ListenerDiff(
        desired=list(desired),
        existing={
            listener.listener_port: recorded[listener.listener_port]
            for listener in desired
            if listener.listener_port in recorded
        },
        to_create=[listener for listener in desired if listener.listener_port not in recorded],
        stale=[record for record in current if record.listener_port not in desired_ports],
    )


# =============================================================================
# Controller
# =============================================================================


class NLBReconciler:
    """Convergence controller for one resource kind.

    Args:
        provider: Provider Client.
        store: Desired-state store; accepts status and finalizer updates.
        recorder: User-facing event sink (fire-and-forget).
        config: Retry delays.
    """

    def __init__(
        self,
        provider: ProviderClient,
        store: ResourceStore,
        recorder: EventRecorder,
        config: Config,
    ) -> None:
        self._provider = provider
        self._store = store
        self._recorder = recorder
        self._config = config

    async def reconcile(self, resource: NLBResource) -> ReconcileResult:
        """Run one reconciliation pass.

        The given resource is not modified; the pass works on a copy and the
        resulting state is available as result.resource.

        Raises:
            asyncio.CancelledError: Propagated unchanged.
        """
        started = time.monotonic()
        work = resource.model_copy(deep=True)
        result = ReconcileResult(
            key=work.key,
            generation=work.metadata.generation,
            resource=work,
            stored_status=work.status.to_wire(),
        )

        logger.info(
            "Reconciling NLB",
            extra={"resource": str(work.key), "generation": work.metadata.generation},
        )

        if work.deletion_requested:
            await self._reconcile_terminating(work, result)
        else:
            await self._reconcile_active(work, result)

        result.duration_seconds = time.monotonic() - started
        self._log_result(result)
        if self._config.enable_audit_logging:
            get_audit_logger().log_pass(result)
        return result

    # -------------------------------------------------------------------------
    # Active
    # -------------------------------------------------------------------------

    async def _reconcile_active(self, resource: NLBResource, result: ReconcileResult) -> None:
        status = resource.status
        generation = resource.metadata.generation

        # Deletion guard goes on before anything is created at the provider
        if not resource.has_finalizer():
            try:
                await self._store.add_finalizer(resource, NLB_FINALIZER)
            except StoreError as e:
                logger.error(
                    "Failed to add finalizer",
                    extra={"resource": str(resource.key), "error": str(e)},
                )
                result.error = e
                result.directive = RetryDirective.after(self._config.error_requeue_seconds)
                return
            resource.metadata.finalizers.append(NLB_FINALIZER)

        if not status.load_balancer_id:
            result.path = ReconcilePath.CREATE
            logger.info("Creating new NLB instance", extra={"resource": str(resource.key)})

            result.operations.append("CreateLoadBalancer")
            try:
                load_balancer_id = await self._provider.create_load_balancer(resource.spec)
            except ProviderError as e:
                await self._fail(resource, result, e, "Failed to create NLB")
                return

            # Persist before waiting so a crash mid-wait leaves a tracked id
            status.load_balancer_id = load_balancer_id
            status.load_balancer_status = LB_STATUS_PROVISIONING
            set_condition(
                status,
                CONDITION_READY,
                STATUS_FALSE,
                REASON_PROVISIONING,
                "NLB instance is being created",
                generation,
            )
            if not await self._persist(resource, result):
                return

            result.operations.append("WaitUntilActive")
            try:
                attributes = await self._provider.wait_until_active(load_balancer_id)
            except ProviderError as e:
                await self._fail(resource, result, e, "Failed to wait for NLB to be active")
                return

            status.dns_name = attributes.dns_name
            status.load_balancer_status = attributes.status
            self._emit(
                resource,
                EVENT_NORMAL,
                REASON_RECONCILE_SUCCESS,
                f"Successfully created NLB: {load_balancer_id}",
            )
            logger.info(
                "Successfully created NLB",
                extra={"resource": str(resource.key), "load_balancer_id": load_balancer_id},
            )
        else:
            result.path = ReconcilePath.VERIFY
            result.operations.append("GetLoadBalancerAttributes")
            try:
                attributes = await self._provider.get_load_balancer(status.load_balancer_id)
            except NotFoundError:
                await self._handle_drift(resource, result)
                return
            except ProviderError as e:
                await self._fail(resource, result, e, "Failed to get NLB")
                return

            status.dns_name = attributes.dns_name
            status.load_balancer_status = attributes.status

        if resource.spec.security_group_ids:
            result.operations.append("JoinSecurityGroups")
            try:
                await self._provider.join_security_groups(
                    status.load_balancer_id, resource.spec.security_group_ids
                )
            except ProviderError as e:
                await self._fail(resource, result, e, "Failed to handle security groups")
                return

        try:
            await self._sync_listeners(resource, result)
        except ProviderError as e:
            await self._fail(resource, result, e, "Failed to handle listeners")
            return

        set_condition(
            status,
            CONDITION_READY,
            STATUS_TRUE,
            REASON_RECONCILE_SUCCESS,
            "NLB reconciled successfully",
            generation,
        )
        if is_condition_true(status, CONDITION_ERROR):
            set_condition(
                status,
                CONDITION_ERROR,
                STATUS_FALSE,
                REASON_RECONCILE_SUCCESS,
                "NLB reconciled successfully",
                generation,
            )

        if not await self._persist(resource, result):
            return

        self._emit(resource, EVENT_NORMAL, REASON_RECONCILE_SUCCESS, "Successfully reconciled NLB")
        result.directive = RetryDirective.after(self._config.steady_requeue_seconds)

    async def _handle_drift(self, resource: NLBResource, result: ReconcileResult) -> None:
        """The recorded load balancer is gone: forget it so the next pass recreates it."""
        status = resource.status
        result.path = ReconcilePath.DRIFT
        logger.warning(
            "Load balancer was deleted externally, will recreate",
            extra={"resource": str(resource.key), "load_balancer_id": status.load_balancer_id},
        )
        status.clear_provider_state()
        if not await self._persist(resource, result):
            return
        result.directive = RetryDirective.immediate()

    async def _sync_listeners(self, resource: NLBResource, result: ReconcileResult) -> None:
        """Create listeners for desired ports with no recorded id.

        Status is rebuilt in spec order. Records for ports no longer desired
        are dropped without deleting the provider listener. If a create
        fails, ids obtained so far are kept in status before re-raising.
        """
        status = resource.status
        diff = diff_listeners(resource.spec.listeners, status.listener_status)
        created: dict[int, str] = {}

        for record in diff.stale:
            logger.info(
                "Dropping listener record for port no longer desired",
                extra={
                    "resource": str(resource.key),
                    "listener_port": record.listener_port,
                    "listener_id": record.listener_id,
                },
            )

        try:
            for listener in diff.to_create:
                logger.info(
                    "Creating listener",
                    extra={"resource": str(resource.key), "listener_port": listener.listener_port},
                )
                result.operations.append("CreateListener")
                created[listener.listener_port] = await self._provider.create_listener(
                    status.load_balancer_id, listener
                )
        except ProviderError:
            # Keep every known id so the next pass does not create duplicates
            known = {record.listener_port for record in status.listener_status}
            for port, listener_id in created.items():
                if port not in known:
                    status.listener_status.append(
                        ListenerStatus(
                            listener_port=port,
                            listener_id=listener_id,
                            status=LISTENER_STATUS_ACTIVE,
                        )
                    )
            raise

        ids = {**diff.existing, **created}
        status.listener_status = [
            ListenerStatus(
                listener_port=listener.listener_port,
                listener_id=ids[listener.listener_port],
                status=LISTENER_STATUS_ACTIVE,
            )
            for listener in diff.desired
        ]

    # -------------------------------------------------------------------------
    # Terminating
    # -------------------------------------------------------------------------

    async def _reconcile_terminating(self, resource: NLBResource, result: ReconcileResult) -> None:
        status = resource.status

        if not resource.has_finalizer():
            result.path = ReconcilePath.SKIPPED
            result.directive = RetryDirective.none()
            return

        result.path = ReconcilePath.DELETE
        logger.info(
            "Deleting NLB",
            extra={"resource": str(resource.key), "load_balancer_id": status.load_balancer_id},
        )

        if status.load_balancer_status != LB_STATUS_DELETING:
            status.load_balancer_status = LB_STATUS_DELETING
            set_condition(
                status,
                CONDITION_READY,
                STATUS_FALSE,
                REASON_DELETING,
                "NLB is being deleted",
                resource.metadata.generation,
            )
            # Cleanup proceeds even if this write fails
            await self._persist_best_effort(resource, result)

        # Listeners first; each record leaves status once its listener is gone
        while status.listener_status:
            record = status.listener_status[0]
            if record.listener_id:
                logger.info(
                    "Deleting listener",
                    extra={"resource": str(resource.key), "listener_id": record.listener_id},
                )
                result.operations.append("DeleteListener")
                try:
                    await self._provider.delete_listener(record.listener_id)
                except ProviderError as e:
                    await self._fail(
                        resource, result, e, "Failed to delete listener", REASON_DELETION_ERROR
                    )
                    return
            status.listener_status.pop(0)

        load_balancer_id = status.load_balancer_id
        if load_balancer_id:
            result.operations.append("DeleteLoadBalancer")
            try:
                await self._provider.delete_load_balancer(load_balancer_id)
            except ProviderError as e:
                await self._fail(resource, result, e, "Failed to delete NLB", REASON_DELETION_ERROR)
                return

            status.load_balancer_id = ""
            status.dns_name = ""
            self._emit(
                resource,
                EVENT_NORMAL,
                REASON_DELETION_SUCCESS,
                f"Successfully deleted NLB: {load_balancer_id}",
            )
            logger.info(
                "Successfully deleted NLB",
                extra={"resource": str(resource.key), "load_balancer_id": load_balancer_id},
            )

        try:
            await self._store.remove_finalizer(resource, NLB_FINALIZER)
        except StoreError as e:
            logger.error(
                "Failed to remove finalizer",
                extra={"resource": str(resource.key), "error": str(e)},
            )
            result.error = e
            result.directive = RetryDirective.after(self._config.error_requeue_seconds)
            return

        resource.metadata.finalizers = [
            f for f in resource.metadata.finalizers if f != NLB_FINALIZER
        ]
        result.directive = RetryDirective.none()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _fail(
        self,
        resource: NLBResource,
        result: ReconcileResult,
        error: ProviderError,
        context: str,
        reason: str = REASON_RECONCILE_ERROR,
    ) -> None:
        """Record a failed provider step on status and as an event, then requeue."""
        result.error = error

        if isinstance(error, OperationCancelledError):
            logger.info(
                "Reconciliation cancelled",
                extra={"resource": str(resource.key), "error": str(error)},
            )
            result.directive = RetryDirective.none()
            return

        message = f"{context}: {error}"
        set_condition(
            resource.status,
            CONDITION_ERROR,
            STATUS_TRUE,
            reason,
            message,
            resource.metadata.generation,
        )
        self._emit(resource, EVENT_WARNING, reason, message)
        await self._persist_best_effort(resource, result)
        result.directive = RetryDirective.after(self._config.error_requeue_seconds)

    async def _write_status(self, resource: NLBResource, result: ReconcileResult) -> None:
        """Write status unless it matches what the store already holds.

        An unchanged status is not written, so a steady-state pass does not
        produce a watch event that would trigger the next pass.
        """
        wire = resource.status.to_wire()
        if wire == result.stored_status:
            logger.debug("Status unchanged, skipping write", extra={"resource": str(resource.key)})
            return
        await self._store.update_status(resource, resource.status)
        result.stored_status = wire

    async def _persist(self, resource: NLBResource, result: ReconcileResult) -> bool:
        """Write status; on failure record the error and an error requeue."""
        try:
            await self._write_status(resource, result)
        except StoreError as e:
            logger.error(
                "Failed to update NLB status",
                extra={"resource": str(resource.key), "error": str(e)},
            )
            result.error = e
            result.directive = RetryDirective.after(self._config.error_requeue_seconds)
            return False
        return True

    async def _persist_best_effort(self, resource: NLBResource, result: ReconcileResult) -> None:
        try:
            await self._write_status(resource, result)
        except StoreError as e:
            logger.warning(
                "Failed to update NLB status, continuing",
                extra={"resource": str(resource.key), "error": str(e)},
            )

    def _emit(self, resource: NLBResource, event_type: str, reason: str, message: str) -> None:
        """Emit a user-facing event; failures never affect the pass."""
        try:
            self._recorder.record(resource, event_type, reason, message)
        except Exception as e:
            logger.warning(
                "Failed to emit event",
                extra={"resource": str(resource.key), "reason": reason, "error": str(e)},
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "resource": str(result.key),
            "path": result.path.value,
            "directive": str(result.directive),
            "duration_seconds": round(result.duration_seconds, 3),
            "operations": len(result.operations),
        }

        if result.error is not None and not isinstance(result.error, OperationCancelledError):
            extra["error"] = str(result.error)
            extra["error_kind"] = result.error_kind
            logger.error("Reconciliation failed", extra=extra)
        elif result.directive.kind == RequeueKind.IMMEDIATE:
            logger.warning("Reconciliation requires immediate requeue", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
