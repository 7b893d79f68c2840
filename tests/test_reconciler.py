"""Tests for the convergence controller.

These run the real Provider Client against MockNLBApi, so every provider
failure goes through the same error classification as in production.
"""

from __future__ import annotations

import asyncio
from unittest import mock

import pytest
from nlb_mock import (
    MockEventRecorder,
    MockNLBApi,
    MockResourceStore,
    make_listener,
    make_resource,
    make_spec,
)

from nlb_operator.conditions import (
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
    get_condition,
)
from nlb_operator.config import Config
from nlb_operator.errors import FatalError, OperationCancelledError, PollTimeoutError
from nlb_operator.models import (
    LB_STATUS_ACTIVE,
    LB_STATUS_DELETING,
    LB_STATUS_PROVISIONING,
    NLB_FINALIZER,
    ListenerSpec,
    ListenerStatus,
)
from nlb_operator.provider import NLBClient
from nlb_operator.reconciler import (
    NLBReconciler,
    ReconcilePath,
    RequeueKind,
    RetryDirective,
    diff_listeners,
)
from nlb_operator.store import StoreError

DELETED_AT = "2024-01-01T00:00:00Z"


def _listener(port: int) -> ListenerSpec:
    return ListenerSpec.model_validate(make_listener(port))


def _active_status(load_balancer_id: str, listeners: dict[int, str] | None = None) -> dict:
    return {
        "loadBalancerId": load_balancer_id,
        "dnsName": f"{load_balancer_id}.example.com",
        "loadBalancerStatus": LB_STATUS_ACTIVE,
        "listenerStatus": [
            {"listenerPort": port, "listenerId": listener_id, "status": "Active"}
            for port, listener_id in (listeners or {}).items()
        ],
    }


class TestRetryDirective:
    """Tests for the retry directive vocabulary."""

    def test_string_forms(self) -> None:
        """Directives render as none, requeue-immediate and requeue-after(N)."""
        assert str(RetryDirective.none()) == "none"
        assert str(RetryDirective.immediate()) == "requeue-immediate"
        assert str(RetryDirective.after(30)) == "requeue-after(30s)"
        assert str(RetryDirective.after(0.5)) == "requeue-after(0.5s)"

    def test_after_stores_delay(self) -> None:
        directive = RetryDirective.after(300)
        assert directive.kind == RequeueKind.AFTER
        assert directive.delay_seconds == 300.0


class TestListenerDiff:
    """Tests for the port-keyed listener diff."""

    def test_keeps_existing_and_creates_missing(self) -> None:
        """Desired {80, 443} with {80: lsn-1} keeps lsn-1 and creates 443."""
        diff = diff_listeners(
            [_listener(80), _listener(443)],
            [ListenerStatus(listener_port=80, listener_id="lsn-1")],
        )

        assert diff.existing == {80: "lsn-1"}
        assert [listener.listener_port for listener in diff.to_create] == [443]
        assert diff.stale == []

    def test_drops_stale_records(self) -> None:
        """Desired {80} with {80: lsn-1, 443: lsn-2} reports 443 as stale."""
        diff = diff_listeners(
            [_listener(80)],
            [
                ListenerStatus(listener_port=80, listener_id="lsn-1"),
                ListenerStatus(listener_port=443, listener_id="lsn-2"),
            ],
        )

        assert diff.existing == {80: "lsn-1"}
        assert diff.to_create == []
        assert [record.listener_id for record in diff.stale] == ["lsn-2"]

    def test_record_without_id_is_recreated(self) -> None:
        diff = diff_listeners([_listener(80)], [ListenerStatus(listener_port=80)])

        assert diff.existing == {}
        assert [listener.listener_port for listener in diff.to_create] == [80]

    def test_changed_fields_are_not_diffed(self) -> None:
        """Only presence by port matters; protocol changes are not updates."""
        desired = ListenerSpec.model_validate(make_listener(80, protocol="UDP"))
        diff = diff_listeners([desired], [ListenerStatus(listener_port=80, listener_id="lsn-1")])

        assert diff.to_create == []
        assert diff.existing == {80: "lsn-1"}


class TestCreatePath:
    """Tests for the Active state with no recorded load balancer."""

    @pytest.mark.asyncio
    async def test_scenario_two_zones_no_listeners(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        """Two zones and no listeners converge to an Active, Ready load balancer."""
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        assert result.success
        assert result.path == ReconcilePath.CREATE
        assert result.directive == RetryDirective.after(config.steady_requeue_seconds)

        status = store.stored(resource.key).status
        assert status.load_balancer_id
        assert status.load_balancer_id in api.load_balancers
        assert status.load_balancer_status == LB_STATUS_ACTIVE
        assert status.dns_name
        assert status.listener_status == []

        ready = get_condition(status, CONDITION_READY)
        assert ready is not None
        assert ready.status == STATUS_TRUE
        assert ready.reason == REASON_RECONCILE_SUCCESS

    @pytest.mark.asyncio
    async def test_persists_id_before_waiting(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
    ) -> None:
        """The first status write carries the id with Provisioning status."""
        resource = store.put(make_resource())

        await reconciler.reconcile(resource)

        first = store.status_writes[0]
        assert first.load_balancer_id
        assert first.load_balancer_status == LB_STATUS_PROVISIONING
        provisioning = get_condition(first, CONDITION_READY)
        assert provisioning.status == STATUS_FALSE
        assert provisioning.reason == REASON_PROVISIONING

    @pytest.mark.asyncio
    async def test_adds_finalizer_before_create(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        assert store.finalizer_ops == [("add", NLB_FINALIZER)]
        assert store.stored(resource.key).has_finalizer()
        assert result.resource.has_finalizer()
        assert api.count("CreateLoadBalancer") == 1

    @pytest.mark.asyncio
    async def test_finalizer_failure_blocks_create(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        """Nothing is created at the provider until the guard is in place."""
        resource = store.put(make_resource())
        store.fail("add_finalizer")

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, StoreError)
        assert result.error_kind == "store"
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_creates_listeners_in_spec_order(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        spec = make_spec(listeners=[make_listener(443), make_listener(80)])
        resource = store.put(make_resource(spec=spec))

        result = await reconciler.reconcile(resource)

        assert result.success
        records = store.stored(resource.key).status.listener_status
        assert [record.listener_port for record in records] == [443, 80]
        assert all(record.listener_id in api.listeners for record in records)
        assert all(record.status == "Active" for record in records)

    @pytest.mark.asyncio
    async def test_create_emits_events(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        recorder: MockEventRecorder,
    ) -> None:
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        load_balancer_id = result.resource.status.load_balancer_id
        messages = [e.message for e in recorder.of_type("Normal")]
        assert f"Successfully created NLB: {load_balancer_id}" in messages
        assert "Successfully reconciled NLB" in messages
        assert recorder.of_type("Warning") == []

    @pytest.mark.asyncio
    async def test_input_resource_not_modified(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
    ) -> None:
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        assert resource.status.load_balancer_id == ""
        assert resource.metadata.finalizers == []
        assert result.resource is not resource
        assert result.resource.status.load_balancer_id

    @pytest.mark.asyncio
    async def test_create_rejected(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        recorder: MockEventRecorder,
        config: Config,
    ) -> None:
        """A rejected create surfaces an Error condition and a Warning event."""
        resource = store.put(make_resource())
        api.inject_error("CreateLoadBalancer", "Forbidden.RAM", "not authorized", 403)

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, FatalError)
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)

        status = store.stored(resource.key).status
        assert status.load_balancer_id == ""
        error = get_condition(status, CONDITION_ERROR)
        assert error.status == STATUS_TRUE
        assert error.reason == REASON_RECONCILE_ERROR
        assert error.message.startswith("Failed to create NLB: ")
        assert "Forbidden.RAM" in error.message

        warnings = recorder.of_type("Warning")
        assert len(warnings) == 1
        assert warnings[0].reason == REASON_RECONCILE_ERROR
        assert warnings[0].message == error.message

    @pytest.mark.asyncio
    async def test_wait_timeout_resumes_from_verify(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        """A load balancer stuck provisioning is verified, not recreated, next pass."""
        api.polls_until_active = 10_000
        resource = store.put(make_resource())

        first = await reconciler.reconcile(resource)

        assert isinstance(first.error, PollTimeoutError)
        assert first.error_kind == "timeout"
        assert first.directive == RetryDirective.after(config.error_requeue_seconds)
        stored = store.stored(resource.key)
        assert stored.status.load_balancer_id
        assert "Failed to wait for NLB to be active" in get_condition(
            stored.status, CONDITION_ERROR
        ).message

        api.load_balancers[stored.status.load_balancer_id].polls_until_active = 0
        second = await reconciler.reconcile(await store.get(resource.key))

        assert second.success
        assert second.path == ReconcilePath.VERIFY
        assert api.count("CreateLoadBalancer") == 1


class TestVerifyPath:
    """Tests for the Active state with a recorded load balancer."""

    @pytest.mark.asyncio
    async def test_second_pass_never_creates(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """Reconciling twice issues exactly one create call."""
        resource = store.put(make_resource())

        await reconciler.reconcile(resource)
        result = await reconciler.reconcile(await store.get(resource.key))

        assert result.success
        assert result.path == ReconcilePath.VERIFY
        assert api.count("CreateLoadBalancer") == 1
        assert api.count("GetLoadBalancerAttribute") >= 2

    @pytest.mark.asyncio
    async def test_unchanged_passes_skip_status_write(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
    ) -> None:
        """Steady-state passes keep lastTransitionTime and write no status."""
        resource = store.put(make_resource(spec=make_spec(listeners=[make_listener(80)])))
        with mock.patch("nlb_operator.conditions.now_rfc3339", return_value="2024-01-01T00:00:00Z"):
            await reconciler.reconcile(resource)
        writes = len(store.status_writes)

        with mock.patch("nlb_operator.conditions.now_rfc3339", return_value="2024-01-01T00:05:00Z"):
            first = await reconciler.reconcile(await store.get(resource.key))
            second = await reconciler.reconcile(first.resource)

        assert first.success
        assert second.success
        assert second.path == ReconcilePath.VERIFY
        assert len(store.status_writes) == writes
        for status in (store.stored(resource.key).status, second.resource.status):
            ready = get_condition(status, CONDITION_READY)
            assert ready.status == STATUS_TRUE
            assert ready.last_transition_time == "2024-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_scenario_add_listener_to_active(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """Adding port 80 to an Active load balancer records one listener."""
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(listeners=[make_listener(80)]),
                status=_active_status(load_balancer_id),
                finalizers=[NLB_FINALIZER],
            )
        )

        result = await reconciler.reconcile(resource)

        assert result.success
        status = store.stored(resource.key).status
        assert len(status.listener_status) == 1
        assert status.listener_status[0].listener_port == 80
        assert status.listener_status[0].listener_id
        assert get_condition(status, CONDITION_READY).status == STATUS_TRUE
        assert api.count("CreateLoadBalancer") == 0

    @pytest.mark.asyncio
    async def test_existing_listener_id_preserved(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(listeners=[make_listener(80), make_listener(443)]),
                status=_active_status(load_balancer_id, {80: "lsn-1"}),
                finalizers=[NLB_FINALIZER],
            )
        )

        await reconciler.reconcile(resource)

        records = store.stored(resource.key).status.listener_status
        assert records[0].listener_port == 80
        assert records[0].listener_id == "lsn-1"
        assert records[1].listener_port == 443
        assert records[1].listener_id not in ("", "lsn-1")
        assert api.count("CreateListener") == 1

    @pytest.mark.asyncio
    async def test_dropped_port_not_deleted(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """A port removed from the spec leaves status but keeps its listener."""
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(listeners=[make_listener(80)]),
                status=_active_status(load_balancer_id, {80: "lsn-1", 443: "lsn-2"}),
                finalizers=[NLB_FINALIZER],
            )
        )

        await reconciler.reconcile(resource)

        records = store.stored(resource.key).status.listener_status
        assert [(r.listener_port, r.listener_id) for r in records] == [(80, "lsn-1")]
        assert api.count("DeleteListener") == 0
        assert api.count("CreateListener") == 0

    @pytest.mark.asyncio
    async def test_joins_security_groups(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(securityGroupIds=["sg-1", "sg-2"]),
                status=_active_status(load_balancer_id),
                finalizers=[NLB_FINALIZER],
            )
        )

        result = await reconciler.reconcile(resource)

        assert result.success
        assert api.load_balancers[load_balancer_id].security_group_ids == ["sg-1", "sg-2"]
        assert result.operations == ["GetLoadBalancerAttributes", "JoinSecurityGroups"]

    @pytest.mark.asyncio
    async def test_no_security_groups_no_call(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(status=_active_status(load_balancer_id), finalizers=[NLB_FINALIZER])
        )

        await reconciler.reconcile(resource)

        assert api.count("LoadBalancerJoinSecurityGroup") == 0

    @pytest.mark.asyncio
    async def test_security_group_failure(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(securityGroupIds=["sg-1"]),
                status=_active_status(load_balancer_id),
                finalizers=[NLB_FINALIZER],
            )
        )
        api.inject_error("LoadBalancerJoinSecurityGroup", "Throttling.User", status_code=400)

        result = await reconciler.reconcile(resource)

        assert result.error_kind == "transient"
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)
        error = get_condition(store.stored(resource.key).status, CONDITION_ERROR)
        assert error.message.startswith("Failed to handle security groups: ")

    @pytest.mark.asyncio
    async def test_partial_listener_failure_keeps_created_ids(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """Ids created before a failing listener are kept for the next pass."""
        load_balancer_id = api.add_load_balancer()
        # Port 443 is taken outside the operator, so its create is rejected
        api.add_listener(load_balancer_id, 443)
        resource = store.put(
            make_resource(
                spec=make_spec(
                    listeners=[make_listener(80), make_listener(443), make_listener(8080)]
                ),
                status=_active_status(load_balancer_id),
                finalizers=[NLB_FINALIZER],
            )
        )

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, FatalError)
        status = store.stored(resource.key).status
        assert [r.listener_port for r in status.listener_status] == [80]
        assert status.listener_status[0].listener_id in api.listeners
        assert "Failed to handle listeners" in get_condition(status, CONDITION_ERROR).message
        # 8080 is not attempted after the failure
        assert api.count("CreateListener") == 2

    @pytest.mark.asyncio
    async def test_success_clears_error_condition(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(
                spec=make_spec(listeners=[make_listener(80)]),
                status=_active_status(load_balancer_id),
                finalizers=[NLB_FINALIZER],
            )
        )
        api.inject_error("CreateListener", "InvalidParam.ServerGroupId")

        failed = await reconciler.reconcile(resource)
        assert not failed.success

        recovered = await reconciler.reconcile(await store.get(resource.key))

        assert recovered.success
        status = store.stored(resource.key).status
        error = get_condition(status, CONDITION_ERROR)
        assert error.status == STATUS_FALSE
        assert error.reason == REASON_RECONCILE_SUCCESS
        assert get_condition(status, CONDITION_READY).status == STATUS_TRUE
        assert [c.type for c in status.conditions].count(CONDITION_ERROR) == 1

    @pytest.mark.asyncio
    async def test_final_status_write_failure(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(status=_active_status(load_balancer_id), finalizers=[NLB_FINALIZER])
        )
        store.fail("update_status", status=409)

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, StoreError)
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)

    @pytest.mark.asyncio
    async def test_event_failure_does_not_affect_outcome(
        self,
        client: NLBClient,
        store: MockResourceStore,
        config: Config,
    ) -> None:
        reconciler = NLBReconciler(client, store, MockEventRecorder(fail=True), config)
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        assert result.success
        assert result.directive == RetryDirective.after(config.steady_requeue_seconds)


class TestDrift:
    """Tests for external deletion of the recorded load balancer."""

    @pytest.mark.asyncio
    async def test_missing_load_balancer_is_forgotten(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """NotFound on verify clears provider state and requeues immediately."""
        resource = store.put(
            make_resource(
                status=_active_status("nlb-gone", {80: "lsn-gone"}),
                finalizers=[NLB_FINALIZER],
            )
        )

        result = await reconciler.reconcile(resource)

        assert result.success
        assert result.path == ReconcilePath.DRIFT
        assert result.directive == RetryDirective.immediate()
        status = store.stored(resource.key).status
        assert status.load_balancer_id == ""
        assert status.dns_name == ""
        assert status.load_balancer_status == ""
        assert status.listener_status == []
        assert api.count("CreateLoadBalancer") == 0

    @pytest.mark.asyncio
    async def test_next_pass_recreates(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        resource = store.put(
            make_resource(status=_active_status("nlb-gone"), finalizers=[NLB_FINALIZER])
        )

        await reconciler.reconcile(resource)
        result = await reconciler.reconcile(await store.get(resource.key))

        assert result.path == ReconcilePath.CREATE
        assert result.success
        assert store.stored(resource.key).status.load_balancer_id != "nlb-gone"
        assert api.count("CreateLoadBalancer") == 1

    @pytest.mark.asyncio
    async def test_transient_get_failure_is_not_drift(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = store.put(
            make_resource(status=_active_status(load_balancer_id), finalizers=[NLB_FINALIZER])
        )
        api.inject_error("GetLoadBalancerAttribute", "ServiceUnavailable", status_code=503)

        result = await reconciler.reconcile(resource)

        assert result.error_kind == "transient"
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)
        assert store.stored(resource.key).status.load_balancer_id == load_balancer_id


class TestTerminating:
    """Tests for teardown behind the deletion guard."""

    def _terminating(
        self,
        store: MockResourceStore,
        status: dict,
        spec: dict | None = None,
    ):
        return store.put(
            make_resource(
                spec=spec,
                status=status,
                finalizers=[NLB_FINALIZER],
                deletion_timestamp=DELETED_AT,
            )
        )

    @pytest.mark.asyncio
    async def test_scenario_protected_with_listener(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        recorder: MockEventRecorder,
    ) -> None:
        """Protection disabled, listener then load balancer deleted, guard cleared."""
        load_balancer_id = api.add_load_balancer(deletion_protection=True)
        listener_id = api.add_listener(load_balancer_id, 80)
        resource = self._terminating(
            store,
            _active_status(load_balancer_id, {80: listener_id}),
            make_spec(listeners=[make_listener(80)], deletionProtection={"enabled": True}),
        )

        result = await reconciler.reconcile(resource)

        assert result.success
        assert result.path == ReconcilePath.DELETE
        assert result.directive == RetryDirective.none()

        protection_calls = api.calls_for("UpdateLoadBalancerProtection")
        assert len(protection_calls) == 1
        assert protection_calls[0].params["DeletionProtectionEnabled"] is False

        assert listener_id not in api.listeners
        assert load_balancer_id not in api.load_balancers

        actions = api.actions()
        assert actions.index("DeleteListener") < actions.index("DeleteLoadBalancer")

        assert ("remove", NLB_FINALIZER) in store.finalizer_ops
        assert store.stored(resource.key) is None
        assert not result.resource.has_finalizer()
        assert REASON_DELETION_SUCCESS in recorder.reasons()

    @pytest.mark.asyncio
    async def test_marks_deleting_first(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = self._terminating(store, _active_status(load_balancer_id))

        await reconciler.reconcile(resource)

        first = store.status_writes[0]
        assert first.load_balancer_status == LB_STATUS_DELETING
        ready = get_condition(first, CONDITION_READY)
        assert ready.status == STATUS_FALSE
        assert ready.reason == REASON_DELETING

    @pytest.mark.asyncio
    async def test_deleting_status_write_failure_continues(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """Cleanup proceeds when the Deleting status cannot be written."""
        load_balancer_id = api.add_load_balancer()
        resource = self._terminating(store, _active_status(load_balancer_id))
        store.fail("update_status")

        result = await reconciler.reconcile(resource)

        assert result.success
        assert load_balancer_id not in api.load_balancers
        assert store.stored(resource.key) is None

    @pytest.mark.asyncio
    async def test_deletion_is_reentrant(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        """A retry after a failed load balancer delete skips finished listeners."""
        load_balancer_id = api.add_load_balancer()
        listener_id = api.add_listener(load_balancer_id, 80)
        resource = self._terminating(store, _active_status(load_balancer_id, {80: listener_id}))
        api.inject_error("DeleteLoadBalancer", "SystemBusy", status_code=400)

        first = await reconciler.reconcile(resource)

        assert first.error_kind == "transient"
        assert first.directive == RetryDirective.after(config.error_requeue_seconds)
        stored = store.stored(resource.key)
        assert stored.has_finalizer()
        assert stored.status.listener_status == []
        assert stored.status.load_balancer_id == load_balancer_id
        error = get_condition(stored.status, CONDITION_ERROR)
        assert error.reason == REASON_DELETION_ERROR
        assert error.message.startswith("Failed to delete NLB: ")

        second = await reconciler.reconcile(await store.get(resource.key))

        assert second.success
        assert second.directive == RetryDirective.none()
        assert api.count("DeleteListener") == 1
        assert load_balancer_id not in api.load_balancers
        assert store.stored(resource.key) is None

    @pytest.mark.asyncio
    async def test_already_deleted_listener_is_success(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = self._terminating(store, _active_status(load_balancer_id, {80: "lsn-gone"}))

        result = await reconciler.reconcile(resource)

        assert result.success
        assert api.count("DeleteListener") == 1
        assert store.stored(resource.key) is None

    @pytest.mark.asyncio
    async def test_already_deleted_load_balancer_is_success(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        resource = self._terminating(store, _active_status("nlb-gone"))

        result = await reconciler.reconcile(resource)

        assert result.success
        assert api.count("DeleteLoadBalancer") == 0
        assert store.stored(resource.key) is None

    @pytest.mark.asyncio
    async def test_listener_failure_keeps_guard(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        recorder: MockEventRecorder,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        listener_id = api.add_listener(load_balancer_id, 80)
        resource = self._terminating(store, _active_status(load_balancer_id, {80: listener_id}))
        api.fail_jobs_for("DeleteListener")

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, FatalError)
        assert "failed" in str(result.error)
        stored = store.stored(resource.key)
        assert stored.has_finalizer()
        assert [r.listener_id for r in stored.status.listener_status] == [listener_id]
        assert api.count("DeleteLoadBalancer") == 0
        assert get_condition(stored.status, CONDITION_ERROR).message.startswith(
            "Failed to delete listener: "
        )
        assert [e.reason for e in recorder.of_type("Warning")] == [REASON_DELETION_ERROR]

    @pytest.mark.asyncio
    async def test_protection_disable_failure_still_deletes(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        """A failed protection toggle is logged and the delete attempted anyway."""
        load_balancer_id = api.add_load_balancer(deletion_protection=False)
        resource = self._terminating(store, _active_status(load_balancer_id))
        api.inject_error("UpdateLoadBalancerProtection", "Throttling", status_code=400)

        result = await reconciler.reconcile(resource)

        assert result.success
        assert api.count("DeleteLoadBalancer") == 1
        assert load_balancer_id not in api.load_balancers

    @pytest.mark.asyncio
    async def test_protection_still_enabled_surfaces_on_delete(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        load_balancer_id = api.add_load_balancer(deletion_protection=True)
        resource = self._terminating(store, _active_status(load_balancer_id))
        api.inject_error("UpdateLoadBalancerProtection", "Throttling", status_code=400)

        result = await reconciler.reconcile(resource)

        assert result.error_kind == "fatal"
        assert "OperationDenied.DeletionProtectionEnabled" in str(result.error)
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)
        assert store.stored(resource.key).has_finalizer()

    @pytest.mark.asyncio
    async def test_nothing_provisioned_releases_guard(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        resource = self._terminating(store, {})

        result = await reconciler.reconcile(resource)

        assert result.success
        assert api.actions() == []
        assert store.stored(resource.key) is None

    @pytest.mark.asyncio
    async def test_without_guard_is_skipped(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
    ) -> None:
        resource = make_resource(status=_active_status("nlb-1"), deletion_timestamp=DELETED_AT)

        result = await reconciler.reconcile(resource)

        assert result.path == ReconcilePath.SKIPPED
        assert result.directive == RetryDirective.none()
        assert api.calls == []
        assert store.status_writes == []

    @pytest.mark.asyncio
    async def test_guard_release_failure_requeues(
        self,
        reconciler: NLBReconciler,
        store: MockResourceStore,
        api: MockNLBApi,
        config: Config,
    ) -> None:
        load_balancer_id = api.add_load_balancer()
        resource = self._terminating(store, _active_status(load_balancer_id))
        store.fail("remove_finalizer")

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, StoreError)
        assert result.directive == RetryDirective.after(config.error_requeue_seconds)
        assert load_balancer_id not in api.load_balancers
        assert store.stored(resource.key).has_finalizer()


class TestCancellation:
    """Tests for shutdown while a pass is waiting on the provider."""

    @pytest.mark.asyncio
    async def test_cancelled_wait_schedules_no_backoff(
        self,
        api: MockNLBApi,
        store: MockResourceStore,
        recorder: MockEventRecorder,
        config: Config,
    ) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()
        reconciler = NLBReconciler(NLBClient(api, config, cancel_event), store, recorder, config)
        resource = store.put(make_resource())

        result = await reconciler.reconcile(resource)

        assert isinstance(result.error, OperationCancelledError)
        assert result.error_kind == "cancelled"
        assert result.directive == RetryDirective.none()
        status = store.stored(resource.key).status
        # The id was persisted before the wait started
        assert status.load_balancer_id
        assert get_condition(status, CONDITION_ERROR) is None
        assert recorder.of_type("Warning") == []
