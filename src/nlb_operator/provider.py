"""Provider Client for the network load balancer API.

A stateless facade over the official NLB SDK client. Each operation issues
one or more provider actions, normalizes failures into the taxonomy in
errors.py and, for operations that return a job handle, blocks on the
Job Waiter until the job settles.

The SDK client is blocking; calls are run in the default executor so the
event loop keeps serving other resources while a request is in flight.
The SDK is used without its retry options: retrying is the caller's
decision, expressed as a requeue.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from alibabacloud_nlb20220430 import models as nlb_models
from alibabacloud_nlb20220430.client import Client as NLBSdkClient
from alibabacloud_tea_openapi import models as open_api_models

from .audit import OPERATOR_VERSION
from .config import Config
from .errors import FatalError, NotFoundError, classify_error
from .models import LB_STATUS_ACTIVE, ListenerSpec, NLBSpec
from .security import AccessKeyCredential
from .waiter import poll_until

logger = logging.getLogger(__name__)

NLB_API_VERSION = "2022-04-30"

JOB_STATUS_SUCCEEDED = "Succeeded"
JOB_STATUS_FAILED = "Failed"


def build_openapi_config(
    config: Config, credential: AccessKeyCredential
) -> open_api_models.Config:
    """Build the SDK configuration from operator settings and credentials."""
    timeout_ms = config.request_timeout_seconds * 1000
    return open_api_models.Config(
        access_key_id=credential.access_key_id,
        access_key_secret=credential.access_key_secret,
        region_id=config.region_id,
        endpoint=config.resolved_endpoint,
        read_timeout=timeout_ms,
        connect_timeout=timeout_ms,
        user_agent=f"nlb-operator/{OPERATOR_VERSION}",
    )


def create_sdk_client(config: Config, credential: AccessKeyCredential) -> NLBSdkClient:
    """Create the NLB SDK client. Nothing is sent until the first call."""
    return NLBSdkClient(build_openapi_config(config, credential))


class NLBApi(Protocol):
    """The subset of the NLB SDK client used by NLBClient."""

    def create_load_balancer(self, request: nlb_models.CreateLoadBalancerRequest) -> Any: ...

    def get_load_balancer_attribute(
        self, request: nlb_models.GetLoadBalancerAttributeRequest
    ) -> Any: ...

    def update_load_balancer_protection(
        self, request: nlb_models.UpdateLoadBalancerProtectionRequest
    ) -> Any: ...

    def delete_load_balancer(self, request: nlb_models.DeleteLoadBalancerRequest) -> Any: ...

    def load_balancer_join_security_group(
        self, request: nlb_models.LoadBalancerJoinSecurityGroupRequest
    ) -> Any: ...

    def create_listener(self, request: nlb_models.CreateListenerRequest) -> Any: ...

    def delete_listener(self, request: nlb_models.DeleteListenerRequest) -> Any: ...

    def get_job_status(self, request: nlb_models.GetJobStatusRequest) -> Any: ...


@dataclass
class LoadBalancerAttributes:
    """Live attributes of one load balancer, as reported by the provider."""

    load_balancer_id: str
    dns_name: str = ""
    status: str = ""

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> LoadBalancerAttributes:
        return cls(
            load_balancer_id=str(payload.get("LoadBalancerId") or ""),
            dns_name=str(payload.get("DNSName") or ""),
            status=str(payload.get("LoadBalancerStatus") or ""),
        )


class ProviderClient(Protocol):
    """Operations the convergence controller needs from the provider."""

    async def create_load_balancer(self, spec: NLBSpec) -> str: ...

    async def get_load_balancer(self, load_balancer_id: str) -> LoadBalancerAttributes: ...

    async def wait_until_active(self, load_balancer_id: str) -> LoadBalancerAttributes: ...

    async def delete_load_balancer(self, load_balancer_id: str) -> None: ...

    async def update_deletion_protection(
        self, load_balancer_id: str, enabled: bool, reason: str = ""
    ) -> None: ...

    async def join_security_groups(
        self, load_balancer_id: str, security_group_ids: list[str]
    ) -> None: ...

    async def create_listener(self, load_balancer_id: str, listener: ListenerSpec) -> str: ...

    async def delete_listener(self, listener_id: str) -> None: ...

    async def get_job_status(self, job_id: str) -> str: ...


class NLBClient:
    """Provider Client backed by the NLB SDK.

    Args:
        api: NLB SDK client (create_sdk_client() in production).
        config: Supplies the region and the Job Waiter intervals and ceilings.
        cancel_event: Set on shutdown; aborts any wait in progress.
    """

    def __init__(
        self,
        api: NLBApi,
        config: Config,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._api = api
        self._config = config
        self._cancel_event = cancel_event

    async def _invoke(
        self, operation: str, method: Callable[[Any], Any], request: Any
    ) -> dict[str, Any]:
        """Run one SDK call in the executor and return the response body as a map."""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, functools.partial(method, request))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise classify_error(e, operation) from e

        body = getattr(response, "body", None)
        if body is None:
            return {}
        return body.to_map()

    def _with_region(self, params: dict[str, Any]) -> dict[str, Any]:
        return {**params, "RegionId": self._config.region_id}

    # -------------------------------------------------------------------------
    # Load balancer
    # -------------------------------------------------------------------------

    async def create_load_balancer(self, spec: NLBSpec) -> str:
        """Create a load balancer and return its provider id."""
        request = nlb_models.CreateLoadBalancerRequest().from_map(
            self._with_region(spec.to_create_params())
        )
        payload = await self._invoke(
            "CreateLoadBalancer", self._api.create_load_balancer, request
        )

        load_balancer_id = payload.get("LoadbalancerId")
        if not load_balancer_id:
            raise FatalError("invalid response from CreateLoadBalancer: no load balancer id")

        logger.info(
            "Created load balancer",
            extra={"load_balancer_id": load_balancer_id, "request_id": payload.get("RequestId")},
        )
        return str(load_balancer_id)

    async def get_load_balancer(self, load_balancer_id: str) -> LoadBalancerAttributes:
        """Fetch live attributes.

        Raises:
            NotFoundError: If the load balancer does not exist.
        """
        request = nlb_models.GetLoadBalancerAttributeRequest().from_map(
            self._with_region({"LoadBalancerId": load_balancer_id})
        )
        payload = await self._invoke(
            "GetLoadBalancerAttribute", self._api.get_load_balancer_attribute, request
        )
        attributes = LoadBalancerAttributes.from_response(payload)
        if not attributes.load_balancer_id:
            attributes.load_balancer_id = load_balancer_id
        return attributes

    async def wait_until_active(self, load_balancer_id: str) -> LoadBalancerAttributes:
        """Poll until the load balancer reports Active.

        Raises:
            NotFoundError: If the load balancer disappears during the wait.
            PollTimeoutError: If it is not active within the ceiling.
        """

        async def check() -> LoadBalancerAttributes | None:
            attributes = await self.get_load_balancer(load_balancer_id)
            if attributes.status == LB_STATUS_ACTIVE:
                return attributes
            logger.debug(
                "Waiting for load balancer to become active",
                extra={"load_balancer_id": load_balancer_id, "status": attributes.status},
            )
            return None

        return await poll_until(
            check,
            self._config.active_poll_interval_seconds,
            self._config.active_timeout_seconds,
            f"load balancer {load_balancer_id} to become active",
            self._cancel_event,
        )

    async def update_deletion_protection(
        self, load_balancer_id: str, enabled: bool, reason: str = ""
    ) -> None:
        params: dict[str, Any] = {
            "LoadBalancerId": load_balancer_id,
            "DeletionProtectionEnabled": enabled,
        }
        if reason:
            params["DeletionProtectionReason"] = reason
        request = nlb_models.UpdateLoadBalancerProtectionRequest().from_map(
            self._with_region(params)
        )
        await self._invoke(
            "UpdateLoadBalancerProtection", self._api.update_load_balancer_protection, request
        )

    async def delete_load_balancer(self, load_balancer_id: str) -> None:
        """Delete a load balancer, treating absence as success.

        Protocol: look it up (absent means done), disable deletion protection
        (absent means done, other failures are logged and the delete is
        attempted anyway), delete (absent means done), wait for the job.
        """
        try:
            await self.get_load_balancer(load_balancer_id)
        except NotFoundError:
            logger.info(
                "Load balancer not found, assuming already deleted",
                extra={"load_balancer_id": load_balancer_id},
            )
            return
        except Exception as e:
            logger.warning(
                "Failed to check load balancer existence, deleting anyway",
                extra={"load_balancer_id": load_balancer_id, "error": str(e)},
            )

        try:
            await self.update_deletion_protection(load_balancer_id, False)
        except NotFoundError:
            logger.info(
                "Load balancer not found when disabling protection, assuming already deleted",
                extra={"load_balancer_id": load_balancer_id},
            )
            return
        except Exception as e:
            logger.warning(
                "Failed to disable deletion protection, deleting anyway",
                extra={"load_balancer_id": load_balancer_id, "error": str(e)},
            )

        request = nlb_models.DeleteLoadBalancerRequest().from_map(
            self._with_region({"LoadBalancerId": load_balancer_id})
        )
        try:
            payload = await self._invoke(
                "DeleteLoadBalancer", self._api.delete_load_balancer, request
            )
        except NotFoundError:
            logger.info(
                "Load balancer not found, assuming already deleted",
                extra={"load_balancer_id": load_balancer_id},
            )
            return

        logger.info(
            "Deleted load balancer",
            extra={"load_balancer_id": load_balancer_id, "request_id": payload.get("RequestId")},
        )
        if payload.get("JobId"):
            await self.wait_for_job(str(payload["JobId"]))

    async def join_security_groups(
        self, load_balancer_id: str, security_group_ids: list[str]
    ) -> None:
        """Join the load balancer to security groups; an empty list is a no-op."""
        if not security_group_ids:
            return

        request = nlb_models.LoadBalancerJoinSecurityGroupRequest().from_map(
            self._with_region(
                {"LoadBalancerId": load_balancer_id, "SecurityGroupIds": list(security_group_ids)}
            )
        )
        payload = await self._invoke(
            "LoadBalancerJoinSecurityGroup", self._api.load_balancer_join_security_group, request
        )
        if payload.get("JobId"):
            await self.wait_for_job(str(payload["JobId"]))

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    async def create_listener(self, load_balancer_id: str, listener: ListenerSpec) -> str:
        request = nlb_models.CreateListenerRequest().from_map(
            self._with_region(listener.to_create_params(load_balancer_id))
        )
        payload = await self._invoke("CreateListener", self._api.create_listener, request)

        listener_id = payload.get("ListenerId")
        if not listener_id:
            raise FatalError("invalid response from CreateListener: no listener id")

        logger.info(
            "Created listener",
            extra={
                "load_balancer_id": load_balancer_id,
                "listener_id": listener_id,
                "listener_port": listener.listener_port,
            },
        )
        return str(listener_id)

    async def delete_listener(self, listener_id: str) -> None:
        """Delete a listener, treating absence as success."""
        request = nlb_models.DeleteListenerRequest().from_map(
            self._with_region({"ListenerId": listener_id})
        )
        try:
            payload = await self._invoke("DeleteListener", self._api.delete_listener, request)
        except NotFoundError:
            logger.info(
                "Listener not found, assuming already deleted",
                extra={"listener_id": listener_id},
            )
            return

        logger.info("Deleted listener", extra={"listener_id": listener_id})
        if payload.get("JobId"):
            await self.wait_for_job(str(payload["JobId"]))

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> str:
        request = nlb_models.GetJobStatusRequest().from_map({"JobId": job_id})
        payload = await self._invoke("GetJobStatus", self._api.get_job_status, request)
        return str(payload.get("Status") or "")

    async def wait_for_job(self, job_id: str) -> None:
        """Block until the job settles.

        Raises:
            FatalError: If the job failed.
            PollTimeoutError: If it is still running at the ceiling.
        """

        async def check() -> bool | None:
            status = await self.get_job_status(job_id)
            if status == JOB_STATUS_SUCCEEDED:
                return True
            if status == JOB_STATUS_FAILED:
                raise FatalError(f"job {job_id} failed")
            logger.debug("Job in progress", extra={"job_id": job_id, "status": status})
            return None

        await poll_until(
            check,
            self._config.job_poll_interval_seconds,
            self._config.job_timeout_seconds,
            f"job {job_id}",
            self._cancel_event,
        )
