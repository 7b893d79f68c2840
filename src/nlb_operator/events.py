"""User-facing events for NLB resources.

Events are fire-and-forget: record() schedules the API call and returns.
A failed emission is logged and never reaches the reconciliation outcome.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Protocol

from kubernetes.client import CoreV1Api
from kubernetes.client.rest import ApiException

from .conditions import now_rfc3339
from .models import NLBResource

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

EVENT_SOURCE_COMPONENT = "nlb-operator"

# Event messages are capped by the API server
MAX_EVENT_MESSAGE_LENGTH = 1024


class EventRecorder(Protocol):
    def record(
        self, resource: NLBResource, event_type: str, reason: str, message: str
    ) -> None: ...


def build_event(
    resource: NLBResource, event_type: str, reason: str, message: str
) -> dict[str, Any]:
    """Build a core/v1 Event body for the resource."""
    timestamp = now_rfc3339()
    metadata = resource.metadata
    return {
        "apiVersion": "v1",
        "kind": "Event",
        "metadata": {
            "name": f"{metadata.name}.{secrets.token_hex(8)}",
            "namespace": metadata.namespace,
        },
        "involvedObject": {
            "apiVersion": resource.api_version,
            "kind": resource.kind,
            "name": metadata.name,
            "namespace": metadata.namespace,
            "uid": metadata.uid,
            "resourceVersion": metadata.resource_version,
        },
        "type": event_type,
        "reason": reason,
        "message": message[:MAX_EVENT_MESSAGE_LENGTH],
        "source": {"component": EVENT_SOURCE_COMPONENT},
        "firstTimestamp": timestamp,
        "lastTimestamp": timestamp,
        "count": 1,
    }


class KubernetesEventRecorder:
    """Posts events through CoreV1Api without waiting for the result."""

    def __init__(self, api: CoreV1Api) -> None:
        self._api = api

    def record(self, resource: NLBResource, event_type: str, reason: str, message: str) -> None:
        body = build_event(resource, event_type, reason, message)
        logger.info(
            "Event",
            extra={
                "resource": str(resource.key),
                "event_type": event_type,
                "reason": reason,
                "event_message": message,
            },
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._post(body)
            return
        loop.run_in_executor(None, self._post, body)

    def _post(self, body: dict[str, Any]) -> None:
        namespace = body["metadata"]["namespace"]
        try:
            self._api.create_namespaced_event(namespace, body)
        except ApiException as e:
            logger.warning(
                "Failed to emit event",
                extra={"reason": body["reason"], "status": e.status, "error": str(e.reason)},
            )
        except Exception as e:
            logger.warning(
                "Failed to emit event",
                extra={"reason": body["reason"], "error": str(e)},
            )
