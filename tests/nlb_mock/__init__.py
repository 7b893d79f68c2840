"""NLB API Mock for Integration Testing.

This module provides in-memory stand-ins for the provider API and the
desired-state store so the convergence controller can be tested end to end
without a cluster or cloud account.

Key Features:
- NLB SDK client simulation behind the real Provider Client
- Load balancer lifecycle simulation (Provisioning -> Active)
- Asynchronous job simulation (Processing -> Succeeded/Failed)
- Deletion protection and listener-before-load-balancer ordering enforced
- Error injection by action and provider error code
- Resource store with status history, finalizers and failure injection

Usage:
    from nlb_mock import MockNLBApi, MockResourceStore, MockEventRecorder

    api = MockNLBApi()
    client = NLBClient(api, config)
    reconciler = NLBReconciler(client, MockResourceStore(), MockEventRecorder(), config)
    result = await reconciler.reconcile(resource)

    assert api.count("CreateLoadBalancer") == 1
"""

from .api import MockCall, MockJob, MockListener, MockLoadBalancer, MockNLBApi, tea_error
from .events import MockEventRecorder, RecordedEvent
from .resources import make_listener, make_resource, make_spec
from .store import MockResourceStore

__all__ = [
    "MockCall",
    "MockEventRecorder",
    "MockJob",
    "MockListener",
    "MockLoadBalancer",
    "MockNLBApi",
    "MockResourceStore",
    "RecordedEvent",
    "make_listener",
    "make_resource",
    "make_spec",
    "tea_error",
]
