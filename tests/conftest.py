"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for nlb_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from nlb_mock import MockEventRecorder, MockNLBApi, MockResourceStore  # noqa: E402

from nlb_operator.config import Config  # noqa: E402
from nlb_operator.provider import NLBClient  # noqa: E402
from nlb_operator.reconciler import NLBReconciler  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Configuration with millisecond poll intervals."""
    return Config(
        region_id="cn-hangzhou",
        job_poll_interval_seconds=0.01,
        job_timeout_seconds=0.5,
        active_poll_interval_seconds=0.01,
        active_timeout_seconds=0.5,
    )


@pytest.fixture
def api() -> MockNLBApi:
    return MockNLBApi()


@pytest.fixture
def store() -> MockResourceStore:
    return MockResourceStore()


@pytest.fixture
def recorder() -> MockEventRecorder:
    return MockEventRecorder()


@pytest.fixture
def client(api: MockNLBApi, config: Config) -> NLBClient:
    return NLBClient(api, config)


@pytest.fixture
def reconciler(
    client: NLBClient,
    store: MockResourceStore,
    recorder: MockEventRecorder,
    config: Config,
) -> NLBReconciler:
    return NLBReconciler(client, store, recorder, config)
