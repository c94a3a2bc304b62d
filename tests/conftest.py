from __future__ import annotations

import httpx
import pytest

from market_copilot.agents.progress import ProgressEstimator
from market_copilot.llm.clients import BackendClient


@pytest.fixture
def make_client():
    """Build a BackendClient whose requests go to an in-process handler."""

    def factory(handler) -> BackendClient:
        return BackendClient(base_url="http://backend.test", timeout=5, transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def fast_progress():
    """Progress estimator that completes in a few milliseconds."""

    def factory() -> ProgressEstimator:
        return ProgressEstimator(tick_seconds=0.001, min_stage_seconds=0)

    return factory
