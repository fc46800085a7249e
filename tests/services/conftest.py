"""Service test fixtures — orchestrator wired to a scripted model service.

Invariants:
    - No real network: every orchestrator talks to a FakeModelService
    - Retry sleeps recorded, never awaited for real

Design Decisions:
    - make_orchestrator is a factory fixture: each test scripts its own responses
"""

import pytest

from turnloop.services.conversation_orchestrator import ConversationOrchestrator
from turnloop.services.retry_policy import RetryPolicy

from tests.services.mock_model import FakeModelService


@pytest.fixture
def retry_sleeps():
    return []


@pytest.fixture
def make_orchestrator(settings, retry_sleeps):
    """Factory: make_orchestrator(responses, **kwargs) -> (orchestrator, service)."""

    async def fake_sleep(seconds):
        retry_sleeps.append(seconds)

    def _make(responses, settings_override=None, **kwargs):
        effective = settings
        if settings_override:
            effective = settings.model_copy(update=settings_override)
        service = FakeModelService(responses)
        orchestrator = ConversationOrchestrator(
            service,
            settings=effective,
            retry_policy=RetryPolicy(
                effective.backoff_policy(), sleep=fake_sleep, rand=lambda: 0.0,
            ),
            **kwargs,
        )
        return orchestrator, service

    return _make
