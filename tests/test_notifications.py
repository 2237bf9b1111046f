"""
Test user notification collaborators
"""
from unittest.mock import AsyncMock

import aiohttp
import pytest

from circuit_breaker import CircuitState
from deployment import CollaboratorError, LogNotifier, WebhookNotifier


@pytest.mark.asyncio
async def test_log_notifier_records_messages():
    notifier = LogNotifier()

    await notifier.notify({"staff", "beta"}, "Features disabled", "deploy_1")
    await notifier.notify([], "Everyone")

    assert notifier.sent[0]["audience"] == ["beta", "staff"]
    assert notifier.sent[0]["deploymentId"] == "deploy_1"
    assert notifier.sent[1]["audience"] == []


@pytest.mark.asyncio
async def test_webhook_posts_payload():
    notifier = WebhookNotifier("http://hooks.local/rollouts")
    notifier._post = AsyncMock()

    await notifier.notify(["beta"], "Features disabled", "deploy_1")

    payload = notifier._post.await_args.args[0]
    assert payload["audience"] == ["beta"]
    assert payload["message"] == "Features disabled"
    assert payload["deploymentId"] == "deploy_1"
    await notifier.close()


@pytest.mark.asyncio
async def test_webhook_failure_raises_collaborator_error():
    notifier = WebhookNotifier("http://hooks.local/rollouts", failure_threshold=2)
    notifier._post = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

    for _ in range(2):
        with pytest.raises(CollaboratorError) as exc_info:
            await notifier.notify(["beta"], "Features disabled", "deploy_1")
        assert exc_info.value.collaborator == "notification"

    assert notifier.breaker.state == CircuitState.OPEN

    # Open circuit fails fast without posting
    with pytest.raises(CollaboratorError):
        await notifier.notify(["beta"], "Features disabled", "deploy_1")
    assert notifier._post.await_count == 2
    await notifier.close()
