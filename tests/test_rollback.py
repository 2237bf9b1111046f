"""
Test rollback plan execution
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from deployment import (
    CollaboratorError,
    DeploymentConfig,
    DeploymentStatus,
    FlagStatus,
    InvalidTransitionError,
    LogNotifier,
    NotFoundError,
    RollbackAction,
    RollbackExecutor,
    RollbackPlan,
    RollbackStep,
    RollbackTrigger,
)


def _create(store, flags, aggregator, deployment_id="deploy_1", features=("markdown", "voice"),
            target_groups=("beta",), go_live=True):
    config = DeploymentConfig.from_partial({
        "version": "2.0.0",
        "features": list(features),
        "rolloutPercentage": 30,
        "targetGroups": list(target_groups),
    })
    store.save(deployment_id, config)
    store.save_rollback_plan(deployment_id, RollbackPlan.build_default(deployment_id, config))

    if go_live:
        store.update_status(deployment_id, DeploymentStatus.ACTIVE)
        flags.checkpoint(deployment_id)
        for feature in config.features:
            flags.set_flag(feature, rollout_percentage=30, deployment_version=config.version)
        aggregator.register(deployment_id, config.version)
    return config


@pytest.fixture
def executor(store, flags, aggregator, cache, notifier):
    return RollbackExecutor(store, flags, aggregator, cache, notifier)


@pytest.mark.asyncio
async def test_executes_all_steps_in_order(executor, store, flags, aggregator, cache, notifier):
    _create(store, flags, aggregator)
    cache.set("chat-config", {"version": "2.0.0"})
    cache.set("feature-flags", ["markdown", "voice"])

    result = await executor.execute("deploy_1", "Checkout errors")

    assert result.success
    assert [s.step_id for s in result.steps] == [
        "disable_features", "revert_config", "clear_cache", "notify_users"
    ]
    assert result.trigger == RollbackTrigger.MANUAL
    assert result.reason == "Checkout errors"
    assert store.get_status("deploy_1") == DeploymentStatus.ROLLED_BACK

    # Checkpoint taken before the rollout held no flags
    assert flags.list_flags() == []
    assert cache.get("chat-config") is None
    assert cache.get("feature-flags") is None
    assert notifier.sent[0]["audience"] == ["beta"]
    assert notifier.sent[0]["deploymentId"] == "deploy_1"

    # Final metrics frozen and persisted
    assert not aggregator.is_tracking("deploy_1")
    assert store.get_metrics("deploy_1").status == DeploymentStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_stored_plan_template_not_stamped(executor, store, flags, aggregator):
    _create(store, flags, aggregator)

    await executor.execute("deploy_1", "Checkout errors")

    assert store.get_rollback_plan("deploy_1").reason == ""


@pytest.mark.asyncio
async def test_failing_step_does_not_stop_the_rest(store, flags, aggregator):
    _create(store, flags, aggregator)
    notifier = MagicMock()

    async def fail(*args, **kwargs):
        raise CollaboratorError("webhook down", "notification")
    notifier.notify = fail

    cache = MagicMock()
    cache.invalidate.side_effect = RuntimeError("redis gone")

    executor = RollbackExecutor(store, flags, aggregator, cache, notifier)
    result = await executor.execute("deploy_1", "Checkout errors")

    assert not result.success
    assert result.failed_steps == ["clear_cache", "notify_users"]
    assert "redis gone" in result.steps[2].error
    assert flags.get_flag("markdown") is None
    assert store.get_status("deploy_1") == DeploymentStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_steps_run_by_order_field(executor, store, flags, aggregator):
    config = _create(store, flags, aggregator)
    plan = RollbackPlan(
        deployment_id="deploy_1",
        version=config.version,
        steps=[
            RollbackStep("second", "", RollbackAction.CLEAR_CACHE, {"cacheKeys": []}, order=2),
            RollbackStep("first", "", RollbackAction.DISABLE_FEATURE, {"features": ["markdown"]}, order=1),
        ],
    )
    store.save_rollback_plan("deploy_1", plan)

    result = await executor.execute("deploy_1", "Reordered")

    assert [s.step_id for s in result.steps] == ["first", "second"]
    # Only the features named in the step are touched
    assert flags.get_flag("markdown").status == FlagStatus.DISABLED
    assert flags.get_flag("voice").status == FlagStatus.PERCENTAGE


@pytest.mark.asyncio
async def test_missing_plan_uses_default(executor, store, flags, aggregator):
    config = DeploymentConfig.from_partial({"version": "2.0.0", "features": ["markdown"]})
    store.save("deploy_1", config)

    result = await executor.execute("deploy_1", "No plan")

    assert len(result.steps) == 4
    assert store.get_status("deploy_1") == DeploymentStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_planned_deployment_rollback_without_checkpoint(executor, store, flags, aggregator):
    _create(store, flags, aggregator, go_live=False)
    flags.set_flag("unrelated", rollout_percentage=100)

    result = await executor.execute("deploy_1", "Cancelled before start")

    assert result.success
    assert flags.get_flag("unrelated").status == FlagStatus.ENABLED


@pytest.mark.asyncio
async def test_planned_rollback_leaves_live_deployment_flags(executor, store, flags, aggregator, notifier):
    """Same version and a shared feature: only the live deployment owns the flags"""
    _create(store, flags, aggregator, deployment_id="deploy_live")
    _create(store, flags, aggregator, deployment_id="deploy_planned",
            features=("markdown", "gamma"), go_live=False)

    result = await executor.execute("deploy_planned", "Cancelled before start")

    assert result.success
    assert [s.step_id for s in result.steps if s.skipped] == ["disable_features", "revert_config"]
    assert store.get_status("deploy_planned") == DeploymentStatus.ROLLED_BACK
    assert store.get_status("deploy_live") == DeploymentStatus.ACTIVE

    assert flags.get_flag("markdown").status == FlagStatus.PERCENTAGE
    assert flags.get_flag("markdown").rollout_percentage == 30
    assert flags.get_flag("voice").status == FlagStatus.PERCENTAGE
    assert flags.has_checkpoint("deploy_live")
    # Notification and cache steps still run
    assert notifier.sent[0]["deploymentId"] == "deploy_planned"


@pytest.mark.asyncio
async def test_status_is_terminal_before_steps_run(store, flags, aggregator, cache):
    _create(store, flags, aggregator)
    seen = []

    class RecordingNotifier(LogNotifier):
        async def notify(self, audience, message, deployment_id=None):
            seen.append(store.get_status(deployment_id))

    executor = RollbackExecutor(store, flags, aggregator, cache, RecordingNotifier())
    await executor.execute("deploy_1", "Status first")

    assert seen == [DeploymentStatus.ROLLED_BACK]


@pytest.mark.asyncio
async def test_rollback_is_idempotent(executor, store, flags, aggregator, notifier):
    _create(store, flags, aggregator)

    first = await executor.execute("deploy_1", "First")
    second = await executor.execute("deploy_1", "Second")

    assert second is first
    assert len(notifier.sent) == 1
    assert executor.get_rollback_stats()["total_rollbacks"] == 1


@pytest.mark.asyncio
async def test_concurrent_rollbacks_execute_once(executor, store, flags, aggregator, notifier):
    _create(store, flags, aggregator)

    results = await asyncio.gather(
        executor.execute("deploy_1", "Manual", RollbackTrigger.MANUAL),
        executor.execute("deploy_1", "Automatic", RollbackTrigger.AUTOMATIC),
    )

    assert results[0] is results[1]
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_completed_deployment_cannot_roll_back(executor, store, flags, aggregator):
    _create(store, flags, aggregator)
    store.update_status("deploy_1", DeploymentStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        await executor.execute("deploy_1", "Too late")


@pytest.mark.asyncio
async def test_unknown_deployment(executor):
    with pytest.raises(NotFoundError):
        await executor.execute("missing", "Nothing")


@pytest.mark.asyncio
async def test_listeners_called_after_rollback(executor, store, flags, aggregator):
    _create(store, flags, aggregator)
    sync_calls = []
    async_calls = []

    async def async_listener(deployment_id):
        async_calls.append(deployment_id)

    def broken_listener(deployment_id):
        raise RuntimeError("listener bug")

    executor.add_listener(sync_calls.append)
    executor.add_listener(broken_listener)
    executor.add_listener(async_listener)

    await executor.execute("deploy_1", "Listeners")

    assert sync_calls == ["deploy_1"]
    assert async_calls == ["deploy_1"]


@pytest.mark.asyncio
async def test_history_and_stats(executor, store, flags, aggregator):
    _create(store, flags, aggregator, deployment_id="deploy_1")
    _create(store, flags, aggregator, deployment_id="deploy_2", features=("voice",))

    await executor.execute("deploy_1", "Manual")
    await executor.execute("deploy_2", "Breach", RollbackTrigger.AUTOMATIC)

    history = executor.get_rollback_history()
    assert [r.deployment_id for r in history] == ["deploy_2", "deploy_1"]
    assert [r.deployment_id for r in executor.get_rollback_history("deploy_1")] == ["deploy_1"]
    assert executor.get_last_rollback("deploy_2").trigger == RollbackTrigger.AUTOMATIC

    stats = executor.get_rollback_stats()
    assert stats["total_rollbacks"] == 2
    assert stats["success_rate"] == 1.0
    assert stats["by_trigger"] == {"manual": 1, "automatic": 1}
