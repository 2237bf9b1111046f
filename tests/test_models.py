"""
Test deployment configuration defaults, validation and the status state machine
"""
import pytest

from deployment import (
    DeploymentConfig,
    DeploymentStateMachine,
    DeploymentStatus,
    RollbackAction,
    RollbackPlan,
    RollbackThreshold,
    ValidationError,
    VariantResults,
)


def test_defaults_applied_once():
    config = DeploymentConfig.from_partial({})

    assert config.version == "1.0.0"
    assert config.features == []
    assert config.rollout_percentage == 10
    assert config.target_groups == set()
    assert config.enabled is True
    assert config.ab_test_config is None
    assert config.rollback_threshold == RollbackThreshold(0.05, 70.0, 0.02)


def test_explicit_zero_percentage_is_kept():
    config = DeploymentConfig.from_partial({"rolloutPercentage": 0})
    assert config.rollout_percentage == 0


def test_threshold_overrides_are_merged():
    config = DeploymentConfig.from_partial({"rollbackThreshold": {"errorRate": 0.1}})

    assert config.rollback_threshold.error_rate == 0.1
    assert config.rollback_threshold.performance_score == 70.0
    assert config.rollback_threshold.user_complaint_rate == 0.02


def test_duplicate_features_removed_in_order():
    config = DeploymentConfig.from_partial({"features": ["b", "a", "b"]})
    assert config.features == ["b", "a"]


@pytest.mark.parametrize("partial", [
    {"rolloutPercentage": 101},
    {"rolloutPercentage": -1},
    {"rolloutPercentage": "50"},
    {"rolloutPercentage": 12.5},
    {"version": ""},
    {"features": "markdown"},
    {"targetGroups": "beta"},
    {"rollbackThreshold": {"errorRate": "high"}},
    {"startDate": "not-a-date"},
])
def test_malformed_fields_rejected(partial):
    with pytest.raises(ValidationError):
        DeploymentConfig.from_partial(partial)


def test_validation_lists_every_problem():
    with pytest.raises(ValidationError) as exc_info:
        DeploymentConfig.from_partial({"rolloutPercentage": 150, "features": 3})

    assert len(exc_info.value.details) == 2
    assert exc_info.value.status_code == 400


def test_ab_test_config_validation():
    with pytest.raises(ValidationError) as exc_info:
        DeploymentConfig.from_partial({"abTestConfig": {"trafficSplit": 120}})

    details = " ".join(exc_info.value.details)
    assert "name" in details
    assert "variants" in details
    assert "traffic split" in details


def test_ab_test_config_parsed():
    config = DeploymentConfig.from_partial({
        "abTestConfig": {
            "testName": "composer",
            "variants": {
                "control": {"name": "classic"},
                "treatment": {"name": "rich", "features": {"markdown": True}},
            },
            "trafficSplit": 30,
        }
    })

    assert config.ab_test_config.test_name == "composer"
    assert config.ab_test_config.traffic_split == 30
    assert config.ab_test_config.treatment.features == {"markdown": True}
    assert config.ab_test_config.minimum_sample_size == 100


def test_config_dict_round_trip_keeps_fields():
    config = DeploymentConfig.from_partial({
        "version": "2.1.0",
        "features": ["markdown"],
        "rolloutPercentage": 25,
        "targetGroups": ["beta"],
        "startDate": "2026-01-01T00:00:00Z",
    })

    restored = DeploymentConfig.from_dict(config.to_dict())
    assert restored == config


def test_state_machine_valid_transitions():
    """Test that valid status transitions are allowed"""
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.PLANNED, DeploymentStatus.ACTIVE)
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.PLANNED, DeploymentStatus.ROLLED_BACK)
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED)
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.ACTIVE, DeploymentStatus.COMPLETED)
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.PAUSED, DeploymentStatus.ACTIVE)
    assert DeploymentStateMachine.is_valid_transition(DeploymentStatus.PAUSED, DeploymentStatus.ROLLED_BACK)

    # Same status is always valid (idempotent)
    for status in DeploymentStatus:
        assert DeploymentStateMachine.is_valid_transition(status, status)


def test_state_machine_invalid_transitions():
    """Terminal statuses never move again"""
    assert not DeploymentStateMachine.is_valid_transition(DeploymentStatus.PLANNED, DeploymentStatus.COMPLETED)
    assert not DeploymentStateMachine.is_valid_transition(DeploymentStatus.COMPLETED, DeploymentStatus.ACTIVE)
    assert not DeploymentStateMachine.is_valid_transition(DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK)
    assert not DeploymentStateMachine.is_valid_transition(DeploymentStatus.ROLLED_BACK, DeploymentStatus.ACTIVE)

    assert DeploymentStateMachine.is_terminal_state(DeploymentStatus.COMPLETED)
    assert DeploymentStateMachine.is_terminal_state(DeploymentStatus.ROLLED_BACK)
    assert not DeploymentStateMachine.is_terminal_state(DeploymentStatus.PAUSED)


def test_allowed_sources():
    sources = DeploymentStateMachine.allowed_sources(DeploymentStatus.ROLLED_BACK)
    assert sources == {
        DeploymentStatus.PLANNED,
        DeploymentStatus.ACTIVE,
        DeploymentStatus.PAUSED,
        DeploymentStatus.ROLLED_BACK,
    }


def test_default_rollback_plan():
    config = DeploymentConfig.from_partial({
        "version": "2.0.0",
        "features": ["markdown", "voice"],
        "rolloutPercentage": 20,
    })
    plan = RollbackPlan.build_default("deploy_1", config)

    assert [s.action for s in plan.ordered_steps()] == [
        RollbackAction.DISABLE_FEATURE,
        RollbackAction.REVERT_CONFIG,
        RollbackAction.CLEAR_CACHE,
        RollbackAction.NOTIFY_USERS,
    ]
    assert plan.steps[0].config == {"features": ["markdown", "voice"]}
    assert plan.steps[2].config == {"cacheKeys": ["chat-config", "feature-flags"]}
    assert plan.affected_users == 200
    assert plan.estimated_duration == 15
    assert plan.data_preservation is True
    assert plan.reason == ""


def test_plan_stamping_leaves_template_untouched():
    config = DeploymentConfig.from_partial({"version": "2.0.0"})
    plan = RollbackPlan.build_default("deploy_1", config)

    stamped = plan.stamped("Spike in errors")
    assert stamped.reason == "Spike in errors"
    assert plan.reason == ""


def test_conversion_rate_is_derived():
    results = VariantResults(name="control")
    assert results.conversion_rate == 0.0

    results.users = 4
    results.conversions = 1
    assert results.conversion_rate == 0.25
