"""
Test the live feature flag surface
"""
import json

import pytest

from deployment import FeatureFlagManager, FlagStatus


def test_unknown_flag_is_disabled(flags):
    assert flags.is_enabled("missing", key="user1") is False


def test_set_flag_status_follows_percentage(flags):
    flags.set_flag("a", rollout_percentage=100)
    flags.set_flag("b", rollout_percentage=0)
    flags.set_flag("c", rollout_percentage=30)

    assert flags.get_flag("a").status == FlagStatus.ENABLED
    assert flags.get_flag("b").status == FlagStatus.DISABLED
    assert flags.get_flag("c").status == FlagStatus.PERCENTAGE
    assert sorted(flags.get_enabled_flags()) == ["a", "c"]


def test_percentage_flag_matches_rollout_hash(flags):
    flags.set_flag("markdown", rollout_percentage=25)

    enabled = [flags.is_enabled("markdown", key=f"user_{i}") for i in range(2000)]
    expected = [flags.assigner.is_included_in_rollout(f"user_{i}", 25) for i in range(2000)]
    assert enabled == expected

    # No identifier to hash
    assert flags.is_enabled("markdown") is False


def test_group_restriction(flags):
    flags.set_flag("markdown", rollout_percentage=100, enabled_groups={"beta"})

    assert flags.is_enabled("markdown", key="user1", group="beta")
    assert not flags.is_enabled("markdown", key="user1", group="public")


def test_disable_flag_is_kill_switch(flags):
    flags.set_flag("markdown", rollout_percentage=100)
    flags.disable_flag("markdown")

    assert flags.get_flag("markdown").status == FlagStatus.DISABLED
    assert not flags.is_enabled("markdown", key="user1")


def test_set_rollout_percentage_keeps_groups(flags):
    flags.set_flag("markdown", rollout_percentage=10, enabled_groups={"beta"})
    flags.set_rollout_percentage("markdown", 100)

    flag = flags.get_flag("markdown")
    assert flag.status == FlagStatus.ENABLED
    assert flag.enabled_groups == {"beta"}


def test_enable_flag_removes_restrictions(flags):
    flags.set_flag("markdown", rollout_percentage=10, enabled_groups={"beta"})
    flags.enable_flag("markdown")

    flag = flags.get_flag("markdown")
    assert flag.status == FlagStatus.ENABLED
    assert flag.enabled_groups == set()


def test_checkpoint_and_restore(flags):
    flags.set_flag("existing", rollout_percentage=100)
    flags.checkpoint("2.0.0")

    flags.set_flag("markdown", rollout_percentage=50)
    flags.disable_flag("existing")

    flags.restore("2.0.0")

    assert flags.get_flag("markdown") is None
    assert flags.get_flag("existing").status == FlagStatus.ENABLED


def test_restore_unknown_checkpoint(flags):
    assert not flags.has_checkpoint("9.9.9")
    with pytest.raises(KeyError):
        flags.restore("9.9.9")


def test_flag_stats(flags):
    flags.set_flag("markdown", rollout_percentage=100)
    for i in range(10):
        flags.is_enabled("markdown", key=f"user_{i}")

    stats = flags.get_flag_stats("markdown")
    assert stats["total_checks"] == 10
    assert stats["actual_enabled_percentage"] == 100
    assert flags.get_flag_stats("missing") == {}


def test_flags_persist_to_file(tmp_path):
    path = tmp_path / "flags" / "feature_flags.json"

    manager = FeatureFlagManager(path)
    manager.set_flag("markdown", rollout_percentage=40, deployment_version="2.0.0")
    manager.checkpoint("2.0.0")

    data = json.loads(path.read_text())
    assert data["flags"][0]["name"] == "markdown"
    assert "2.0.0" in data["checkpoints"]

    reloaded = FeatureFlagManager(path)
    assert reloaded.get_flag("markdown").rollout_percentage == 40
    assert reloaded.has_checkpoint("2.0.0")


def test_corrupt_flag_file_is_ignored(tmp_path):
    path = tmp_path / "feature_flags.json"
    path.write_text("{not json")

    manager = FeatureFlagManager(path)
    assert manager.list_flags() == []
