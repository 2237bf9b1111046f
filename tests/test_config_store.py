"""
Test config store implementations (memory and SQLAlchemy backed)
"""
import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import OperationalError

from storage import Storage
from deployment import (
    CollaboratorError,
    DeploymentConfig,
    DeploymentMetrics,
    DeploymentReport,
    DeploymentStatus,
    InMemoryConfigStore,
    InvalidTransitionError,
    NotFoundError,
    RollbackPlan,
    SQLConfigStore,
)


@pytest.fixture
def sql_store(tmp_path):
    storage = Storage(f"sqlite:///{tmp_path / 'deployments.db'}")
    storage.init_db()
    store = SQLConfigStore(storage)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryConfigStore()
        return

    storage = Storage(f"sqlite:///{tmp_path / 'deployments.db'}")
    storage.init_db()
    store = SQLConfigStore(storage)
    yield store
    store.close()


def _config(**overrides):
    partial = {"version": "2.0.0", "features": ["markdown"], "rolloutPercentage": 20}
    partial.update(overrides)
    return DeploymentConfig.from_partial(partial)


def test_save_and_get(any_store):
    stored = any_store.save("deploy_1", _config(), created_by="alice")

    assert stored.status == DeploymentStatus.PLANNED
    assert stored.created_by == "alice"

    fetched = any_store.get_deployment("deploy_1")
    assert fetched.config.version == "2.0.0"
    assert fetched.config.features == ["markdown"]
    assert fetched.config.rollout_percentage == 20
    assert any_store.get("deploy_1").version == "2.0.0"
    assert any_store.get_status("deploy_1") == DeploymentStatus.PLANNED


def test_get_unknown_returns_none(any_store):
    assert any_store.get_deployment("missing") is None
    assert any_store.get("missing") is None
    assert any_store.get_status("missing") is None


def test_save_replaces_config_keeps_status(any_store):
    any_store.save("deploy_1", _config())
    any_store.update_status("deploy_1", DeploymentStatus.ACTIVE)

    any_store.save("deploy_1", _config(rolloutPercentage=50))

    fetched = any_store.get_deployment("deploy_1")
    assert fetched.config.rollout_percentage == 50
    assert fetched.status == DeploymentStatus.ACTIVE


def test_update_status_transitions(any_store):
    any_store.save("deploy_1", _config())

    any_store.update_status("deploy_1", DeploymentStatus.ACTIVE)
    any_store.update_status("deploy_1", DeploymentStatus.PAUSED)
    stored = any_store.update_status("deploy_1", DeploymentStatus.ROLLED_BACK)
    assert stored.status == DeploymentStatus.ROLLED_BACK

    # Same-status update is idempotent
    any_store.update_status("deploy_1", DeploymentStatus.ROLLED_BACK)

    with pytest.raises(InvalidTransitionError):
        any_store.update_status("deploy_1", DeploymentStatus.ACTIVE)


def test_update_status_invalid_from_planned(any_store):
    any_store.save("deploy_1", _config())

    with pytest.raises(InvalidTransitionError):
        any_store.update_status("deploy_1", DeploymentStatus.COMPLETED)

    assert any_store.get_status("deploy_1") == DeploymentStatus.PLANNED


def test_update_status_unknown(any_store):
    with pytest.raises(NotFoundError):
        any_store.update_status("missing", DeploymentStatus.ACTIVE)


def test_list_newest_first_with_filter(any_store):
    for i in range(5):
        any_store.save(f"deploy_{i}", _config(version=f"2.0.{i}"))
    any_store.update_status("deploy_3", DeploymentStatus.ACTIVE)

    page, total = any_store.list_deployments(limit=2)
    assert total == 5
    assert [d.deployment_id for d in page] == ["deploy_4", "deploy_3"]

    page, total = any_store.list_deployments(limit=2, offset=4)
    assert [d.deployment_id for d in page] == ["deploy_0"]

    active, total = any_store.list_deployments(DeploymentStatus.ACTIVE)
    assert total == 1
    assert active[0].deployment_id == "deploy_3"


def test_documents_round_trip(any_store):
    config = _config()
    any_store.save("deploy_1", config)

    plan = RollbackPlan.build_default("deploy_1", config)
    any_store.save_rollback_plan("deploy_1", plan)
    assert any_store.get_rollback_plan("deploy_1") == plan

    metrics = DeploymentMetrics(deployment_id="deploy_1", version="2.0.0", total_users=3)
    any_store.save_metrics("deploy_1", metrics)
    assert any_store.get_metrics("deploy_1").total_users == 3

    report = DeploymentReport(
        deployment_id="deploy_1", version="2.0.0", duration_ms=1000,
        total_users=3, success_rate=1.0, error_rate=0.0,
        performance_score=100.0, user_satisfaction=0.0,
    )
    any_store.save_report("deploy_1", report)
    assert any_store.get_report("deploy_1").total_users == 3


def test_missing_documents(any_store):
    assert any_store.get_rollback_plan("deploy_1") is None
    assert any_store.get_metrics("deploy_1") is None
    assert any_store.get_report("deploy_1") is None


def test_delete_removes_documents(any_store):
    config = _config()
    any_store.save("deploy_1", config)
    any_store.save_rollback_plan("deploy_1", RollbackPlan.build_default("deploy_1", config))

    assert any_store.delete("deploy_1") is True
    assert any_store.get_deployment("deploy_1") is None
    assert any_store.get_rollback_plan("deploy_1") is None
    assert any_store.delete("deploy_1") is False


def test_memory_store_returns_copies():
    store = InMemoryConfigStore()
    store.save("deploy_1", _config())

    fetched = store.get_deployment("deploy_1")
    fetched.config.features.append("leak")

    assert store.get("deploy_1").features == ["markdown"]


def test_sql_store_survives_reopen(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'deployments.db'}"

    storage = Storage(db_url)
    storage.init_db()
    SQLConfigStore(storage).save("deploy_1", _config())
    storage.close()

    reopened = Storage(db_url)
    reopened.init_db()
    store = SQLConfigStore(reopened)
    assert store.get("deploy_1").version == "2.0.0"
    store.close()


def test_sql_failures_surface_as_collaborator_error():
    storage = MagicMock()
    storage.get_deployment.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
    store = SQLConfigStore(storage)

    with pytest.raises(CollaboratorError) as exc_info:
        store.get_deployment("deploy_1")

    assert exc_info.value.collaborator == "persistence"
    assert exc_info.value.deployment_id == "deploy_1"
    assert exc_info.value.status_code == 502
