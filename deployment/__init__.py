"""
Deployment Module

Progressive deployment and experimentation controller: percentage rollouts,
consistent-hash A/B assignment, live health monitoring and automatic
rollback.

Quick Start:
    from deployment import DeploymentOrchestrator, InMemoryConfigStore

    orchestrator = DeploymentOrchestrator(InMemoryConfigStore())

    deployment_id = orchestrator.create_deployment({
        "version": "2.0.0",
        "features": ["markdown_rendering"],
        "rolloutPercentage": 10,
    })
    await orchestrator.start_rollout(deployment_id)

    # Check if the new feature set is served to a user
    if orchestrator.is_user_included(user_id="user123"):
        # Use new feature
        pass
"""

from .exceptions import (
    DeploymentError,
    NotFoundError,
    ValidationError,
    InvalidTransitionError,
    ConflictError,
    CollaboratorError
)

from .models import (
    DeploymentStatus,
    DeploymentStateMachine,
    DeploymentConfig,
    StoredDeployment,
    RollbackThreshold,
    ABTestConfig,
    VariantConfig,
    ABTestResults,
    VariantResults,
    DeploymentMetrics,
    DeploymentReport,
    RollbackPlan,
    RollbackStep,
    RollbackAction,
    InteractionType,
    Variant
)

from .config_store import (
    ConfigStore,
    InMemoryConfigStore,
    SQLConfigStore
)

from .assignment import (
    VariantAssigner,
    stable_hash,
    stable_key
)

from .feature_flags import (
    FeatureFlagManager,
    FeatureFlag,
    FlagStatus
)

from .aggregator import MetricsAggregator

from .notifications import (
    Notifier,
    LogNotifier,
    WebhookNotifier
)

from .rollback import (
    RollbackExecutor,
    RollbackResult,
    RollbackTrigger
)

from .health_monitor import (
    HealthMonitor,
    MonitorState,
    should_rollback
)

from .orchestrator import (
    DeploymentOrchestrator,
    Assignment
)

__all__ = [
    # Errors
    "DeploymentError",
    "NotFoundError",
    "ValidationError",
    "InvalidTransitionError",
    "ConflictError",
    "CollaboratorError",

    # Data model
    "DeploymentStatus",
    "DeploymentStateMachine",
    "DeploymentConfig",
    "StoredDeployment",
    "RollbackThreshold",
    "ABTestConfig",
    "VariantConfig",
    "ABTestResults",
    "VariantResults",
    "DeploymentMetrics",
    "DeploymentReport",
    "RollbackPlan",
    "RollbackStep",
    "RollbackAction",
    "InteractionType",
    "Variant",

    # Persistence
    "ConfigStore",
    "InMemoryConfigStore",
    "SQLConfigStore",

    # Assignment and flags
    "VariantAssigner",
    "stable_hash",
    "stable_key",
    "FeatureFlagManager",
    "FeatureFlag",
    "FlagStatus",

    # Metrics
    "MetricsAggregator",

    # Notification
    "Notifier",
    "LogNotifier",
    "WebhookNotifier",

    # Rollback and monitoring
    "RollbackExecutor",
    "RollbackResult",
    "RollbackTrigger",
    "HealthMonitor",
    "MonitorState",
    "should_rollback",

    # Orchestration
    "DeploymentOrchestrator",
    "Assignment",
]
