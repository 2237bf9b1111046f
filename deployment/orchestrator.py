"""
Deployment Orchestration

Single entry point of the controller: creates deployments, drives their
lifecycle (start, increase, pause, resume, complete, rollback), answers
per-user inclusion and variant questions and produces the final report.
"""
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import asyncio
import copy
import time
import uuid

from cache_manager import CacheManager
from logger import get_logger
from storage import Storage

from .aggregator import MetricsAggregator
from .assignment import VariantAssigner, stable_key
from .config_store import ConfigStore, InMemoryConfigStore, SQLConfigStore
from .exceptions import (
    CollaboratorError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .feature_flags import FeatureFlagManager
from .health_monitor import HealthMonitor
from .models import (
    ABTestWinner,
    DeploymentConfig,
    DeploymentMetrics,
    DeploymentReport,
    DeploymentStatus,
    RollbackPlan,
    StoredDeployment,
    Variant,
    is_number,
)
from .notifications import LogNotifier, WebhookNotifier
from .rollback import RollbackExecutor, RollbackResult, RollbackTrigger

logger = get_logger(__name__)

# Cache entries describing what is currently served; cleared by rollbacks
SERVED_CONFIG_KEY = "chat-config"
FEATURE_FLAGS_KEY = "feature-flags"

ERROR_RATE_TARGET = 0.02
PERFORMANCE_TARGET = 85
FEEDBACK_TARGET = 0.8


@dataclass
class Assignment:
    """Inclusion and bucket of one user for the current deployment"""
    included: bool
    variant: Optional[Variant] = None
    deployment_id: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "included": self.included,
            "variant": self.variant.value if self.variant else None,
            "deploymentId": self.deployment_id,
            "version": self.version,
        }


def generate_deployment_id() -> str:
    return f"deploy_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class DeploymentOrchestrator:
    """
    Controller façade over store, flags, metrics, monitoring and rollback

    At most one deployment is current (active or paused) at a time. Inclusion
    is only granted while the current deployment is active and enabled.

    Example:
        orchestrator = DeploymentOrchestrator(InMemoryConfigStore())

        deployment_id = orchestrator.create_deployment({
            "version": "2.0.0",
            "features": ["markdown_rendering"],
            "rolloutPercentage": 10,
        })
        await orchestrator.start_rollout(deployment_id)

        if orchestrator.is_user_included(user_id="user123"):
            ...

        await orchestrator.increase_rollout(deployment_id, 50)
        report = await orchestrator.complete_deployment(deployment_id)
    """

    def __init__(
        self,
        store: ConfigStore,
        flags: Optional[FeatureFlagManager] = None,
        aggregator: Optional[MetricsAggregator] = None,
        cache: Optional[CacheManager] = None,
        notifier=None,
        assigner: Optional[VariantAssigner] = None,
        monitor_interval_seconds: float = 60.0,
        monitor_max_lifetime_seconds: float = 24 * 3600,
        rollback_plan_options: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            store: ConfigStore for deployments and their documents
            flags: Live feature flag surface (memory-only when omitted)
            aggregator: Metrics aggregator (new one when omitted)
            cache: Served-config cache (memory-only when omitted)
            notifier: Notification collaborator (log-only when omitted)
            assigner: Hash-based variant assigner
            monitor_interval_seconds: Health check cadence
            monitor_max_lifetime_seconds: Health check observation period
            rollback_plan_options: Keyword arguments for RollbackPlan.build_default
        """
        self.store = store
        self.assigner = assigner or VariantAssigner()
        self.flags = flags or FeatureFlagManager(assigner=self.assigner)
        self.aggregator = aggregator or MetricsAggregator()
        self.cache = cache or CacheManager()
        self.notifier = notifier or LogNotifier()
        self.rollback_plan_options = dict(rollback_plan_options or {})

        self.executor = RollbackExecutor(
            store, self.flags, self.aggregator, self.cache, self.notifier
        )
        self.monitor = HealthMonitor(
            self.aggregator, self.executor, store,
            interval_seconds=monitor_interval_seconds,
            max_lifetime_seconds=monitor_max_lifetime_seconds,
        )
        self.executor.add_listener(self._on_rolled_back)
        self.executor.add_listener(self.monitor.cancel)

        self._current: Optional[StoredDeployment] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "DeploymentOrchestrator":
        """Build the controller and its collaborators from application settings"""
        if settings.get("store_backend") == "memory":
            store = InMemoryConfigStore()
        else:
            storage = Storage(settings.get("database_url"))
            storage.init_db()
            store = SQLConfigStore(storage)

        cache = CacheManager(
            redis_url=settings.get("redis_url"),
            ttl=settings.get("cache_ttl", 3600),
            max_memory_cache=settings.get("max_cache_size", 10000),
            namespace=settings.get("cache_namespace", "rollout"),
        )

        webhook_url = settings.get("notification_webhook_url")
        if webhook_url:
            notifier = WebhookNotifier(
                webhook_url,
                timeout=settings.get("notification_timeout_seconds", 10),
                failure_threshold=settings.get("notification_failure_threshold", 5),
                recovery_timeout=settings.get("notification_recovery_timeout", 60),
            )
        else:
            notifier = LogNotifier()

        flags_path = settings.get("feature_flags_path")
        assigner = VariantAssigner()

        return cls(
            store,
            flags=FeatureFlagManager(Path(flags_path) if flags_path else None, assigner),
            cache=cache,
            notifier=notifier,
            assigner=assigner,
            monitor_interval_seconds=settings.get("monitor_interval_seconds", 60.0),
            monitor_max_lifetime_seconds=settings.get("monitor_max_lifetime_hours", 24.0) * 3600,
            rollback_plan_options={
                "estimated_duration": settings.get("rollback_estimated_duration_minutes", 15),
                "affected_users_base": settings.get("rollback_affected_users_base", 1000),
                "cache_keys": settings.get("rollback_cache_keys"),
                "message": settings.get("rollback_notification_message"),
            },
        )

    # Lifecycle

    def create_deployment(self, partial: Optional[Dict[str, Any]] = None,
                          created_by: str = "admin") -> str:
        """
        Create a planned deployment and its rollback plan

        Raises:
            ValidationError: Malformed configuration
        """
        config = DeploymentConfig.from_partial(partial)
        deployment_id = generate_deployment_id()

        options = {k: v for k, v in self.rollback_plan_options.items() if v is not None}
        plan = RollbackPlan.build_default(deployment_id, config, **options)

        self.store.save(deployment_id, config, created_by=created_by)
        try:
            self.store.save_rollback_plan(deployment_id, plan)
        except CollaboratorError:
            # Config and plan exist together or not at all
            self.store.delete(deployment_id)
            raise

        logger.info(
            f"Created deployment {deployment_id}: version {config.version}, "
            f"{len(config.features)} features, rollout {config.rollout_percentage}%"
        )
        return deployment_id

    def _require(self, deployment_id: str) -> StoredDeployment:
        stored = self.store.get_deployment(deployment_id)
        if stored is None:
            raise NotFoundError("Deployment not found", deployment_id)
        return stored

    def _require_current(self, deployment_id: str, status: DeploymentStatus,
                         action: str) -> StoredDeployment:
        stored = self._require(deployment_id)
        is_current = self._current is not None and self._current.deployment_id == deployment_id
        if stored.status != status or not is_current:
            raise InvalidTransitionError(
                f"Cannot {action}: deployment is {stored.status.value}, not {status.value}",
                deployment_id
            )
        return stored

    async def start_rollout(self, deployment_id: str) -> StoredDeployment:
        """
        Make a planned deployment live

        Raises:
            NotFoundError: Unknown deployment
            ConflictError: Another deployment is current
            InvalidTransitionError: Deployment is not planned
        """
        async with self._lock:
            stored = self._require(deployment_id)

            if self._current is not None and self._current.deployment_id != deployment_id:
                raise ConflictError(
                    f"Deployment {self._current.deployment_id} is already in progress",
                    deployment_id
                )

            if stored.status != DeploymentStatus.PLANNED:
                raise InvalidTransitionError(
                    f"Only planned deployments can be started (status: {stored.status.value})",
                    deployment_id
                )

            stored = self.store.update_status(deployment_id, DeploymentStatus.ACTIVE)
            config = stored.config

            self.flags.checkpoint(deployment_id)
            for feature in config.features:
                self.flags.set_flag(
                    feature,
                    rollout_percentage=config.rollout_percentage,
                    enabled_groups=config.target_groups,
                    deployment_version=config.version,
                )

            metrics = self.aggregator.register(
                deployment_id, config.version, config.ab_test_config
            )
            self._save_metrics(deployment_id, metrics)

            self._current = stored
            self._publish_served_config()
            self.monitor.start(deployment_id)

            logger.info(
                f"Started rollout of deployment {deployment_id} "
                f"(version {config.version}) at {config.rollout_percentage}%"
            )
            return copy.deepcopy(stored)

    async def increase_rollout(self, deployment_id: str, percentage: int) -> StoredDeployment:
        """
        Raise the rollout percentage of the active deployment

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Not the active deployment, percentage above
                100 or below the current one
        """
        async with self._lock:
            stored = self._require_current(
                deployment_id, DeploymentStatus.ACTIVE, "increase rollout"
            )
            config = stored.config

            if not is_number(percentage) or percentage != int(percentage):
                raise InvalidTransitionError("Rollout percentage must be a whole number", deployment_id)
            percentage = int(percentage)

            if percentage > 100:
                raise InvalidTransitionError("Rollout percentage cannot exceed 100", deployment_id)

            if percentage < config.rollout_percentage:
                raise InvalidTransitionError(
                    f"Rollout percentage cannot decrease "
                    f"({config.rollout_percentage}% → {percentage}%)",
                    deployment_id
                )

            previous = config.rollout_percentage
            config.rollout_percentage = percentage
            stored = self.store.save(deployment_id, config)

            for feature in config.features:
                self.flags.set_rollout_percentage(feature, percentage)

            self._current = stored
            self._publish_served_config()

            logger.info(f"Increased rollout of {deployment_id}: {previous}% → {percentage}%")
            return copy.deepcopy(stored)

    async def pause_deployment(self, deployment_id: str) -> StoredDeployment:
        """Stop granting inclusion and monitoring, keeping the configuration"""
        async with self._lock:
            stored = self._require_current(deployment_id, DeploymentStatus.ACTIVE, "pause")

            # Waits for an automatic rollback in flight; the update then fails
            await self.monitor.cancel(deployment_id)
            stored = self.store.update_status(deployment_id, DeploymentStatus.PAUSED)

            for feature in stored.config.features:
                self.flags.set_rollout_percentage(feature, 0)
            if self.aggregator.is_tracking(deployment_id):
                self.aggregator.set_status(deployment_id, DeploymentStatus.PAUSED)

            self._current = stored
            self._publish_served_config()

            logger.info(f"Paused deployment {deployment_id}")
            return copy.deepcopy(stored)

    async def resume_deployment(self, deployment_id: str) -> StoredDeployment:
        """Resume a paused deployment at its configured percentage"""
        async with self._lock:
            stored = self._require_current(deployment_id, DeploymentStatus.PAUSED, "resume")

            stored = self.store.update_status(deployment_id, DeploymentStatus.ACTIVE)
            config = stored.config

            for feature in config.features:
                self.flags.set_rollout_percentage(feature, config.rollout_percentage)
            if self.aggregator.is_tracking(deployment_id):
                self.aggregator.set_status(deployment_id, DeploymentStatus.ACTIVE)
            else:
                self.aggregator.register(deployment_id, config.version, config.ab_test_config)

            self._current = stored
            self._publish_served_config()
            self.monitor.start(deployment_id)

            logger.info(f"Resumed deployment {deployment_id} at {config.rollout_percentage}%")
            return copy.deepcopy(stored)

    async def complete_deployment(self, deployment_id: str) -> DeploymentReport:
        """
        Make the feature set permanent and produce the final report

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Deployment is not the active one
        """
        async with self._lock:
            stored = self._require_current(deployment_id, DeploymentStatus.ACTIVE, "complete")

            await self.monitor.cancel(deployment_id)
            self.store.update_status(deployment_id, DeploymentStatus.COMPLETED)

            for feature in stored.config.features:
                self.flags.enable_flag(feature)

            final = self._final_metrics(stored, DeploymentStatus.COMPLETED)
            self._save_metrics(deployment_id, final)

            report = self._build_report(final)
            self.store.save_report(deployment_id, report)

            self._current = None
            self._publish_served_config()

            logger.info(
                f"Completed deployment {deployment_id}: {report.total_users} users, "
                f"success rate {report.success_rate:.2%}, "
                f"{len(report.recommendations)} recommendations"
            )
            return report

    async def rollback(self, deployment_id: str,
                       reason: str = "Manual rollback") -> RollbackResult:
        """
        Execute the rollback plan of a deployment

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Deployment already completed
        """
        async with self._lock:
            return await self.executor.execute(
                deployment_id, reason or "Manual rollback", RollbackTrigger.MANUAL
            )

    def _on_rolled_back(self, deployment_id: str):
        if self._current is not None and self._current.deployment_id == deployment_id:
            self._current = None
            self._publish_served_config()
            logger.info(f"Deployment {deployment_id} is no longer current")

    def update_config(self, deployment_id: str, updates: Dict[str, Any]) -> StoredDeployment:
        """
        Adjust thresholds or target groups of a non-terminal deployment

        ``rollbackThreshold`` fields are merged into the existing thresholds,
        ``targetGroups`` replaces the audience.

        Raises:
            NotFoundError: Unknown deployment
            ValidationError: Unsupported or malformed fields
            InvalidTransitionError: Deployment is completed or rolled back
        """
        stored = self._require(deployment_id)
        if stored.is_terminal:
            raise InvalidTransitionError(
                f"Cannot update a {stored.status.value} deployment", deployment_id
            )

        updates = dict(updates or {})
        errors = []

        unsupported = sorted(set(updates) - {"rollbackThreshold", "targetGroups"})
        if unsupported:
            errors.append(f"Unsupported fields: {', '.join(unsupported)}")

        thresholds = updates.get("rollbackThreshold")
        if thresholds is not None and (
                not isinstance(thresholds, dict)
                or not all(v is None or is_number(v) for v in thresholds.values())):
            errors.append("Rollback threshold must be an object of numbers")

        groups = updates.get("targetGroups")
        if groups is not None and (
                not isinstance(groups, (list, set, tuple))
                or not all(isinstance(g, str) for g in groups)):
            errors.append("Target groups must be an array of strings")

        if errors:
            raise ValidationError("Invalid configuration update", details=errors,
                                  deployment_id=deployment_id)

        config = stored.config
        if thresholds is not None:
            config.rollback_threshold = config.rollback_threshold.merged(thresholds)
        if groups is not None:
            config.target_groups = set(groups)

        stored = self.store.save(deployment_id, config)

        if self._current is not None and self._current.deployment_id == deployment_id:
            self._current = stored
            if groups is not None:
                percentage = config.rollout_percentage \
                    if stored.status == DeploymentStatus.ACTIVE else 0
                for feature in config.features:
                    self.flags.set_flag(
                        feature,
                        rollout_percentage=percentage,
                        enabled_groups=config.target_groups,
                        deployment_version=config.version,
                    )
            self._publish_served_config()

        logger.info(f"Updated configuration of deployment {deployment_id}: {sorted(updates)}")
        return copy.deepcopy(stored)

    def delete_deployment(self, deployment_id: str) -> bool:
        """
        Raises:
            NotFoundError: Unknown deployment
            ConflictError: Deployment is live
        """
        stored = self._require(deployment_id)
        if stored.status in (DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED):
            raise ConflictError("Cannot delete a live deployment", deployment_id)

        deleted = self.store.delete(deployment_id)
        logger.info(f"Deleted deployment {deployment_id}")
        return deleted

    async def recover(self):
        """Resume monitoring of a deployment left live by a previous process"""
        async with self._lock:
            live = []
            for status in (DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED):
                deployments, _ = self.store.list_deployments(status, limit=1)
                live.extend(deployments)
            if not live:
                return

            stored = live[0]
            config = stored.config
            previous = self.store.get_metrics(stored.deployment_id)
            self.aggregator.register(
                stored.deployment_id, config.version, config.ab_test_config,
                start_time=previous.start_time if previous else None,
            )
            self._current = stored
            self._publish_served_config()

            if stored.status == DeploymentStatus.ACTIVE:
                self.monitor.start(stored.deployment_id)
            else:
                self.aggregator.set_status(stored.deployment_id, DeploymentStatus.PAUSED)

            logger.warning(
                f"Recovered {stored.status.value} deployment {stored.deployment_id}; "
                f"live counters restart from zero"
            )

    async def shutdown(self):
        """Stop monitors and release collaborators"""
        await self.monitor.shutdown()
        await self.notifier.close()
        self.cache.close()
        self.store.close()

    # Queries

    def get_deployment(self, deployment_id: str) -> StoredDeployment:
        return self._require(deployment_id)

    def get_current_deployment(self) -> Optional[StoredDeployment]:
        return copy.deepcopy(self._current) if self._current else None

    def list_deployments(self, status: Optional[str] = None, limit: int = 20,
                         offset: int = 0) -> Tuple[List[StoredDeployment], int]:
        """
        Raises:
            ValidationError: Unknown status filter
        """
        try:
            status_filter = DeploymentStatus(status) if status else None
        except ValueError:
            raise ValidationError(
                "Invalid status filter",
                details=[f"Status must be one of: {', '.join(s.value for s in DeploymentStatus)}"]
            )
        return self.store.list_deployments(status_filter, limit=limit, offset=offset)

    def get_served_config(self) -> Optional[Dict[str, Any]]:
        """Current deployment as served to clients, read through the cache"""
        cached = self.cache.get(SERVED_CONFIG_KEY)
        if cached is not None:
            return cached or None
        return self._publish_served_config()

    def get_enabled_features(self) -> List[str]:
        """Features currently served to at least part of the traffic"""
        cached = self.cache.get(FEATURE_FLAGS_KEY)
        if cached is not None:
            return cached
        features = sorted(self.flags.get_enabled_flags())
        self.cache.set(FEATURE_FLAGS_KEY, features)
        return features

    def _publish_served_config(self) -> Optional[Dict[str, Any]]:
        served = self._current.to_dict() if self._current else None
        # An empty dict marks "nothing served" so misses are distinguishable
        self.cache.set(SERVED_CONFIG_KEY, served or {})
        self.cache.set(FEATURE_FLAGS_KEY, sorted(self.flags.get_enabled_flags()))
        return served

    # Per-user decisions

    def assign(self, user_id: Optional[str] = None, session_id: Optional[str] = None,
               user_group: Optional[str] = None) -> Assignment:
        """
        Inclusion and variant of a user for the current deployment

        Raises:
            ValueError: Neither user ID nor session ID given
        """
        key = stable_key(user_id, session_id)
        current = self._current

        if current is None or current.status != DeploymentStatus.ACTIVE \
                or not current.config.enabled:
            return Assignment(included=False)

        config = current.config
        included = self.assigner.is_included_in_rollout(
            key, config.rollout_percentage, config.target_groups, user_group
        )
        variant = None
        if included and config.ab_test_config is not None:
            variant = self.assigner.assign_variant(key, config.ab_test_config.traffic_split)

        return Assignment(
            included=included,
            variant=variant,
            deployment_id=current.deployment_id,
            version=config.version,
        )

    def is_user_included(self, user_id: Optional[str] = None, session_id: Optional[str] = None,
                         user_group: Optional[str] = None) -> bool:
        return self.assign(user_id, session_id, user_group).included

    def get_user_variant(self, user_id: Optional[str] = None, session_id: Optional[str] = None,
                         user_group: Optional[str] = None) -> Optional[Variant]:
        """A/B bucket of an included user, None outside the rollout or without A/B test"""
        return self.assign(user_id, session_id, user_group).variant

    # Metrics and reports

    def record_interaction(self, deployment_id: str, identifier: str,
                           variant: Optional[str], interaction_type: str,
                           payload: Optional[Dict[str, Any]] = None,
                           timestamp=None):
        """
        Raises:
            NotFoundError: Deployment not live
            ValueError: Unknown interaction type or variant, malformed payload
                or timestamp
        """
        self.aggregator.record_interaction(
            deployment_id, identifier, variant, interaction_type, payload,
            timestamp=timestamp,
        )

    def get_metrics(self, deployment_id: str) -> DeploymentMetrics:
        """Live snapshot, or the last persisted one once the deployment stopped"""
        if self.aggregator.is_tracking(deployment_id):
            return self.aggregator.snapshot(deployment_id)

        metrics = self.store.get_metrics(deployment_id)
        if metrics is None:
            self._require(deployment_id)
            raise NotFoundError("No metrics recorded for deployment", deployment_id)
        return metrics

    def generate_report(self, deployment_id: str) -> DeploymentReport:
        """Report from the current metrics; zero counters when never started"""
        stored = self._require(deployment_id)

        if self.aggregator.is_tracking(deployment_id):
            metrics = self.aggregator.snapshot(deployment_id)
        else:
            metrics = self.store.get_metrics(deployment_id) or DeploymentMetrics(
                deployment_id=deployment_id,
                version=stored.config.version,
                start_time=stored.created_at,
                status=stored.status,
            )
        return self._build_report(metrics)

    def get_report(self, deployment_id: str) -> DeploymentReport:
        """
        Raises:
            NotFoundError: Unknown deployment or not completed yet
        """
        report = self.store.get_report(deployment_id)
        if report is None:
            self._require(deployment_id)
            raise NotFoundError("Report is only available after completion", deployment_id)
        return report

    def _final_metrics(self, stored: StoredDeployment, status: DeploymentStatus) -> DeploymentMetrics:
        if self.aggregator.is_tracking(stored.deployment_id):
            return self.aggregator.finalize(stored.deployment_id, status)

        metrics = self.store.get_metrics(stored.deployment_id) or DeploymentMetrics(
            deployment_id=stored.deployment_id,
            version=stored.config.version,
        )
        metrics.status = status
        metrics.end_time = datetime.utcnow()
        return metrics

    def _save_metrics(self, deployment_id: str, metrics: DeploymentMetrics):
        try:
            self.store.save_metrics(deployment_id, metrics)
        except CollaboratorError as e:
            logger.error(f"Failed to persist metrics for {deployment_id}: {e}")

    @staticmethod
    def _build_report(metrics: DeploymentMetrics) -> DeploymentReport:
        end_time = metrics.end_time or datetime.utcnow()
        duration_ms = max(0, int((end_time - metrics.start_time).total_seconds() * 1000))

        success_rate = (
            metrics.successful_sessions / metrics.total_users if metrics.total_users > 0 else 0.0
        )

        recommendations = []
        if metrics.error_rate > ERROR_RATE_TARGET:
            recommendations.append("Improve error handling to reduce the error rate")
        if metrics.performance_score < PERFORMANCE_TARGET:
            recommendations.append("Optimize performance to improve the user experience")
        if metrics.user_feedback_score < FEEDBACK_TARGET:
            recommendations.append("Collect more user feedback to identify areas for improvement")
        ab_results = metrics.ab_test_results
        if ab_results is not None and ab_results.winner == ABTestWinner.TREATMENT:
            recommendations.append("Roll out the treatment variant to 100% of users")

        return DeploymentReport(
            deployment_id=metrics.deployment_id,
            version=metrics.version,
            duration_ms=duration_ms,
            total_users=metrics.total_users,
            success_rate=success_rate,
            error_rate=metrics.error_rate,
            performance_score=metrics.performance_score,
            user_satisfaction=metrics.user_feedback_score,
            ab_test_results=copy.deepcopy(ab_results),
            recommendations=recommendations,
        )
