"""
Rollback Procedures

Executes a deployment's predeclared rollback plan: disable its features,
restore the previous flag configuration, clear served-config caches and
notify affected users. Steps run in plan order and a failing step never
stops the ones after it.
"""
from typing import Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
import asyncio
import inspect

from logger import get_logger
from metrics import rollbacks_executed, rollback_step_failures

from .exceptions import NotFoundError, InvalidTransitionError, CollaboratorError
from .models import (
    DeploymentStatus,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
    StoredDeployment,
)

logger = get_logger(__name__)

AUTOMATIC_ROLLBACK_REASON = "Automatic rollback due to metrics threshold"

# Steps that only undo what a started rollout changed on the live flag surface
LIVE_ONLY_ACTIONS = {RollbackAction.DISABLE_FEATURE, RollbackAction.REVERT_CONFIG}

LIVE_STATUSES = {DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED}


class RollbackTrigger(Enum):
    """What started a rollback"""
    AUTOMATIC = "automatic"       # Health monitor threshold breach
    MANUAL = "manual"             # Operator request


@dataclass
class StepOutcome:
    """Result of one rollback step"""
    step_id: str
    action: RollbackAction
    success: bool
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.step_id,
            "action": self.action.value,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class RollbackResult:
    """Result of rollback operation"""
    deployment_id: str
    version: str
    trigger: RollbackTrigger
    reason: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when every step succeeded"""
        return all(step.success for step in self.steps)

    @property
    def failed_steps(self) -> List[str]:
        return [step.step_id for step in self.steps if not step.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "version": self.version,
            "trigger": self.trigger.value,
            "reason": self.reason,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "success": self.success,
            "steps": [step.to_dict() for step in self.steps],
        }


class RollbackExecutor:
    """
    Executes rollback plans, at most once per deployment

    Executions of the same deployment are serialized by a per-deployment lock
    and guarded by the stored status: once a deployment is rolled back, a
    further ``execute`` returns the earlier result without acting again.
    The status moves to rolled_back before the first step runs. Deployments
    that never went live skip the steps touching the flag surface.

    Example:
        executor = RollbackExecutor(store, flags, aggregator, cache, notifier)
        executor.add_listener(monitor.cancel)

        result = await executor.execute("deploy_1", "Checkout errors")
        if not result.success:
            print(f"Steps needing attention: {result.failed_steps}")
    """

    def __init__(self, store, flags, aggregator, cache=None, notifier=None):
        """
        Args:
            store: ConfigStore holding deployments and rollback plans
            flags: FeatureFlagManager serving the deployment's features
            aggregator: MetricsAggregator tracking live metrics
            cache: Optional CacheManager for clear_cache steps
            notifier: Optional Notifier for notify_users steps
        """
        self.store = store
        self.flags = flags
        self.aggregator = aggregator
        self.cache = cache
        self.notifier = notifier

        self._locks: Dict[str, asyncio.Lock] = {}
        self._history: List[RollbackResult] = []
        self._last: Dict[str, RollbackResult] = {}
        self._listeners: List[Callable[[str], Any]] = []

        self._handlers = {
            RollbackAction.DISABLE_FEATURE: self._disable_features,
            RollbackAction.REVERT_CONFIG: self._revert_config,
            RollbackAction.CLEAR_CACHE: self._clear_cache,
            RollbackAction.NOTIFY_USERS: self._notify_users,
        }

    def add_listener(self, callback: Callable[[str], Any]):
        """Call ``callback(deployment_id)`` (sync or async) after each rollback"""
        self._listeners.append(callback)

    async def execute(
        self,
        deployment_id: str,
        reason: str,
        trigger: RollbackTrigger = RollbackTrigger.MANUAL
    ) -> RollbackResult:
        """
        Roll a deployment back

        Args:
            deployment_id: Deployment to roll back
            reason: Recorded on the executed plan
            trigger: Automatic (health monitor) or manual

        Returns:
            RollbackResult with per-step outcomes

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Deployment already completed
        """
        lock = self._locks.setdefault(deployment_id, asyncio.Lock())

        async with lock:
            stored = self.store.get_deployment(deployment_id)
            if stored is None:
                raise NotFoundError("Deployment not found", deployment_id)

            if stored.status == DeploymentStatus.ROLLED_BACK:
                logger.info(f"Deployment {deployment_id} already rolled back, nothing to do")
                previous = self._last.get(deployment_id)
                if previous is not None:
                    return previous
                return RollbackResult(
                    deployment_id=deployment_id,
                    version=stored.config.version,
                    trigger=trigger,
                    reason=reason,
                    started_at=stored.updated_at,
                    completed_at=stored.updated_at,
                )

            if stored.status == DeploymentStatus.COMPLETED:
                raise InvalidTransitionError(
                    "Cannot roll back a completed deployment", deployment_id
                )

            logger.warning(
                f"{trigger.value.upper()} ROLLBACK: deployment {deployment_id} "
                f"(version {stored.config.version}) - {reason}"
            )

            plan = self.store.get_rollback_plan(deployment_id)
            if plan is None:
                logger.warning(f"No rollback plan stored for {deployment_id}, using default plan")
                plan = RollbackPlan.build_default(deployment_id, stored.config)
            plan = plan.stamped(reason)

            was_live = stored.status in LIVE_STATUSES
            started_at = datetime.utcnow()

            # Terminal before any step runs; raises if the deployment moved on meanwhile
            self.store.update_status(deployment_id, DeploymentStatus.ROLLED_BACK)

            result = RollbackResult(
                deployment_id=deployment_id,
                version=stored.config.version,
                trigger=trigger,
                reason=reason,
                started_at=started_at,
            )

            for step in plan.ordered_steps():
                if not was_live and step.action in LIVE_ONLY_ACTIONS:
                    logger.info(
                        f"Rollback step '{step.id}' skipped: deployment {deployment_id} "
                        f"was never rolled out"
                    )
                    result.steps.append(StepOutcome(step.id, step.action, True, skipped=True))
                    continue
                result.steps.append(await self._run_step(step, stored))

            self._finalize_metrics(deployment_id)

            result.completed_at = datetime.utcnow()
            self._history.append(result)
            self._last[deployment_id] = result
            rollbacks_executed.labels(trigger.value).inc()

            if result.success:
                logger.info(f"Rollback completed for deployment {deployment_id}")
            else:
                logger.error(
                    f"Rollback of deployment {deployment_id} completed with failed steps: "
                    f"{', '.join(result.failed_steps)}"
                )

        await self._notify_listeners(deployment_id)
        return result

    async def _run_step(self, step: RollbackStep, stored: StoredDeployment) -> StepOutcome:
        handler = self._handlers.get(step.action)
        try:
            if handler is None:
                raise ValueError(f"Unsupported rollback action: {step.action.value}")
            await handler(step, stored)
        except Exception as e:
            rollback_step_failures.labels(step.action.value).inc()
            logger.error(
                f"Rollback step '{step.id}' failed for deployment {stored.deployment_id}: {e}"
            )
            return StepOutcome(step.id, step.action, False, str(e))

        logger.info(f"Rollback step '{step.id}' done for deployment {stored.deployment_id}")
        return StepOutcome(step.id, step.action, True)

    async def _disable_features(self, step: RollbackStep, stored: StoredDeployment):
        for feature in step.config.get("features", stored.config.features):
            self.flags.disable_flag(feature)

    async def _revert_config(self, step: RollbackStep, stored: StoredDeployment):
        # Checkpoints are taken per deployment when its rollout starts
        label = stored.deployment_id
        if not self.flags.has_checkpoint(label):
            logger.info(f"No flag checkpoint for deployment {label}, configuration unchanged")
            return
        self.flags.restore(label)

    async def _clear_cache(self, step: RollbackStep, stored: StoredDeployment):
        if self.cache is None:
            logger.debug("No cache configured, skipping cache clear")
            return
        self.cache.invalidate(step.config.get("cacheKeys", []))

    async def _notify_users(self, step: RollbackStep, stored: StoredDeployment):
        if self.notifier is None:
            logger.debug("No notifier configured, skipping user notification")
            return
        await self.notifier.notify(
            sorted(stored.config.target_groups),
            step.config.get("message", ""),
            stored.deployment_id,
        )

    def _finalize_metrics(self, deployment_id: str):
        """Freeze and persist final metrics; failures here never undo the rollback"""
        try:
            if self.aggregator.is_tracking(deployment_id):
                final = self.aggregator.finalize(deployment_id, DeploymentStatus.ROLLED_BACK)
            else:
                final = self.store.get_metrics(deployment_id)
                if final is None:
                    return
                final.status = DeploymentStatus.ROLLED_BACK
                final.end_time = final.end_time or datetime.utcnow()
            self.store.save_metrics(deployment_id, final)
        except (CollaboratorError, NotFoundError) as e:
            logger.error(f"Failed to persist final metrics for {deployment_id}: {e}")

    async def _notify_listeners(self, deployment_id: str):
        for callback in self._listeners:
            try:
                outcome = callback(deployment_id)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Rollback listener failed for {deployment_id}: {e}")

    def get_last_rollback(self, deployment_id: str) -> Optional[RollbackResult]:
        return self._last.get(deployment_id)

    def get_rollback_history(
        self,
        deployment_id: Optional[str] = None,
        limit: int = 10
    ) -> List[RollbackResult]:
        """Most recent rollbacks first"""
        history = self._history

        if deployment_id:
            history = [r for r in history if r.deployment_id == deployment_id]

        history = sorted(history, key=lambda r: r.started_at, reverse=True)

        return history[:limit]

    def get_rollback_stats(self) -> Dict[str, Any]:
        """Get rollback statistics"""
        total_rollbacks = len(self._history)
        successful = sum(1 for r in self._history if r.success)

        by_trigger = {}
        for result in self._history:
            trigger = result.trigger.value
            by_trigger[trigger] = by_trigger.get(trigger, 0) + 1

        return {
            "total_rollbacks": total_rollbacks,
            "successful": successful,
            "partial": total_rollbacks - successful,
            "success_rate": successful / total_rollbacks if total_rollbacks > 0 else 0.0,
            "by_trigger": by_trigger,
        }
