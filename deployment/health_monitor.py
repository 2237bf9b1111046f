"""
Deployment Health Monitoring

Periodically evaluates a live deployment's metrics against its rollback
thresholds and triggers an automatic rollback on the first breach.
"""
from typing import Dict, Optional, Any
from dataclasses import dataclass
from enum import Enum
from datetime import datetime
import asyncio

from logger import get_logger
from metrics import monitor_ticks, active_monitors

from .exceptions import CollaboratorError
from .models import DeploymentMetrics, DeploymentStatus, RollbackThreshold, TERMINAL_STATUSES
from .rollback import AUTOMATIC_ROLLBACK_REASON, RollbackTrigger

logger = get_logger(__name__)


def should_rollback(metrics: DeploymentMetrics, thresholds: RollbackThreshold) -> bool:
    """
    True when any threshold is breached

    A feedback score of exactly 0 means no feedback has been collected yet,
    so the complaint-rate term only applies once the score is positive.
    """
    if metrics.error_rate > thresholds.error_rate:
        return True

    if metrics.performance_score < thresholds.performance_score:
        return True

    if metrics.user_feedback_score > 0 and \
            (1 - metrics.user_feedback_score) > thresholds.user_complaint_rate:
        return True

    return False


class MonitorState(Enum):
    """Lifecycle of a monitor loop"""
    RUNNING = "running"
    STOPPED = "stopped"                        # Cancelled or deployment left active
    ROLLBACK_TRIGGERED = "rollback_triggered"  # Threshold breached
    EXPIRED = "expired"                        # Observation period over


@dataclass
class MonitorHandle:
    deployment_id: str
    task: Optional[asyncio.Task]
    state: MonitorState = MonitorState.RUNNING
    started_at: datetime = None
    ticks: int = 0
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None
    evaluating: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "state": self.state.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "ticks": self.ticks,
            "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "lastError": self.last_error,
        }


class HealthMonitor:
    """
    One cancellable evaluation loop per deployment

    Loops stop on their own when the lifetime elapses, when a rollback is
    triggered or when the deployment leaves the active/paused states; they
    can be stopped at any time with ``cancel``. Tick failures are logged and
    the loop carries on with the next tick.

    Example:
        monitor = HealthMonitor(aggregator, executor, store, interval_seconds=60)
        executor.add_listener(monitor.cancel)

        monitor.start("deploy_1")
        ...
        await monitor.shutdown()
    """

    def __init__(self, aggregator, executor, store,
                 interval_seconds: float = 60.0,
                 max_lifetime_seconds: float = 24 * 3600):
        """
        Args:
            aggregator: MetricsAggregator providing snapshots
            executor: RollbackExecutor run on breach
            store: ConfigStore holding thresholds and metrics snapshots
            interval_seconds: Time between ticks
            max_lifetime_seconds: Observation period after which the loop ends
        """
        self.aggregator = aggregator
        self.executor = executor
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_lifetime_seconds = max_lifetime_seconds

        self._handles: Dict[str, MonitorHandle] = {}

    def start(self, deployment_id: str) -> MonitorHandle:
        """
        Schedule the monitor loop on the running event loop

        Starting a deployment that is already monitored returns the running
        handle.
        """
        handle = self._handles.get(deployment_id)
        if handle and handle.state == MonitorState.RUNNING:
            return handle

        handle = MonitorHandle(
            deployment_id=deployment_id,
            task=None,
            started_at=datetime.utcnow(),
        )
        self._handles[deployment_id] = handle
        handle.task = asyncio.get_running_loop().create_task(
            self._run(handle), name=f"health-monitor-{deployment_id}"
        )
        active_monitors.inc()

        logger.info(
            f"Health monitoring started for {deployment_id} "
            f"(interval={self.interval_seconds}s, lifetime={self.max_lifetime_seconds}s)"
        )
        return handle

    async def tick(self, deployment_id: str) -> bool:
        """
        Evaluate the deployment once

        Returns:
            True if a rollback was triggered

        Raises:
            NotFoundError: Deployment unknown or not tracked
        """
        config = self.store.get(deployment_id)
        if config is None:
            logger.warning(f"Monitored deployment {deployment_id} no longer exists")
            return False

        snapshot = self.aggregator.snapshot(deployment_id)

        try:
            self.store.save_metrics(deployment_id, snapshot)
        except CollaboratorError as e:
            logger.error(f"Failed to persist metrics snapshot for {deployment_id}: {e}")

        if not should_rollback(snapshot, config.rollback_threshold):
            monitor_ticks.labels("healthy").inc()
            logger.debug(
                f"Deployment {deployment_id} healthy: error_rate={snapshot.error_rate:.4f}, "
                f"performance={snapshot.performance_score:.1f}, "
                f"feedback={snapshot.user_feedback_score:.2f}"
            )
            return False

        monitor_ticks.labels("breach").inc()
        logger.warning(
            f"Rollback threshold breached for {deployment_id}: "
            f"error_rate={snapshot.error_rate:.4f} (max {config.rollback_threshold.error_rate}), "
            f"performance={snapshot.performance_score:.1f} "
            f"(min {config.rollback_threshold.performance_score}), "
            f"feedback={snapshot.user_feedback_score:.2f}"
        )

        handle = self._handles.get(deployment_id)
        if handle:
            handle.state = MonitorState.ROLLBACK_TRIGGERED

        await self.executor.execute(
            deployment_id, AUTOMATIC_ROLLBACK_REASON, RollbackTrigger.AUTOMATIC
        )
        return True

    async def _run(self, handle: MonitorHandle):
        deployment_id = handle.deployment_id
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_lifetime_seconds

        try:
            while True:
                await asyncio.sleep(self.interval_seconds)

                if loop.time() >= deadline:
                    handle.state = MonitorState.EXPIRED
                    logger.info(f"Monitoring period over for {deployment_id}")
                    break

                try:
                    status = self.store.get_status(deployment_id)
                    if status is None or status in TERMINAL_STATUSES:
                        handle.state = MonitorState.STOPPED
                        logger.info(f"Deployment {deployment_id} no longer live, monitoring stopped")
                        break
                    if status == DeploymentStatus.PAUSED:
                        continue

                    handle.ticks += 1
                    handle.last_tick_at = datetime.utcnow()
                    handle.evaluating = True
                    try:
                        triggered = await self.tick(deployment_id)
                    finally:
                        handle.evaluating = False
                    if triggered:
                        handle.state = MonitorState.ROLLBACK_TRIGGERED
                        break

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    monitor_ticks.labels("error").inc()
                    handle.last_error = str(e)
                    logger.error(f"Health check failed for {deployment_id}: {e}")

        except asyncio.CancelledError:
            if handle.state == MonitorState.RUNNING:
                handle.state = MonitorState.STOPPED
            logger.info(f"Health monitoring cancelled for {deployment_id}")
            raise

        finally:
            active_monitors.dec()

    async def cancel(self, deployment_id: str):
        """
        Stop the loop of a deployment

        Idempotent; a loop calling this from inside its own tick (automatic
        rollback) is left to finish on its own, and a rollback the loop is
        executing is awaited rather than interrupted.
        """
        handle = self._handles.get(deployment_id)
        if handle is None or handle.task is None or handle.task.done():
            return

        if handle.task is asyncio.current_task():
            return

        if not (handle.evaluating and handle.state == MonitorState.ROLLBACK_TRIGGERED):
            handle.task.cancel()
        await asyncio.wait({handle.task})

    def get_state(self, deployment_id: str) -> Optional[MonitorState]:
        handle = self._handles.get(deployment_id)
        return handle.state if handle else None

    def get_handle(self, deployment_id: str) -> Optional[MonitorHandle]:
        return self._handles.get(deployment_id)

    def is_running(self, deployment_id: str) -> bool:
        handle = self._handles.get(deployment_id)
        return bool(handle and handle.task and not handle.task.done())

    @property
    def running_count(self) -> int:
        return sum(1 for d in self._handles if self.is_running(d))

    async def shutdown(self):
        """Cancel every running loop"""
        running = [d for d in self._handles if self.is_running(d)]
        for deployment_id in running:
            await self.cancel(deployment_id)
        if running:
            logger.info(f"Stopped {len(running)} health monitor loops")
