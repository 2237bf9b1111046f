"""
Deployment Metrics Aggregation

Folds reported user interactions into per-deployment, per-variant counters
and serves consistent point-in-time snapshots to the health monitor and to
report generation.
"""
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass, field
from collections import deque
from datetime import datetime
import math
import threading

from logger import get_logger
from metrics import interactions_recorded

from . import ab_testing
from .exceptions import NotFoundError
from .models import (
    ABTestConfig,
    ABTestResults,
    ABTestStatus,
    DeploymentMetrics,
    DeploymentStatus,
    InteractionType,
    Variant,
    parse_datetime,
)

logger = get_logger(__name__)


@dataclass
class _VariantAccumulator:
    """Raw per-variant sums behind the averaged fields of VariantResults"""
    events: int = 0
    errors: int = 0
    sessions_ended: int = 0
    session_duration_total: float = 0.0
    satisfaction_samples: int = 0
    satisfaction_total: float = 0.0


@dataclass
class _LiveDeployment:
    metrics: DeploymentMetrics
    minimum_sample_size: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)

    total_events: int = 0
    errors: int = 0
    conversions: int = 0
    feedback_samples: int = 0
    feedback_total: float = 0.0
    performance_samples: int = 0
    performance_total: float = 0.0

    variants: Dict[Variant, _VariantAccumulator] = field(default_factory=lambda: {
        Variant.CONTROL: _VariantAccumulator(),
        Variant.TREATMENT: _VariantAccumulator(),
    })


def _payload_number(payload: Dict[str, Any], name: str) -> Optional[float]:
    """Numeric payload field, None when absent"""
    value = payload.get(name)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Payload field '{name}' must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Payload field '{name}' must be a number, got {value!r}")
    if math.isnan(number):
        raise ValueError(f"Payload field '{name}' must be a number, got NaN")
    return number


def _feedback_score(payload: Dict[str, Any]) -> Optional[float]:
    """Satisfaction sample in [0, 1] from a ``score`` or a 1-5 ``rating``"""
    score = _payload_number(payload, "score")
    if score is None:
        rating = _payload_number(payload, "rating")
        if rating is None:
            return None
        score = rating / 5
    return min(1.0, max(0.0, score))


class MetricsAggregator:
    """
    Thread-safe metrics accumulator for live deployments

    Every deployment has its own lock; the critical sections never await, so
    the same lock protects concurrent threads and concurrent coroutines.
    Snapshots are deep copies, never live references.

    Example:
        aggregator = MetricsAggregator()
        aggregator.register("deploy_1", "2.0.0", ab_test_config)

        aggregator.record_interaction(
            "deploy_1", "user123", Variant.TREATMENT,
            InteractionType.SESSION_START
        )
        aggregator.record_interaction(
            "deploy_1", "user123", Variant.TREATMENT,
            InteractionType.FEEDBACK, {"score": 0.9}
        )

        metrics = aggregator.snapshot("deploy_1")
        print(f"Error rate: {metrics.error_rate:.2%}")
    """

    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._live: Dict[str, _LiveDeployment] = {}
        self._history: deque = deque(maxlen=history_size)

    def register(
        self,
        deployment_id: str,
        version: str,
        ab_test_config: Optional[ABTestConfig] = None,
        start_time: Optional[datetime] = None
    ) -> DeploymentMetrics:
        """Start tracking a deployment with all counters zeroed"""
        metrics = DeploymentMetrics(
            deployment_id=deployment_id,
            version=version,
            start_time=start_time or datetime.utcnow(),
            status=DeploymentStatus.ACTIVE,
        )
        minimum_sample_size = 0
        if ab_test_config is not None:
            metrics.ab_test_results = ABTestResults.initial(ab_test_config)
            minimum_sample_size = ab_test_config.minimum_sample_size

        with self._lock:
            self._live[deployment_id] = _LiveDeployment(
                metrics=metrics,
                minimum_sample_size=minimum_sample_size,
            )

        logger.info(f"Tracking metrics for deployment {deployment_id} (version {version})")
        return metrics.copy()

    def is_tracking(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._live

    def _get_live(self, deployment_id: str) -> _LiveDeployment:
        with self._lock:
            live = self._live.get(deployment_id)
        if live is None:
            raise NotFoundError("Deployment is not being tracked", deployment_id)
        return live

    def record_interaction(
        self,
        deployment_id: str,
        identifier: str,
        variant: Optional[Union[Variant, str]],
        interaction_type: Union[InteractionType, str],
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[Union[datetime, str]] = None
    ):
        """
        Fold one interaction into the counters

        Args:
            deployment_id: Deployment the interaction belongs to
            identifier: Stable user/session identifier
            variant: A/B bucket of the user, None outside an A/B test
            interaction_type: session_start, session_end, conversion, error or feedback
            payload: Event data (``success``, ``duration``, ``score``/``rating``,
                ``performanceScore``)
            timestamp: When the interaction happened (ISO string or datetime),
                defaults to now

        Raises:
            NotFoundError: Deployment not tracked
            ValueError: Unknown interaction type or variant, non-numeric payload field
        """
        interaction_type = InteractionType(interaction_type)
        if variant is not None:
            variant = Variant(variant)
        payload = payload or {}

        # Parsed up front so a malformed payload leaves every counter untouched
        success = bool(payload.get("success", True))
        duration = _payload_number(payload, "duration") \
            if interaction_type == InteractionType.SESSION_END else None
        score = _feedback_score(payload) if interaction_type == InteractionType.FEEDBACK else None
        performance = _payload_number(payload, "performanceScore")
        occurred_at = parse_datetime(timestamp) or datetime.utcnow()

        live = self._get_live(deployment_id)

        with live.lock:
            metrics = live.metrics
            ab_results = metrics.ab_test_results
            variant_results = ab_results.variant(variant) if ab_results and variant else None
            accumulator = live.variants[variant] if variant_results else None

            live.total_events += 1
            if accumulator:
                accumulator.events += 1
            if metrics.last_interaction_at is None or occurred_at > metrics.last_interaction_at:
                metrics.last_interaction_at = occurred_at

            if interaction_type == InteractionType.SESSION_START:
                metrics.total_users += 1
                if variant_results:
                    variant_results.users += 1

            elif interaction_type == InteractionType.SESSION_END:
                if success:
                    metrics.successful_sessions += 1
                if accumulator and duration is not None:
                    accumulator.sessions_ended += 1
                    accumulator.session_duration_total += duration
                    variant_results.average_session_duration = (
                        accumulator.session_duration_total / accumulator.sessions_ended
                    )

            elif interaction_type == InteractionType.CONVERSION:
                live.conversions += 1
                if variant_results:
                    variant_results.conversions += 1

            elif interaction_type == InteractionType.ERROR:
                live.errors += 1
                if accumulator:
                    accumulator.errors += 1

            elif interaction_type == InteractionType.FEEDBACK:
                if score is None:
                    logger.debug(f"Feedback without score ignored for deployment {deployment_id}")
                else:
                    live.feedback_samples += 1
                    live.feedback_total += score
                    metrics.user_feedback_score = live.feedback_total / live.feedback_samples
                    if accumulator:
                        accumulator.satisfaction_samples += 1
                        accumulator.satisfaction_total += score
                        variant_results.user_satisfaction = (
                            accumulator.satisfaction_total / accumulator.satisfaction_samples
                        )

            if performance is not None:
                live.performance_samples += 1
                live.performance_total += performance
                metrics.performance_score = live.performance_total / live.performance_samples

            # Derived rates
            metrics.error_rate = live.errors / live.total_events
            metrics.conversion_rate = (
                live.conversions / metrics.total_users if metrics.total_users > 0 else 0.0
            )
            if accumulator:
                variant_results.error_rate = accumulator.errors / accumulator.events

        interactions_recorded.labels(interaction_type.value).inc()
        logger.debug(
            f"Recorded {interaction_type.value} for deployment {deployment_id} "
            f"(identifier={identifier}, variant={variant.value if variant else None})"
        )

    def snapshot(self, deployment_id: str) -> DeploymentMetrics:
        """
        Consistent point-in-time copy of a tracked deployment's metrics

        Raises:
            NotFoundError: Deployment not tracked
        """
        live = self._get_live(deployment_id)

        with live.lock:
            metrics = live.metrics.copy()
            minimum_sample_size = live.minimum_sample_size

        if metrics.ab_test_results is not None:
            ab_testing.evaluate(metrics.ab_test_results, minimum_sample_size)

        return metrics

    def set_status(self, deployment_id: str, status: DeploymentStatus):
        """Mirror a non-terminal status change (pause/resume)"""
        live = self._get_live(deployment_id)
        with live.lock:
            live.metrics.status = status

    def finalize(self, deployment_id: str, status: DeploymentStatus) -> DeploymentMetrics:
        """
        Stop tracking a deployment and append its final metrics to history

        Raises:
            NotFoundError: Deployment not tracked
        """
        with self._lock:
            live = self._live.pop(deployment_id, None)
        if live is None:
            raise NotFoundError("Deployment is not being tracked", deployment_id)

        with live.lock:
            live.metrics.status = status
            live.metrics.end_time = datetime.utcnow()
            final = live.metrics.copy()

        if final.ab_test_results is not None:
            final.ab_test_results.status = (
                ABTestStatus.COMPLETED if status == DeploymentStatus.COMPLETED
                else ABTestStatus.STOPPED
            )
            ab_testing.evaluate(final.ab_test_results, live.minimum_sample_size)

        with self._lock:
            self._history.append(final)

        logger.info(f"Finalized metrics for deployment {deployment_id} ({status.value})")
        return final.copy()

    def history(self, deployment_id: Optional[str] = None) -> List[DeploymentMetrics]:
        """Final metrics of terminated deployments, oldest first"""
        with self._lock:
            entries = list(self._history)
        if deployment_id:
            entries = [m for m in entries if m.deployment_id == deployment_id]
        return [m.copy() for m in entries]
