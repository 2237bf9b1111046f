"""
Deployment Data Model

Dataclasses for deployment configurations, live metrics, A/B results,
rollback plans and reports. Persisted and wire representations use the
camelCase field names of the stored records (``rolloutPercentage``,
``rollbackSteps``...), produced by ``to_dict`` and read back by ``from_dict``.
"""
from typing import Dict, List, Optional, Set, Any
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
import copy

from .exceptions import ValidationError


DEFAULT_VERSION = "1.0.0"
DEFAULT_ROLLOUT_PERCENTAGE = 10
DEFAULT_AB_DURATION_DAYS = 14
DEFAULT_MINIMUM_SAMPLE_SIZE = 100


class DeploymentStatus(Enum):
    """Lifecycle status of a deployment"""
    PLANNED = "planned"          # Created, not yet live
    ACTIVE = "active"            # Rolling out
    PAUSED = "paused"            # Live config kept, no inclusion granted
    COMPLETED = "completed"      # Terminal: features made permanent
    ROLLED_BACK = "rolled_back"  # Terminal: reverted


TERMINAL_STATUSES = {DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK}


class DeploymentStateMachine:
    """Validates deployment status transitions"""

    VALID_TRANSITIONS = {
        DeploymentStatus.PLANNED: {DeploymentStatus.ACTIVE, DeploymentStatus.ROLLED_BACK},
        DeploymentStatus.ACTIVE: {
            DeploymentStatus.PAUSED, DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK
        },
        DeploymentStatus.PAUSED: {
            DeploymentStatus.ACTIVE, DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK
        },
        DeploymentStatus.COMPLETED: set(),
        DeploymentStatus.ROLLED_BACK: set(),
    }

    @classmethod
    def is_valid_transition(cls, from_status: DeploymentStatus, to_status: DeploymentStatus) -> bool:
        # Same-status updates are idempotent
        if from_status == to_status:
            return True
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def allowed_sources(cls, to_status: DeploymentStatus) -> Set[DeploymentStatus]:
        """Statuses from which ``to_status`` may be reached, itself included"""
        sources = {s for s, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}
        sources.add(to_status)
        return sources

    @classmethod
    def is_terminal_state(cls, status: DeploymentStatus) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0


class Variant(Enum):
    """A/B buckets"""
    CONTROL = "control"
    TREATMENT = "treatment"


class InteractionType(Enum):
    """Events reported by the calling application"""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    CONVERSION = "conversion"
    ERROR = "error"
    FEEDBACK = "feedback"


class ABTestStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class ABTestWinner(Enum):
    CONTROL = "control"
    TREATMENT = "treatment"
    INCONCLUSIVE = "inconclusive"


class RollbackAction(Enum):
    """Reversal actions a rollback plan can contain"""
    DISABLE_FEATURE = "disable_feature"
    REVERT_CONFIG = "revert_config"
    CLEAR_CACHE = "clear_cache"
    NOTIFY_USERS = "notify_users"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        # Accept the trailing "Z" emitted by JavaScript clients
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        # Naive UTC throughout
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    raise ValueError(f"Invalid timestamp: {value!r}")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class RollbackThreshold:
    """Health boundaries whose breach triggers an automatic rollback"""
    error_rate: float = 0.05
    performance_score: float = 70.0
    user_complaint_rate: float = 0.02

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "RollbackThreshold":
        """Return a copy with the camelCase overrides applied"""
        data = self.to_dict()
        data.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return RollbackThreshold.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errorRate": self.error_rate,
            "performanceScore": self.performance_score,
            "userComplaintRate": self.user_complaint_rate,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RollbackThreshold":
        data = data or {}
        defaults = cls()
        return cls(
            error_rate=float(data.get("errorRate", defaults.error_rate)),
            performance_score=float(data.get("performanceScore", defaults.performance_score)),
            user_complaint_rate=float(data.get("userComplaintRate", defaults.user_complaint_rate)),
        )


@dataclass
class VariantConfig:
    """Feature configuration served to one A/B bucket"""
    name: str
    features: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "features": dict(self.features),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantConfig":
        return cls(
            name=data.get("name", ""),
            features=dict(data.get("features") or {}),
            description=data.get("description", ""),
        )


@dataclass
class ABTestConfig:
    """
    A/B test owned by exactly one deployment

    ``traffic_split`` is the percentage (0-100) of users inside the rollout
    routed to the treatment variant.
    """
    test_name: str
    control: VariantConfig
    treatment: VariantConfig
    traffic_split: float = 50.0
    success_metrics: List[str] = field(default_factory=list)
    duration: int = DEFAULT_AB_DURATION_DAYS
    minimum_sample_size: int = DEFAULT_MINIMUM_SAMPLE_SIZE

    def variant_config(self, variant: Variant) -> VariantConfig:
        return self.treatment if variant == Variant.TREATMENT else self.control

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testName": self.test_name,
            "variants": {
                "control": self.control.to_dict(),
                "treatment": self.treatment.to_dict(),
            },
            "trafficSplit": self.traffic_split,
            "successMetrics": list(self.success_metrics),
            "duration": self.duration,
            "minimumSampleSize": self.minimum_sample_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ABTestConfig":
        variants = data.get("variants") or {}
        return cls(
            test_name=data.get("testName", ""),
            control=VariantConfig.from_dict(variants.get("control") or {}),
            treatment=VariantConfig.from_dict(variants.get("treatment") or {}),
            traffic_split=float(data.get("trafficSplit", 50.0)),
            success_metrics=list(data.get("successMetrics") or []),
            duration=int(data.get("duration", DEFAULT_AB_DURATION_DAYS)),
            minimum_sample_size=int(data.get("minimumSampleSize", DEFAULT_MINIMUM_SAMPLE_SIZE)),
        )

    @staticmethod
    def validate(data: Any) -> List[str]:
        """Collect validation errors for a camelCase A/B test payload"""
        if not isinstance(data, dict):
            return ["A/B test configuration must be an object"]

        errors = []
        if not data.get("testName"):
            errors.append("A/B test name is required")

        variants = data.get("variants")
        if not isinstance(variants, dict) or not variants.get("control") or not variants.get("treatment"):
            errors.append("A/B test must have control and treatment variants")

        split = data.get("trafficSplit")
        if not is_number(split) or split < 0 or split > 100:
            errors.append("A/B test traffic split must be a number between 0 and 100")

        return errors


@dataclass
class DeploymentConfig:
    """
    Declarative description of a rollout

    Build from user input with ``from_partial``, which applies the documented
    defaults once. ``rollout_percentage`` only ever increases while the
    deployment is active.
    """
    version: str
    features: List[str] = field(default_factory=list)
    rollout_percentage: int = DEFAULT_ROLLOUT_PERCENTAGE
    target_groups: Set[str] = field(default_factory=set)
    start_date: datetime = field(default_factory=datetime.utcnow)
    end_date: Optional[datetime] = None
    enabled: bool = True
    rollback_threshold: RollbackThreshold = field(default_factory=RollbackThreshold)
    ab_test_config: Optional[ABTestConfig] = None

    @classmethod
    def from_partial(cls, partial: Optional[Dict[str, Any]] = None) -> "DeploymentConfig":
        """
        Create a configuration from a partial camelCase payload

        Missing optional fields take their defaults (version "1.0.0", rollout
        10%, no target groups, enabled, thresholds 0.05/70/0.02). Present but
        malformed fields raise ValidationError listing every problem.
        """
        partial = dict(partial or {})
        errors = []

        version = partial.get("version")
        if version is None:
            version = DEFAULT_VERSION
        elif not isinstance(version, str) or not version.strip():
            errors.append("Version must be a non-empty string")

        features = partial.get("features")
        if features is None:
            features = []
        elif not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            errors.append("Features must be an array of feature names")

        percentage = partial.get("rolloutPercentage")
        if percentage is None:
            percentage = DEFAULT_ROLLOUT_PERCENTAGE
        elif not is_number(percentage) or percentage < 0 or percentage > 100:
            errors.append("Rollout percentage must be a number between 0 and 100")
        elif isinstance(percentage, float) and not percentage.is_integer():
            errors.append("Rollout percentage must be a whole number")

        target_groups = partial.get("targetGroups")
        if target_groups is None:
            target_groups = []
        elif not isinstance(target_groups, (list, set, tuple)):
            errors.append("Target groups must be an array")

        thresholds = partial.get("rollbackThreshold")
        if thresholds is not None:
            if not isinstance(thresholds, dict):
                errors.append("Rollback threshold must be an object")
            elif not all(v is None or is_number(v) for v in thresholds.values()):
                errors.append("Rollback threshold values must be numbers")

        ab_data = partial.get("abTestConfig")
        if ab_data is not None:
            errors.extend(ABTestConfig.validate(ab_data))

        try:
            start_date = parse_datetime(partial.get("startDate")) or datetime.utcnow()
            end_date = parse_datetime(partial.get("endDate"))
        except ValueError as e:
            errors.append(str(e))
            start_date, end_date = datetime.utcnow(), None

        if errors:
            raise ValidationError("Invalid deployment configuration", details=errors)

        enabled = partial.get("enabled")

        return cls(
            version=version,
            features=list(dict.fromkeys(features)),
            rollout_percentage=int(percentage),
            target_groups=set(target_groups),
            start_date=start_date,
            end_date=end_date,
            enabled=enabled is not False,
            rollback_threshold=RollbackThreshold().merged(thresholds),
            ab_test_config=ABTestConfig.from_dict(ab_data) if ab_data is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "features": list(self.features),
            "rolloutPercentage": self.rollout_percentage,
            "targetGroups": sorted(self.target_groups),
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "enabled": self.enabled,
            "rollbackThreshold": self.rollback_threshold.to_dict(),
            "abTestConfig": self.ab_test_config.to_dict() if self.ab_test_config else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentConfig":
        ab_data = data.get("abTestConfig")
        return cls(
            version=data.get("version", DEFAULT_VERSION),
            features=list(data.get("features") or []),
            rollout_percentage=int(data.get("rolloutPercentage", DEFAULT_ROLLOUT_PERCENTAGE)),
            target_groups=set(data.get("targetGroups") or []),
            start_date=parse_datetime(data.get("startDate")) or datetime.utcnow(),
            end_date=parse_datetime(data.get("endDate")),
            enabled=data.get("enabled", True) is not False,
            rollback_threshold=RollbackThreshold.from_dict(data.get("rollbackThreshold")),
            ab_test_config=ABTestConfig.from_dict(ab_data) if ab_data else None,
        )


@dataclass
class StoredDeployment:
    """A deployment configuration as held by the config store"""
    deployment_id: str
    config: DeploymentConfig
    status: DeploymentStatus = DeploymentStatus.PLANNED
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    created_by: str = "admin"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.deployment_id}
        data.update(self.config.to_dict())
        data.update({
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "createdBy": self.created_by,
        })
        return data


@dataclass
class VariantResults:
    """Per-variant A/B counters"""
    name: str
    users: int = 0
    conversions: int = 0
    average_session_duration: float = 0.0
    error_rate: float = 0.0
    user_satisfaction: float = 0.0

    @property
    def conversion_rate(self) -> float:
        """Derived on every read; 0 when no users"""
        if self.users <= 0:
            return 0.0
        return self.conversions / self.users

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "users": self.users,
            "conversions": self.conversions,
            "conversionRate": self.conversion_rate,
            "averageSessionDuration": self.average_session_duration,
            "errorRate": self.error_rate,
            "userSatisfaction": self.user_satisfaction,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariantResults":
        # conversionRate is derived, never read back
        return cls(
            name=data.get("name", ""),
            users=int(data.get("users", 0)),
            conversions=int(data.get("conversions", 0)),
            average_session_duration=float(data.get("averageSessionDuration", 0.0)),
            error_rate=float(data.get("errorRate", 0.0)),
            user_satisfaction=float(data.get("userSatisfaction", 0.0)),
        )


@dataclass
class ABTestResults:
    """Live and final results of a deployment's A/B test"""
    test_name: str
    control: VariantResults
    treatment: VariantResults
    status: ABTestStatus = ABTestStatus.RUNNING
    statistical_significance: float = 0.0
    winner: Optional[ABTestWinner] = None
    confidence: float = 0.0

    @classmethod
    def initial(cls, config: ABTestConfig) -> "ABTestResults":
        return cls(
            test_name=config.test_name,
            control=VariantResults(name=config.control.name),
            treatment=VariantResults(name=config.treatment.name),
        )

    def variant(self, variant: Variant) -> VariantResults:
        return self.treatment if variant == Variant.TREATMENT else self.control

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "testName": self.test_name,
            "status": self.status.value,
            "variants": {
                "control": self.control.to_dict(),
                "treatment": self.treatment.to_dict(),
            },
            "statisticalSignificance": self.statistical_significance,
            "confidence": self.confidence,
        }
        if self.winner is not None:
            data["winner"] = self.winner.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ABTestResults":
        variants = data.get("variants") or {}
        winner = data.get("winner")
        return cls(
            test_name=data.get("testName", ""),
            control=VariantResults.from_dict(variants.get("control") or {}),
            treatment=VariantResults.from_dict(variants.get("treatment") or {}),
            status=ABTestStatus(data.get("status", ABTestStatus.RUNNING.value)),
            statistical_significance=float(data.get("statisticalSignificance", 0.0)),
            winner=ABTestWinner(winner) if winner else None,
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass
class DeploymentMetrics:
    """Aggregated health record for one deployment"""
    deployment_id: str
    version: str
    start_time: datetime = field(default_factory=datetime.utcnow)
    status: DeploymentStatus = DeploymentStatus.ACTIVE
    end_time: Optional[datetime] = None

    total_users: int = 0
    successful_sessions: int = 0
    error_rate: float = 0.0
    performance_score: float = 100.0
    user_feedback_score: float = 0.0
    conversion_rate: float = 0.0
    last_interaction_at: Optional[datetime] = None

    ab_test_results: Optional[ABTestResults] = None

    def copy(self) -> "DeploymentMetrics":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "deploymentId": self.deployment_id,
            "version": self.version,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "lastInteractionAt": _iso(self.last_interaction_at),
            "status": self.status.value,
            "metrics": {
                "totalUsers": self.total_users,
                "successfulSessions": self.successful_sessions,
                "errorRate": self.error_rate,
                "performanceScore": self.performance_score,
                "userFeedbackScore": self.user_feedback_score,
                "conversionRate": self.conversion_rate,
            },
        }
        if self.ab_test_results is not None:
            data["abTestResults"] = self.ab_test_results.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentMetrics":
        counters = data.get("metrics") or {}
        ab_data = data.get("abTestResults")
        return cls(
            deployment_id=data["deploymentId"],
            version=data.get("version", DEFAULT_VERSION),
            start_time=parse_datetime(data.get("startTime")) or datetime.utcnow(),
            end_time=parse_datetime(data.get("endTime")),
            last_interaction_at=parse_datetime(data.get("lastInteractionAt")),
            status=DeploymentStatus(data.get("status", DeploymentStatus.ACTIVE.value)),
            total_users=int(counters.get("totalUsers", 0)),
            successful_sessions=int(counters.get("successfulSessions", 0)),
            error_rate=float(counters.get("errorRate", 0.0)),
            performance_score=float(counters.get("performanceScore", 100.0)),
            user_feedback_score=float(counters.get("userFeedbackScore", 0.0)),
            conversion_rate=float(counters.get("conversionRate", 0.0)),
            ab_test_results=ABTestResults.from_dict(ab_data) if ab_data else None,
        )


@dataclass
class RollbackStep:
    """One reversal action; ``order`` defines execution sequence"""
    id: str
    description: str
    action: RollbackAction
    config: Dict[str, Any] = field(default_factory=dict)
    order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "action": self.action.value,
            "config": copy.deepcopy(self.config),
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackStep":
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            action=RollbackAction(data["action"]),
            config=dict(data.get("config") or {}),
            order=int(data.get("order", 0)),
        )


@dataclass
class RollbackPlan:
    """
    Predeclared reversal plan, created together with its deployment

    The stored plan is a template: ``reason`` stays empty and execution works
    on a stamped copy.
    """
    deployment_id: str
    version: str
    reason: str = ""
    steps: List[RollbackStep] = field(default_factory=list)
    estimated_duration: int = 15
    affected_users: int = 0
    data_preservation: bool = True

    @classmethod
    def build_default(
        cls,
        deployment_id: str,
        config: DeploymentConfig,
        estimated_duration: int = 15,
        affected_users_base: int = 1000,
        cache_keys: Optional[List[str]] = None,
        message: str = "We have temporarily disabled some features to improve your experience."
    ) -> "RollbackPlan":
        """Four-step plan: disable features, revert config, clear cache, notify"""
        steps = [
            RollbackStep(
                id="disable_features",
                description="Disable the new features",
                action=RollbackAction.DISABLE_FEATURE,
                config={"features": list(config.features)},
                order=1,
            ),
            RollbackStep(
                id="revert_config",
                description="Restore the previous configuration",
                action=RollbackAction.REVERT_CONFIG,
                config={"version": config.version},
                order=2,
            ),
            RollbackStep(
                id="clear_cache",
                description="Clear the feature caches",
                action=RollbackAction.CLEAR_CACHE,
                config={"cacheKeys": list(cache_keys or ["chat-config", "feature-flags"])},
                order=3,
            ),
            RollbackStep(
                id="notify_users",
                description="Notify users of the rollback",
                action=RollbackAction.NOTIFY_USERS,
                config={"message": message},
                order=4,
            ),
        ]

        return cls(
            deployment_id=deployment_id,
            version=config.version,
            reason="",
            steps=steps,
            estimated_duration=estimated_duration,
            affected_users=config.rollout_percentage * affected_users_base // 100,
            data_preservation=True,
        )

    def ordered_steps(self) -> List[RollbackStep]:
        """Steps by ascending order; sort stability keeps declaration order on ties"""
        return sorted(self.steps, key=lambda step: step.order)

    def stamped(self, reason: str) -> "RollbackPlan":
        plan = copy.deepcopy(self)
        plan.reason = reason
        return plan

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "version": self.version,
            "reason": self.reason,
            "rollbackSteps": [step.to_dict() for step in self.steps],
            "estimatedDuration": self.estimated_duration,
            "affectedUsers": self.affected_users,
            "dataPreservation": self.data_preservation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackPlan":
        return cls(
            deployment_id=data["deploymentId"],
            version=data.get("version", DEFAULT_VERSION),
            reason=data.get("reason", ""),
            steps=[RollbackStep.from_dict(s) for s in data.get("rollbackSteps") or []],
            estimated_duration=int(data.get("estimatedDuration", 15)),
            affected_users=int(data.get("affectedUsers", 0)),
            data_preservation=bool(data.get("dataPreservation", True)),
        )


@dataclass
class DeploymentReport:
    """Final report produced when a deployment completes"""
    deployment_id: str
    version: str
    duration_ms: int
    total_users: int
    success_rate: float
    error_rate: float
    performance_score: float
    user_satisfaction: float
    ab_test_results: Optional[ABTestResults] = None
    recommendations: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "version": self.version,
            "duration": self.duration_ms,
            "totalUsers": self.total_users,
            "successRate": self.success_rate,
            "errorRate": self.error_rate,
            "performanceScore": self.performance_score,
            "userSatisfaction": self.user_satisfaction,
            "abTestResults": self.ab_test_results.to_dict() if self.ab_test_results else None,
            "recommendations": list(self.recommendations),
            "generatedAt": _iso(self.generated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentReport":
        ab_data = data.get("abTestResults")
        return cls(
            deployment_id=data["deploymentId"],
            version=data.get("version", DEFAULT_VERSION),
            duration_ms=int(data.get("duration", 0)),
            total_users=int(data.get("totalUsers", 0)),
            success_rate=float(data.get("successRate", 0.0)),
            error_rate=float(data.get("errorRate", 0.0)),
            performance_score=float(data.get("performanceScore", 0.0)),
            user_satisfaction=float(data.get("userSatisfaction", 0.0)),
            ab_test_results=ABTestResults.from_dict(ab_data) if ab_data else None,
            recommendations=list(data.get("recommendations") or []),
            generated_at=parse_datetime(data.get("generatedAt")) or datetime.utcnow(),
        )
