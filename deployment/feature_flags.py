"""
Feature Flag Surface

Live on/off state of every feature a deployment ships. Rollouts enable their
features at the rollout percentage, rollbacks disable them, completion makes
them permanent. A checkpoint of the whole flag set is taken before a rollout
so the previous configuration can be restored.
"""
from typing import Dict, List, Optional, Set, Any, Iterable
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
from pathlib import Path
import copy
import json
import threading

from logger import get_logger

from .assignment import VariantAssigner

logger = get_logger(__name__)


class FlagStatus(Enum):
    """Feature flag status"""
    ENABLED = "enabled"           # Feature is enabled for everyone
    DISABLED = "disabled"         # Feature is disabled (kill switch)
    PERCENTAGE = "percentage"     # Enabled for a percentage of users


@dataclass
class FeatureFlag:
    """Whether a feature is served, and to whom"""
    name: str
    status: FlagStatus
    rollout_percentage: float = 0.0
    enabled_groups: Set[str] = field(default_factory=set)
    deployment_version: str = ""

    updated_at: datetime = field(default_factory=datetime.utcnow)

    # Evaluation counters
    enabled_count: int = 0
    disabled_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "rollout_percentage": self.rollout_percentage,
            "enabled_groups": sorted(self.enabled_groups),
            "deployment_version": self.deployment_version,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFlag":
        return cls(
            name=data["name"],
            status=FlagStatus(data["status"]),
            rollout_percentage=data.get("rollout_percentage", 0.0),
            enabled_groups=set(data.get("enabled_groups", [])),
            deployment_version=data.get("deployment_version", ""),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else datetime.utcnow(),
        )


def _status_for(percentage: float) -> FlagStatus:
    if percentage >= 100:
        return FlagStatus.ENABLED
    if percentage <= 0:
        return FlagStatus.DISABLED
    return FlagStatus.PERCENTAGE


class FeatureFlagManager:
    """
    Manages the live feature flags touched by deployments

    Example:
        flags = FeatureFlagManager(Path("config/feature_flags.json"))

        flags.checkpoint("2.0.0")
        flags.set_flag("markdown_rendering", rollout_percentage=10, deployment_version="2.0.0")

        if flags.is_enabled("markdown_rendering", key="user123"):
            ...

        # Rollback
        flags.disable_flag("markdown_rendering")
        flags.restore("2.0.0")
    """

    def __init__(self, config_path: Optional[Path] = None,
                 assigner: Optional[VariantAssigner] = None):
        """
        Args:
            config_path: JSON file persisting the flags; None keeps them in memory
            assigner: Hashing used for percentage evaluation
        """
        self.config_path = Path(config_path) if config_path else None
        self.assigner = assigner or VariantAssigner()
        self._lock = threading.RLock()
        self._flags: Dict[str, FeatureFlag] = {}
        self._checkpoints: Dict[str, Dict[str, FeatureFlag]] = {}

        self._load_flags()

    def set_flag(
        self,
        name: str,
        rollout_percentage: float = 100.0,
        enabled_groups: Optional[Iterable[str]] = None,
        deployment_version: str = ""
    ):
        """Create or update a flag at the given rollout percentage"""
        with self._lock:
            flag = self._flags.get(name)
            if flag is None:
                flag = FeatureFlag(name=name, status=_status_for(rollout_percentage))
                self._flags[name] = flag

            flag.status = _status_for(rollout_percentage)
            flag.rollout_percentage = rollout_percentage
            flag.enabled_groups = set(enabled_groups or ())
            if deployment_version:
                flag.deployment_version = deployment_version
            flag.updated_at = datetime.utcnow()

            logger.info(
                f"Set feature flag: {name} "
                f"(status={flag.status.value}, rollout={rollout_percentage}%)"
            )
            self._save_flags()

    def is_enabled(self, name: str, key: Optional[str] = None,
                   group: Optional[str] = None) -> bool:
        """
        Check if a feature is served to an identifier

        Args:
            name: Flag name
            key: Stable user/session identifier
            group: Audience tag of the caller
        """
        with self._lock:
            flag = self._flags.get(name)
            if flag is None:
                logger.debug(f"Feature flag not found: {name}, defaulting to disabled")
                return False

            if flag.status == FlagStatus.DISABLED:
                enabled = False
            elif flag.enabled_groups and group not in flag.enabled_groups:
                enabled = False
            elif flag.status == FlagStatus.ENABLED:
                enabled = True
            else:
                # Percentage rollout needs an identifier to hash
                enabled = bool(key) and self.assigner.is_included_in_rollout(
                    key, flag.rollout_percentage
                )

            if enabled:
                flag.enabled_count += 1
            else:
                flag.disabled_count += 1
            return enabled

    def enable_flag(self, name: str):
        """Make a flag permanent (100% rollout, no audience restriction)"""
        self.set_flag(name, rollout_percentage=100)

    def disable_flag(self, name: str):
        """Kill switch"""
        with self._lock:
            flag = self._flags.get(name)
            if flag is None:
                flag = FeatureFlag(name=name, status=FlagStatus.DISABLED)
                self._flags[name] = flag

            flag.status = FlagStatus.DISABLED
            flag.rollout_percentage = 0.0
            flag.updated_at = datetime.utcnow()

            logger.warning(f"Disabled feature flag: {name}")
            self._save_flags()

    def set_rollout_percentage(self, name: str, percentage: float):
        """Update rollout percentage, keeping audience restrictions"""
        with self._lock:
            flag = self._flags.get(name)
            if flag is None:
                self.set_flag(name, rollout_percentage=percentage)
                return

            flag.rollout_percentage = percentage
            flag.status = _status_for(percentage)
            flag.updated_at = datetime.utcnow()

            logger.info(f"Updated rollout percentage for {name}: {percentage}%")
            self._save_flags()

    def checkpoint(self, label: str):
        """Remember the current flag set under ``label``"""
        with self._lock:
            self._checkpoints[label] = copy.deepcopy(self._flags)
            logger.info(f"Checkpointed {len(self._flags)} feature flags as '{label}'")
            self._save_flags()

    def restore(self, label: str):
        """
        Restore the flag set remembered under ``label``

        Raises:
            KeyError: If no checkpoint exists for ``label``
        """
        with self._lock:
            if label not in self._checkpoints:
                raise KeyError(f"No feature flag checkpoint for '{label}'")

            self._flags = copy.deepcopy(self._checkpoints[label])
            logger.warning(f"Restored feature flags from checkpoint '{label}'")
            self._save_flags()

    def has_checkpoint(self, label: str) -> bool:
        with self._lock:
            return label in self._checkpoints

    def get_flag(self, name: str) -> Optional[FeatureFlag]:
        with self._lock:
            flag = self._flags.get(name)
            return copy.deepcopy(flag) if flag else None

    def list_flags(self) -> List[FeatureFlag]:
        with self._lock:
            return [copy.deepcopy(flag) for flag in self._flags.values()]

    def get_enabled_flags(self) -> List[str]:
        with self._lock:
            return [
                name for name, flag in self._flags.items()
                if flag.status != FlagStatus.DISABLED
            ]

    def get_flag_stats(self, name: str) -> Dict[str, Any]:
        """Evaluation statistics for a flag"""
        with self._lock:
            if name not in self._flags:
                return {}

            flag = self._flags[name]
            total_checks = flag.enabled_count + flag.disabled_count

            return {
                "name": name,
                "status": flag.status.value,
                "rollout_percentage": flag.rollout_percentage,
                "enabled_count": flag.enabled_count,
                "disabled_count": flag.disabled_count,
                "total_checks": total_checks,
                "actual_enabled_percentage": (
                    flag.enabled_count / total_checks * 100 if total_checks > 0 else 0
                ),
            }

    def _load_flags(self):
        """Load flags and checkpoints from the configuration file"""
        if self.config_path is None:
            return

        if not self.config_path.exists():
            logger.info(f"No feature flag config found at {self.config_path}")
            return

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            for flag_data in data.get("flags", []):
                flag = FeatureFlag.from_dict(flag_data)
                self._flags[flag.name] = flag

            for label, flags in data.get("checkpoints", {}).items():
                self._checkpoints[label] = {
                    f["name"]: FeatureFlag.from_dict(f) for f in flags
                }

            logger.info(f"Loaded {len(self._flags)} feature flags from {self.config_path}")

        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Error loading feature flags: {e}")

    def _save_flags(self):
        """Persist flags; a failed write keeps the in-memory state authoritative"""
        if self.config_path is None:
            return

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            data = {
                "flags": [flag.to_dict() for flag in self._flags.values()],
                "checkpoints": {
                    label: [flag.to_dict() for flag in flags.values()]
                    for label, flags in self._checkpoints.items()
                },
            }

            with open(self.config_path, 'w') as f:
                json.dump(data, f, indent=2)

        except OSError as e:
            logger.error(f"Error saving feature flags: {e}")
