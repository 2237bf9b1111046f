"""
Deployment Config Store

Durable CRUD for deployment configurations plus the documents that belong to
a deployment (rollback plan, metrics snapshot, final report). No business
logic lives here: database failures surface to the caller as
CollaboratorError and are never retried inside the store.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
import copy
import functools
import threading

from sqlalchemy.exc import SQLAlchemyError

from .exceptions import NotFoundError, InvalidTransitionError, CollaboratorError
from .models import (
    DeploymentConfig,
    DeploymentMetrics,
    DeploymentReport,
    DeploymentStateMachine,
    DeploymentStatus,
    RollbackPlan,
    StoredDeployment,
)


class ConfigStore(ABC):
    """Storage interface for deployments and their documents"""

    @abstractmethod
    def save(self, deployment_id: str, config: DeploymentConfig,
             created_by: str = "admin") -> StoredDeployment:
        """Insert a deployment (status planned) or replace its configuration"""

    @abstractmethod
    def get_deployment(self, deployment_id: str) -> Optional[StoredDeployment]:
        """Configuration, status and metadata, or None if unknown"""

    @abstractmethod
    def update_status(self, deployment_id: str, status: DeploymentStatus) -> StoredDeployment:
        """
        Move a deployment to ``status``

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Transition not allowed from current status
        """

    @abstractmethod
    def list_deployments(self, status: Optional[DeploymentStatus] = None,
                         limit: int = 20, offset: int = 0) -> Tuple[List[StoredDeployment], int]:
        """Page of deployments (newest first) and the total matching count"""

    @abstractmethod
    def delete(self, deployment_id: str) -> bool:
        """Remove a deployment and its documents"""

    @abstractmethod
    def save_rollback_plan(self, deployment_id: str, plan: RollbackPlan):
        pass

    @abstractmethod
    def get_rollback_plan(self, deployment_id: str) -> Optional[RollbackPlan]:
        pass

    @abstractmethod
    def save_metrics(self, deployment_id: str, metrics: DeploymentMetrics):
        pass

    @abstractmethod
    def get_metrics(self, deployment_id: str) -> Optional[DeploymentMetrics]:
        pass

    @abstractmethod
    def save_report(self, deployment_id: str, report: DeploymentReport):
        pass

    @abstractmethod
    def get_report(self, deployment_id: str) -> Optional[DeploymentReport]:
        pass

    def get(self, deployment_id: str) -> Optional[DeploymentConfig]:
        """Configuration only, or None if unknown"""
        stored = self.get_deployment(deployment_id)
        return stored.config if stored else None

    def get_status(self, deployment_id: str) -> Optional[DeploymentStatus]:
        stored = self.get_deployment(deployment_id)
        return stored.status if stored else None

    def close(self):
        """Release underlying resources"""


class InMemoryConfigStore(ConfigStore):
    """
    Process-local store for tests and development

    Values are copied on the way in and out so callers never share state with
    the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._deployments: Dict[str, StoredDeployment] = {}
        self._documents: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def save(self, deployment_id, config, created_by="admin"):
        with self._lock:
            existing = self._deployments.get(deployment_id)
            if existing:
                existing.config = copy.deepcopy(config)
                existing.updated_at = datetime.utcnow()
            else:
                existing = StoredDeployment(
                    deployment_id=deployment_id,
                    config=copy.deepcopy(config),
                    created_by=created_by,
                )
                self._deployments[deployment_id] = existing
            return copy.deepcopy(existing)

    def get_deployment(self, deployment_id):
        with self._lock:
            stored = self._deployments.get(deployment_id)
            return copy.deepcopy(stored) if stored else None

    def update_status(self, deployment_id, status):
        with self._lock:
            stored = self._deployments.get(deployment_id)
            if stored is None:
                raise NotFoundError("Deployment not found", deployment_id)

            if not DeploymentStateMachine.is_valid_transition(stored.status, status):
                raise InvalidTransitionError(
                    f"Cannot move deployment from {stored.status.value} to {status.value}",
                    deployment_id
                )

            stored.status = status
            stored.updated_at = datetime.utcnow()
            return copy.deepcopy(stored)

    def list_deployments(self, status=None, limit=20, offset=0):
        with self._lock:
            deployments = [
                d for d in self._deployments.values()
                if status is None or d.status == status
            ]
            # Insertion order breaks created_at ties
            ordered = list(reversed(deployments))
            ordered.sort(key=lambda d: d.created_at, reverse=True)
            page = ordered[offset:offset + limit]
            return [copy.deepcopy(d) for d in page], len(deployments)

    def delete(self, deployment_id):
        with self._lock:
            removed = self._deployments.pop(deployment_id, None) is not None
            for key in [k for k in self._documents if k[0] == deployment_id]:
                del self._documents[key]
            return removed

    def _put(self, deployment_id: str, kind: str, payload: Dict[str, Any]):
        with self._lock:
            self._documents[(deployment_id, kind)] = copy.deepcopy(payload)

    def _get(self, deployment_id: str, kind: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._documents.get((deployment_id, kind))
            return copy.deepcopy(payload) if payload is not None else None

    def save_rollback_plan(self, deployment_id, plan):
        self._put(deployment_id, "rollback_plan", plan.to_dict())

    def get_rollback_plan(self, deployment_id):
        payload = self._get(deployment_id, "rollback_plan")
        return RollbackPlan.from_dict(payload) if payload else None

    def save_metrics(self, deployment_id, metrics):
        self._put(deployment_id, "metrics", metrics.to_dict())

    def get_metrics(self, deployment_id):
        payload = self._get(deployment_id, "metrics")
        return DeploymentMetrics.from_dict(payload) if payload else None

    def save_report(self, deployment_id, report):
        self._put(deployment_id, "report", report.to_dict())

    def get_report(self, deployment_id):
        payload = self._get(deployment_id, "report")
        return DeploymentReport.from_dict(payload) if payload else None


def _persistence(func):
    """Surface database failures as CollaboratorError"""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except SQLAlchemyError as e:
            deployment_id = kwargs.get("deployment_id") or next(
                (a for a in args[:1] if isinstance(a, str)), None
            )
            raise CollaboratorError(
                f"Persistence failure in {func.__name__}", "persistence", e, deployment_id
            )
    return wrapper


class SQLConfigStore(ConfigStore):
    """
    Config store backed by the SQLAlchemy ``Storage``

    Example:
        storage = Storage("sqlite:///data/rollout_controller.db")
        storage.init_db()
        store = SQLConfigStore(storage)

        store.save("deploy_1", DeploymentConfig.from_partial({"version": "2.0.0"}))
        store.update_status("deploy_1", DeploymentStatus.ACTIVE)
    """

    def __init__(self, storage):
        """
        Args:
            storage: Initialized storage.Storage instance
        """
        self.storage = storage

    @staticmethod
    def _to_stored(row: Dict[str, Any]) -> StoredDeployment:
        return StoredDeployment(
            deployment_id=row["deployment_id"],
            config=DeploymentConfig.from_dict(row["config"]),
            status=DeploymentStatus(row["status"]),
            created_at=row["created_at"] or datetime.utcnow(),
            updated_at=row["updated_at"] or datetime.utcnow(),
            created_by=row["created_by"] or "admin",
        )

    @_persistence
    def save(self, deployment_id, config, created_by="admin"):
        row = self.storage.save_deployment(
            deployment_id=deployment_id,
            version=config.version,
            status=DeploymentStatus.PLANNED.value,
            config=config.to_dict(),
            created_by=created_by,
        )
        return self._to_stored(row)

    @_persistence
    def get_deployment(self, deployment_id):
        row = self.storage.get_deployment(deployment_id)
        return self._to_stored(row) if row else None

    @_persistence
    def update_status(self, deployment_id, status):
        allowed = [s.value for s in DeploymentStateMachine.allowed_sources(status)]
        try:
            row = self.storage.update_deployment_status(deployment_id, status.value, allowed)
        except ValueError as e:
            raise InvalidTransitionError(str(e), deployment_id)

        if row is None:
            raise NotFoundError("Deployment not found", deployment_id)

        return self._to_stored(row)

    @_persistence
    def list_deployments(self, status=None, limit=20, offset=0):
        status_value = status.value if status else None
        rows = self.storage.list_deployments(status_value, limit=limit, offset=offset)
        total = self.storage.count_deployments(status_value)
        return [self._to_stored(row) for row in rows], total

    @_persistence
    def delete(self, deployment_id):
        return self.storage.delete_deployment(deployment_id)

    @_persistence
    def save_rollback_plan(self, deployment_id, plan):
        self.storage.put_document(deployment_id, "rollback_plan", plan.to_dict())

    @_persistence
    def get_rollback_plan(self, deployment_id):
        payload = self.storage.get_document(deployment_id, "rollback_plan")
        return RollbackPlan.from_dict(payload) if payload else None

    @_persistence
    def save_metrics(self, deployment_id, metrics):
        self.storage.put_document(deployment_id, "metrics", metrics.to_dict())

    @_persistence
    def get_metrics(self, deployment_id):
        payload = self.storage.get_document(deployment_id, "metrics")
        return DeploymentMetrics.from_dict(payload) if payload else None

    @_persistence
    def save_report(self, deployment_id, report):
        self.storage.put_document(deployment_id, "report", report.to_dict())

    @_persistence
    def get_report(self, deployment_id):
        payload = self.storage.get_document(deployment_id, "report")
        return DeploymentReport.from_dict(payload) if payload else None

    def close(self):
        self.storage.close()
