"""
Deployment Controller Exception Hierarchy

Caller-facing errors carry the HTTP status the admin surface answers with.
A threshold breach is not represented here: it is an internal trigger handled
by the health monitor, never raised to a caller.
"""
from typing import Optional


class DeploymentError(Exception):
    """
    Base class for controller errors

    Attributes:
        message: Human-readable error message
        deployment_id: Deployment the error refers to, if any
        status_code: HTTP status used by the admin API
    """

    status_code = 500

    def __init__(self, message: str, deployment_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.deployment_id = deployment_id

    def __str__(self):
        if self.deployment_id:
            return f"{self.message} (deployment: {self.deployment_id})"
        return self.message


class NotFoundError(DeploymentError):
    """Referenced deployment does not exist"""

    status_code = 404


class ValidationError(DeploymentError):
    """Submitted deployment configuration is malformed"""

    status_code = 400

    def __init__(self, message: str, details: Optional[list] = None,
                 deployment_id: Optional[str] = None):
        super().__init__(message, deployment_id)
        self.details = details or []


class InvalidTransitionError(DeploymentError):
    """
    Operation not allowed in the deployment's current state

    Examples: lowering the rollout percentage, completing a deployment that
    is not active, restarting a terminal deployment. Raised before any state
    is mutated.
    """

    status_code = 400


class ConflictError(InvalidTransitionError):
    """Operation conflicts with another deployment or with an active one"""

    status_code = 409


class CollaboratorError(DeploymentError):
    """
    Persistence, cache or notification collaborator failed

    Swallowed and logged on non-critical paths (metrics reporting, user
    notification, individual rollback steps).
    """

    status_code = 502

    def __init__(self, message: str, collaborator: str = "",
                 original_error: Optional[Exception] = None,
                 deployment_id: Optional[str] = None):
        super().__init__(message, deployment_id)
        self.collaborator = collaborator
        self.original_error = original_error
