"""
User Notification

Outbound notification of users affected by a rollback. The default notifier
only logs; the webhook notifier posts to an external endpoint through a
circuit breaker so a dead endpoint cannot slow every rollback down.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime

import aiohttp

from circuit_breaker import CircuitBreaker, CircuitBreakerError
from logger import get_logger

from .exceptions import CollaboratorError

logger = get_logger(__name__)


class Notifier(ABC):
    """Sends a message to an audience (target groups, or everyone when empty)"""

    @abstractmethod
    async def notify(self, audience: Iterable[str], message: str,
                     deployment_id: Optional[str] = None):
        """
        Raises:
            CollaboratorError: Message could not be delivered
        """

    async def close(self):
        """Release underlying resources"""


class LogNotifier(Notifier):
    """Records notifications in the log and in memory"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, audience, message, deployment_id=None):
        groups = sorted(audience or [])
        self.sent.append({
            "deploymentId": deployment_id,
            "audience": groups,
            "message": message,
            "sentAt": datetime.utcnow().isoformat(),
        })
        logger.info(
            f"Notifying {', '.join(groups) if groups else 'all users'}"
            f"{f' of deployment {deployment_id}' if deployment_id else ''}: {message}"
        )


class WebhookNotifier(Notifier):
    """
    Posts notifications as JSON to a webhook

    Example:
        notifier = WebhookNotifier("https://hooks.example.com/rollouts")
        await notifier.notify(["beta"], "Some features were disabled", "deploy_1")
        await notifier.close()
    """

    def __init__(self, url: str, timeout: int = 10,
                 failure_threshold: int = 5, recovery_timeout: int = 60):
        self.url = url
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.breaker = CircuitBreaker(
            service="notification_webhook",
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=(aiohttp.ClientError, TimeoutError),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def _post(self, payload: Dict[str, Any]):
        session = await self._get_session()
        async with session.post(self.url, json=payload) as response:
            response.raise_for_status()

    async def notify(self, audience, message, deployment_id=None):
        payload = {
            "deploymentId": deployment_id,
            "audience": sorted(audience or []),
            "message": message,
            "sentAt": datetime.utcnow().isoformat(),
        }

        try:
            await self.breaker.call(self._post, payload)
        except CircuitBreakerError as e:
            raise CollaboratorError(str(e), "notification", e, deployment_id)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise CollaboratorError(
                f"Notification webhook failed: {e}", "notification", e, deployment_id
            )

        logger.info(f"Notification delivered to webhook for deployment {deployment_id}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
