"""
Variant Assignment

Deterministic, stateless mapping of a stable identifier to a rollout
inclusion decision and to an A/B bucket. Safe to call from any number of
concurrent request handlers: nothing here touches shared state.
"""
from typing import Iterable, Optional

from .models import Variant

# 32-bit FNV-1a parameters
FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


def stable_hash(key: str) -> int:
    """32-bit FNV-1a hash of the UTF-8 encoded key"""
    value = FNV_OFFSET_BASIS
    for byte in key.encode("utf-8"):
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def stable_key(user_id: Optional[str], session_id: Optional[str] = None) -> str:
    """
    Identifier used for hashing: the user ID, falling back to the session ID

    Raises:
        ValueError: If neither identifier is provided
    """
    key = user_id or session_id
    if not key:
        raise ValueError("A user ID or session ID is required for assignment")
    return key


class VariantAssigner:
    """
    Consistent-hash assigner

    Inclusion and bucket are both read from ``stable_hash(key) % 100``,
    compared against independent thresholds (rollout percentage and traffic
    split), so an identifier never changes decision while the thresholds hold.

    Example:
        assigner = VariantAssigner()

        key = stable_key(user_id, session_id)
        if assigner.is_included_in_rollout(key, 20, {"beta"}, user_group="beta"):
            variant = assigner.assign_variant(key, traffic_split=50)
    """

    @staticmethod
    def bucket(key: str) -> int:
        """Deterministic value in [0, 100)"""
        return stable_hash(key) % 100

    def assign_variant(self, key: str, traffic_split: float) -> Variant:
        """Treatment when the bucket falls under the traffic split"""
        if self.bucket(key) < traffic_split:
            return Variant.TREATMENT
        return Variant.CONTROL

    def is_included_in_rollout(
        self,
        key: str,
        rollout_percentage: float,
        target_groups: Optional[Iterable[str]] = None,
        user_group: Optional[str] = None
    ) -> bool:
        """
        Args:
            key: Stable identifier (see ``stable_key``)
            rollout_percentage: Share of traffic granted the feature set (0-100)
            target_groups: Audience tags; empty means everyone
            user_group: Audience tag of the caller

        Returns:
            True if the identifier is inside the rollout
        """
        groups = set(target_groups or ())
        if groups and user_group not in groups:
            return False

        return self.bucket(key) < rollout_percentage
