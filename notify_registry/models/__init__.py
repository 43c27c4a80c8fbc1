from notify_registry.models.base import Base, TimestampedBase
from notify_registry.models.invitation import Invitation
from notify_registry.models.organization import Organization
from notify_registry.models.subscriber import Subscriber

__all__ = [
    "Base",
    "TimestampedBase",
    "Invitation",
    "Organization",
    "Subscriber",
]
