from notify_registry.core.repositories.base import Repository
from notify_registry.core.repositories.invitations import InvitationRepository
from notify_registry.core.repositories.organizations import OrganizationRepository
from notify_registry.core.repositories.subscribers import SubscriberRepository

__all__ = [
    "Repository",
    "InvitationRepository",
    "OrganizationRepository",
    "SubscriberRepository",
]
