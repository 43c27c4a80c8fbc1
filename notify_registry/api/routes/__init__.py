from notify_registry.api.routes.audit import router as audit_router
from notify_registry.api.routes.organizations import router as organizations_router
from notify_registry.api.routes.subscribers import router as subscribers_router

__all__ = [
    "audit_router",
    "organizations_router",
    "subscribers_router",
]
