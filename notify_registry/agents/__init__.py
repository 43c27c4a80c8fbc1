from notify_registry.agents.audit_service import AuditAlreadyRunningError, AuditRunner
from notify_registry.agents.directory_feed import DirectoryFeedAgent
from notify_registry.agents.health import AgentHealth

__all__ = ["AgentHealth", "AuditAlreadyRunningError", "AuditRunner", "DirectoryFeedAgent"]
