from __future__ import annotations

from notify_registry.agents.audit_service import AuditRunner, audit_runner
from notify_registry.agents.directory_feed import DirectoryFeedAgent, directory_feed


def get_directory_feed() -> DirectoryFeedAgent:
    return directory_feed


def get_audit_runner() -> AuditRunner:
    return audit_runner
