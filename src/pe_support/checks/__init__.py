"""
pe_support.checks - Concrete checks run against a Puppet Enterprise node.
"""
from pe_support.checks.base import AlwaysEnabled, BaseStatus
from pe_support.checks.files import ConfigFiles, FileBatch, GatherFiles, PeFileSync, ServiceLogs
from pe_support.checks.services import (
    PeConsoleGroups,
    PeConsoleStatus,
    PeOrchestrationStatus,
    PePostgresqlStatus,
    PeStatus,
    PuppetAgentStatus,
    PuppetDBStatus,
    PuppetServerStatus,
    ServiceStatus,
)
from pe_support.checks.system import SystemConfig, SystemLogs, SystemStatus

__all__ = [
    "AlwaysEnabled",
    "BaseStatus",
    "SystemConfig",
    "SystemLogs",
    "SystemStatus",
    "FileBatch",
    "GatherFiles",
    "ServiceLogs",
    "ConfigFiles",
    "PeFileSync",
    "ServiceStatus",
    "PuppetAgentStatus",
    "PuppetServerStatus",
    "PuppetDBStatus",
    "PeStatus",
    "PeConsoleStatus",
    "PeConsoleGroups",
    "PeOrchestrationStatus",
    "PePostgresqlStatus",
]
