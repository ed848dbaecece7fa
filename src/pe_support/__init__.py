"""
pe_support - Puppet Enterprise Support Script

Collects configuration, logs, service status and resource usage from a
Puppet Enterprise node and packages them for Puppet Support.
"""

__version__ = "3.0.0"
__author__ = "pe-support contributors"

from pe_support.confine import Confinable, Confine
from pe_support.log_manager import LogManager
from pe_support.nodes import Check, Registry, Scope
from pe_support.runner import Runner
from pe_support.settings import ConfigurationError, Settings, SettingsError

__all__ = [
    "Check",
    "Confinable",
    "Confine",
    "ConfigurationError",
    "LogManager",
    "Registry",
    "Runner",
    "Scope",
    "Settings",
    "SettingsError",
]
