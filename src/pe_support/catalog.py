"""
Catalog - the default tree of scopes and checks for a Puppet Enterprise node.

    (root)
    ├── base-status
    ├── system          config, logs, status
    ├── puppet          config, logs, status
    ├── puppetserver    config, logs, metrics, status
    ├── puppetdb        config, logs, metrics, status
    └── pe              config, logs, status, file-sync
        ├── console         config, logs, status, classifier-groups
        ├── orchestration   config, logs, metrics, status
        └── postgres        config, logs, status

Scopes under the root are confined to the package that provides them, so a
node only collects data for the components it has installed.
"""

from __future__ import annotations

import os

from pe_support.checks import (
    AlwaysEnabled,
    BaseStatus,
    ConfigFiles,
    GatherFiles,
    PeConsoleGroups,
    PeConsoleStatus,
    PeFileSync,
    PeOrchestrationStatus,
    PePostgresqlStatus,
    PeStatus,
    PuppetAgentStatus,
    PuppetDBStatus,
    PuppetServerStatus,
    ServiceLogs,
    SystemConfig,
    SystemLogs,
    SystemStatus,
)
from pe_support.helpers import PUP_PATHS
from pe_support.nodes import Registry, Scope

ETC = "/etc/puppetlabs"
LOGS = "/var/log/puppetlabs"
METRICS = "/opt/puppetlabs/puppet-metrics-collector"
POSTGRES_DATA = "/opt/puppetlabs/server/data/postgresql"

ETC_DROP = "enterprise/etc/puppetlabs"


class BaseScope(AlwaysEnabled, Scope):
    """Root of the tree."""


class SystemScope(Scope):
    def setup(self, **options):
        self.confine(kernel="linux")


class PackageScope(Scope):
    """A scope that only applies when its package is installed."""

    package = ""

    def setup(self, **options):
        self.confine(lambda: self.package_installed(self.package))


class PuppetScope(PackageScope):
    package = "puppet-agent"


class PuppetServerScope(PackageScope):
    package = "pe-puppetserver"


class PuppetDBScope(PackageScope):
    package = "pe-puppetdb"


class PeScope(PackageScope):
    package = "pe-puppet-enterprise-release"


class PeConsoleScope(PackageScope):
    package = "pe-console-services"


class PeOrchestrationScope(PackageScope):
    package = "pe-orchestration-services"


class PePostgresScope(Scope):
    def setup(self, **options):
        # The pe-postgresql package name carries a version number
        self.confine(lambda: os.access(f"{PUP_PATHS['server_bin']}/psql", os.X_OK))


def _register_puppet(registry: Registry) -> None:
    registry.add_child(
        PuppetScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "facter/facter.conf",
                    "puppet/device.conf",
                    "puppet/hiera.yaml",
                    "puppet/puppet.conf",
                    "pxp-agent/modules/",
                    "pxp-agent/pxp-agent.conf",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PuppetScope,
        ServiceLogs,
        name="logs",
        files=[{"from": LOGS, "copy": ["puppet/", "pxp-agent/"], "to": "logs"}],
        services=["puppet", "pxp-agent"],
    )
    registry.add_child(PuppetScope, PuppetAgentStatus, name="status", services=["puppet", "pxp-agent"])


def _register_puppetserver(registry: Registry) -> None:
    registry.add_child(
        PuppetServerScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "code/hiera.yaml",
                    "puppet/auth.conf",
                    "puppet/autosign.conf",
                    "puppet/classfier.yaml",
                    "puppet/fileserver.conf",
                    "puppet/hiera.yaml",
                    "puppet/puppet.conf",
                    "puppet/puppetdb.conf",
                    "puppet/routes.yaml",
                    "puppetserver/bootstrap.cfg",
                    "puppetserver/code-manager-request-logging.xml",
                    "puppetserver/conf.d/",
                    "puppetserver/logback.xml",
                    "puppetserver/request-logging.xml",
                    "r10k/r10k.yaml",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            },
            {
                "from": "/opt/puppetlabs/server/data/code-manager",
                "copy": ["r10k.yaml"],
                "to": f"{ETC_DROP}/puppetserver",
                "max_age": -1,
            },
        ],
    )
    registry.add_child(
        PuppetServerScope,
        ServiceLogs,
        name="logs",
        files=[{"from": LOGS, "copy": ["puppetserver/", "r10k/"], "to": "logs"}],
        services=["pe-puppetserver"],
    )
    registry.add_child(
        PuppetServerScope,
        GatherFiles,
        name="metrics",
        files=[{"from": METRICS, "copy": ["puppetserver/"], "to": "metrics"}],
    )
    registry.add_child(PuppetServerScope, PuppetServerStatus, name="status", services=["pe-puppetserver"])


def _register_puppetdb(registry: Registry) -> None:
    registry.add_child(
        PuppetDBScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "puppetdb/bootstrap.cfg",
                    "puppetdb/certificate-whitelist",
                    "puppetdb/conf.d/",
                    "puppetdb/logback.xml",
                    "puppetdb/request-logging.xml",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PuppetDBScope,
        ServiceLogs,
        name="logs",
        files=[{"from": LOGS, "copy": ["puppetdb/"], "to": "logs"}],
        services=["pe-puppetdb"],
    )
    registry.add_child(
        PuppetDBScope,
        GatherFiles,
        name="metrics",
        files=[{"from": METRICS, "copy": ["puppetdb/"], "to": "metrics"}],
    )
    registry.add_child(PuppetDBScope, PuppetDBStatus, name="status", services=["pe-puppetdb"])


def _register_pe(registry: Registry) -> None:
    registry.add_child(
        PeScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "client-tools/orchestrator.conf",
                    "client-tools/puppet-access.conf",
                    "client-tools/puppet-code.conf",
                    "client-tools/puppetdb.conf",
                    "client-tools/services.conf",
                    "enterprise/conf.d/",
                    "enterprise/hiera.yaml",
                    "installer/answers.install",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PeScope,
        GatherFiles,
        name="logs",
        files=[
            {
                "from": LOGS,
                "copy": ["installer/", "pe-backup-tools/", "puppet_infra_recover_config_cron.log"],
                "to": "logs",
            }
        ],
    )
    registry.add_child(PeScope, PeStatus, name="status")
    registry.add_child(
        PeScope,
        PeFileSync,
        name="file-sync",
        files=[
            {"from": ETC, "copy": ["code-staging"], "to": ETC_DROP, "max_age": -1},
            {
                "from": "/opt/puppetlabs/server/data/puppetserver",
                "copy": ["filesync"],
                "to": ETC_DROP,
                "max_age": -1,
            },
        ],
    )

    registry.add_child(PeScope, PeConsoleScope, name="console")
    registry.add_child(PeScope, PeOrchestrationScope, name="orchestration")
    registry.add_child(PeScope, PePostgresScope, name="postgres")


def _register_pe_console(registry: Registry) -> None:
    services = ["pe-console-services", "pe-nginx"]

    registry.add_child(
        PeConsoleScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "console-services/bootstrap.cfg",
                    "console-services/conf.d/",
                    "console-services/logback.xml",
                    "console-services/rbac-certificate-whitelist",
                    "console-services/request-logging.xml",
                    "nginx/conf.d/",
                    "nginx/nginx.conf",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PeConsoleScope,
        ServiceLogs,
        name="logs",
        files=[{"from": LOGS, "copy": ["console-services/", "nginx/"], "to": "logs"}],
        services=services,
    )
    registry.add_child(PeConsoleScope, PeConsoleStatus, name="status", services=services)
    registry.add_child(PeConsoleScope, PeConsoleGroups, name="classifier-groups")


def _register_pe_orchestration(registry: Registry) -> None:
    services = ["pe-ace-server", "pe-bolt-server", "pe-orchestration-services"]

    registry.add_child(
        PeOrchestrationScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": ETC,
                "copy": [
                    "ace-server/conf.d/",
                    "bolt-server/conf.d/",
                    "orchestration-services/bootstrap.cfg",
                    # conf.d also holds encryption keys, so list files explicitly
                    "orchestration-services/conf.d/analytics.conf",
                    "orchestration-services/conf.d/auth.conf",
                    "orchestration-services/conf.d/global.conf",
                    "orchestration-services/conf.d/inventory.conf",
                    "orchestration-services/conf.d/metrics.conf",
                    "orchestration-services/conf.d/orchestrator.conf",
                    "orchestration-services/conf.d/pcp-broker.conf",
                    "orchestration-services/conf.d/web-routes.conf",
                    "orchestration-services/conf.d/webserver.conf",
                    "orchestration-services/logback.xml",
                    "orchestration-services/request-logging.xml",
                ],
                "to": ETC_DROP,
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PeOrchestrationScope,
        ServiceLogs,
        name="logs",
        files=[
            {"from": LOGS, "copy": ["ace-server/", "bolt-server/", "orchestration-services/"], "to": "logs"},
            # node activity logs, regardless of age
            {
                "from": LOGS,
                "copy": ["orchestration-services/aggregate-node-count*.log*"],
                "to": "logs",
                "max_age": -1,
            },
        ],
        services=services,
    )
    registry.add_child(
        PeOrchestrationScope,
        GatherFiles,
        name="metrics",
        files=[{"from": METRICS, "copy": ["orchestrator/"], "to": "metrics"}],
    )
    registry.add_child(PeOrchestrationScope, PeOrchestrationStatus, name="status", services=services)


def _register_pe_postgres(registry: Registry) -> None:
    registry.add_child(
        PePostgresScope,
        ConfigFiles,
        name="config",
        files=[
            {
                "from": POSTGRES_DATA,
                "copy": [
                    f"*/data/{name}"
                    for name in ("postgresql.conf", "postmaster.opts", "pg_ident.conf", "pg_hba.conf")
                ],
                "to": f"{ETC_DROP}/postgres",
                "max_age": -1,
            }
        ],
    )
    registry.add_child(
        PePostgresScope,
        ServiceLogs,
        name="logs",
        files=[
            {"from": LOGS, "copy": ["postgresql/*/"], "to": "logs"},
            {
                "from": POSTGRES_DATA,
                "copy": ["pg_upgrade_internal.log", "pg_upgrade_server.log", "pg_upgrade_utility.log"],
                "to": "logs/postgresql",
            },
        ],
        services=["pe-postgresql"],
    )
    registry.add_child(PePostgresScope, PePostgresqlStatus, name="status", services=["pe-postgresql"])


def build_registry() -> Registry:
    """Return a Registry holding the default tree under BaseScope."""
    registry = Registry()

    registry.add_child(BaseScope, BaseStatus, name="base-status")
    registry.add_child(BaseScope, SystemScope, name="system")
    registry.add_child(BaseScope, PuppetScope, name="puppet")
    registry.add_child(BaseScope, PuppetServerScope, name="puppetserver")
    registry.add_child(BaseScope, PuppetDBScope, name="puppetdb")
    registry.add_child(BaseScope, PeScope, name="pe")

    registry.add_child(SystemScope, SystemConfig, name="config")
    registry.add_child(SystemScope, SystemLogs, name="logs")
    registry.add_child(SystemScope, SystemStatus, name="status")

    _register_puppet(registry)
    _register_puppetserver(registry)
    _register_puppetdb(registry)
    _register_pe(registry)
    _register_pe_console(registry)
    _register_pe_orchestration(registry)
    _register_pe_postgres(registry)

    return registry
