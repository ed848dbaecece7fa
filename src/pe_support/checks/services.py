"""
Service checks.

ServiceStatus collects systemd status, process details and cgroup settings for
a list of services. The Puppet component checks extend it with the status
APIs and tooling specific to each service.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import stat
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pe_support.helpers import PUP_PATHS
from pe_support.nodes import Check

PROC_FILES = ["cmdline", "limits", "environ"]
CGROUP_CONTROLLERS = ["memory", "cpu", "blkio", "devices", "pids", "systemd"]

R10K_CONFIG = "/opt/puppetlabs/server/data/code-manager/r10k.yaml"
CODE_STAGING_DIR = "/etc/puppetlabs/code-staging"
FILESYNC_DIR = "/opt/puppetlabs/server/data/puppetserver/filesync"
CODE_MANAGER_CACHE = "/opt/puppetlabs/server/data/code-manager"
FILEBUCKET_DIR = "/opt/puppetlabs/server/data/puppetserver/bucket"

PUPPETDB_JETTY_INI = Path("/etc/puppetlabs/puppetdb/conf.d/jetty.ini")
PUPPETDB_DEFAULT_PORT = "8080"


def pidfile_for(service: str) -> Optional[str]:
    """Pidfile used by a service under sysvinit, or None if it has none we trust."""
    if service == "puppet":
        return "/var/run/puppetlabs/agent.pid"
    if service == "pxp-agent":
        return "/var/run/puppetlabs/pxp-agent.pid"
    if service == "pe-postgresql":
        return None
    name = service.replace("pe-", "", 1)
    return f"/var/run/puppetlabs/{name}/{name}.pid"


def make_user_writable(path: Path) -> None:
    """chmod -R u+wX"""
    for root, dirs, files in os.walk(path):
        for name in dirs:
            p = os.path.join(root, name)
            os.chmod(p, os.stat(p).st_mode | stat.S_IWUSR | stat.S_IXUSR)
        for name in files:
            p = os.path.join(root, name)
            os.chmod(p, os.stat(p).st_mode | stat.S_IWUSR)


def parse_version(text: str) -> Tuple[int, ...]:
    match = re.search(r"(\d+)\.(\d+)\.(\d+)", text)
    if not match:
        return ()
    return tuple(int(part) for part in match.groups())


class ServiceStatus(Check):
    """Runtime information about a set of services."""

    def setup(self, **options):
        services = options.get("services")
        if not isinstance(services, (list, tuple)):
            raise ValueError(
                f"{type(self).__name__} must be initialized with a list of strings for the services parameter."
            )
        self.services: List[str] = list(services)
        self.service_pids: Dict[str, Optional[int]] = {}

        # systemd or sysvinit only
        self.confine(kernel="linux")

    def service_pid(self, service: str) -> Optional[int]:
        if self.executable("systemctl"):
            output = self.exec_return_result(
                f"systemctl show -p MainPID {shlex.quote(service + '.service')} | cut -d= -f2"
            ).strip()
            # MainPID=0 when the service is stopped or missing
            return int(output) if output.isdigit() and int(output) != 0 else None

        pidfile = pidfile_for(service)
        if pidfile is None or not os.access(pidfile, os.R_OK):
            return None

        content = Path(pidfile).read_text().strip()
        if not content.isdigit():
            return None
        pid = int(content)
        try:
            os.kill(pid, 0)
        except OSError:
            return None
        return pid

    def run(self):
        output_directory = Path(self.state["drop_directory"]) / "system"
        if not self.create_path(output_directory):
            return False

        if self.noop:
            return True

        has_systemctl = self.executable("systemctl") is not None
        if has_systemctl:
            for service in self.services:
                self.exec_drop(
                    f"systemctl status {shlex.quote(service + '.service')}",
                    output_directory,
                    "systemctl-status.txt",
                )

        for service in self.services:
            pid = self.service_pid(service)
            self.service_pids[service] = pid
            if pid is None:
                continue

            proc_directory = output_directory / "proc" / service
            if not self.create_path(proc_directory):
                return False

            for procfile in PROC_FILES:
                self.copy_drop(f"/proc/{pid}/{procfile}", proc_directory, recreate_parent_path=False)
            self.data_drop(os.readlink(f"/proc/{pid}/exe"), proc_directory, "exe")
            make_user_writable(proc_directory)

            if has_systemctl:
                for controller in CGROUP_CONTROLLERS:
                    self.copy_drop(f"/sys/fs/cgroup/{controller}/system.slice/{service}.service/", output_directory)
                if (output_directory / "sys").exists():
                    make_user_writable(output_directory / "sys")
        return True


class PuppetAgentStatus(ServiceStatus):
    """Facter output, Puppet gems, agent state files and package listing."""

    STATE_FILES = ["classes.txt", "graphs/", "last_run_summary.yaml", "resources.txt"]
    FIND_PATHS = ["/etc/puppetlabs", "/var/log/puppetlabs", "/opt/puppetlabs"]

    def run(self):
        super().run()

        drop = Path(self.state["drop_directory"])
        ent_directory = drop / "enterprise"
        sys_directory = drop / "system"
        net_directory = drop / "networking"
        find_directory = drop / "enterprise" / "find"

        self.exec_drop(
            f"{PUP_PATHS['puppet_bin']}/facter --puppet --json --debug",
            sys_directory,
            "facter_output.json",
            stderr="facter_output.debug.log",
        )
        self.exec_drop(f"{PUP_PATHS['puppet_bin']}/gem list --local", ent_directory, "puppet_gems.txt")

        if not self.noop:
            puppet_server = self.puppet_conf("server", "agent")
            if puppet_server:
                self.exec_drop(f"ping -c 1 {shlex.quote(puppet_server)}", net_directory, "puppet_ping.txt", timeout=10)

        statedir = self.puppet_conf("statedir", "agent")
        if statedir:
            for file in self.STATE_FILES:
                self.copy_drop(file, drop / "enterprise" / "state", age=-1, cwd=statedir)

        for path in self.FIND_PATHS:
            drop_name = path.replace("/", "_") + ".txt.gz"
            self.exec_drop(f"find {shlex.quote(path)} -ls | gzip -f9", find_directory, drop_name)

        self.data_drop(self.query_packages_matching("^pe-|^puppet"), ent_directory, "puppet_packages.txt")


class PuppetServerStatus(ServiceStatus):
    """CA certificates, server gems, status and environment APIs, Code Manager sizes."""

    def run(self):
        super().run()

        drop = Path(self.state["drop_directory"])
        ent_directory = drop / "enterprise"
        res_directory = drop / "resources"

        if os.path.isdir(self.puppet_conf("cadir", "master")):
            version = parse_version(self.exec_return_result(f"{PUP_PATHS['puppet_bin']}/puppet --version"))
            if version >= (6, 0, 0):
                self.exec_drop(f"{PUP_PATHS['server_bin']}/puppetserver ca list --all", ent_directory, "certs.txt")
            else:
                self.exec_drop(f"{PUP_PATHS['puppet_bin']}/puppet cert list --all", ent_directory, "certs.txt")

        self.exec_drop(
            f"{PUP_PATHS['server_bin']}/puppetserver gem list --local", ent_directory, "puppetserver_gems.txt"
        )

        self.data_drop(
            self.curl_cert_auth("https://127.0.0.1:8140/status/v1/services?level=debug"),
            ent_directory,
            "puppetserver_status.json",
        )
        self.data_drop(
            self.curl_cert_auth("https://127.0.0.1:8140/puppet/v3/environment_modules"),
            ent_directory,
            "modules.json",
        )

        environments_json = self.curl_cert_auth("https://127.0.0.1:8140/puppet/v3/environments")
        self.data_drop(environments_json, ent_directory, "puppetserver_environments.json")
        self._copy_environment_files(environments_json, ent_directory)

        if os.path.exists(R10K_CONFIG):
            sizes = {
                CODE_STAGING_DIR: "code_staging_sizes_from_du.txt",
                FILESYNC_DIR: "filesync_sizes_from_du.txt",
                CODE_MANAGER_CACHE: "r10k_cache_sizes_from_du.txt",
            }
            for directory, drop_name in sizes.items():
                if os.path.isdir(directory):
                    self.exec_drop(f"du -h --max-depth=1 {directory}", res_directory, drop_name)
            self.exec_drop(
                f"{PUP_PATHS['puppet_bin']}/r10k deploy display -p --detail -c {R10K_CONFIG}",
                ent_directory,
                "r10k_deploy_display.txt",
            )

        if os.path.isdir(FILEBUCKET_DIR):
            self.exec_drop(f"du -sh {FILEBUCKET_DIR}", res_directory, "filebucket_size_from_du.txt")

    def _copy_environment_files(self, environments_json: str, ent_directory: Path) -> None:
        if not environments_json:
            return
        try:
            environments = json.loads(environments_json).get("environments", {})
        except (json.JSONDecodeError, AttributeError):
            self.log.error("PuppetServerStatus: unable to parse puppetserver_environments_json")
            return

        for environment, data in environments.items():
            manifest = data.get("settings", {}).get("manifest")
            if not manifest:
                continue
            environment_directory = os.path.dirname(manifest)
            target = ent_directory / "etc/puppetlabs/code/environments" / environment

            for file in ("environment.conf", "hiera.yaml"):
                self.copy_drop(file, target, recreate_parent_path=False, cwd=environment_directory)


class PuppetDBStatus(ServiceStatus):
    """PuppetDB status, summary stats and active nodes."""

    def puppetdb_port(self) -> str:
        # PuppetDB may be moved off 8080/8081 to avoid conflicts
        try:
            content = PUPPETDB_JETTY_INI.read_text()
        except OSError:
            return PUPPETDB_DEFAULT_PORT

        match = re.search(r"^port=(\d+)$", content.replace(" ", ""), re.MULTILINE)
        return match.group(1) if match else PUPPETDB_DEFAULT_PORT

    def run(self):
        super().run()

        ent_directory = Path(self.state["drop_directory"]) / "enterprise"
        base = f"http://127.0.0.1:{self.puppetdb_port()}"

        self.data_drop(self.curl_url(f"{base}/status/v1/services?level=debug"), ent_directory, "puppetdb_status.json")
        self.data_drop(
            self.curl_url(f"{base}/pdb/admin/v1/summary-stats"), ent_directory, "puppetdb_summary_stats.json"
        )
        self.data_drop(
            self.curl_url(
                f"{base}/pdb/query/v4",
                request="GET",
                data_urlencode="query=nodes[certname] {deactivated is null and expired is null}",
            ),
            ent_directory,
            "puppetdb_nodes.json",
        )


class PeStatus(Check):
    """puppet-infrastructure status and tuning."""

    def run(self):
        ent_directory = Path(self.state["drop_directory"]) / "enterprise"
        infra = f"{PUP_PATHS['puppetlabs_bin']}/puppet-infrastructure"

        self.exec_drop(f"{infra} status --format json", ent_directory, "pe_infra_status.json")
        self.exec_drop(f"{infra} tune", ent_directory, "puppet_infra_tune.txt")
        self.exec_drop(f"{infra} tune --current", ent_directory, "puppet_infra_tune_current.txt")


class PeConsoleStatus(ServiceStatus):
    """Console status and directory service settings, without passwords."""

    def run(self):
        super().run()

        ent_directory = Path(self.state["drop_directory"]) / "enterprise"

        self.data_drop(
            self.curl_url("http://127.0.0.1:4432/status/v1/services?level=debug"),
            ent_directory,
            "console_status.json",
        )
        ds_settings = self.curl_cert_auth("https://127.0.0.1:4433/rbac-api/v1/ds")
        self.data_drop(
            self.pretty_json(ds_settings, ["password", "ds_pw_obfuscated"]),
            ent_directory,
            "rbac_directory_settings.json",
        )


class PeConsoleGroups(Check):
    """Classifier groups. Disabled by default: group data can be sensitive."""

    def setup(self, **options):
        self.enabled = False

    def run(self):
        ent_directory = Path(self.state["drop_directory"]) / "enterprise"
        self.data_drop(
            self.curl_cert_auth("https://127.0.0.1:4433/classifier-api/v1/groups"),
            ent_directory,
            "classifier.json",
        )


class PeOrchestrationStatus(ServiceStatus):
    def run(self):
        super().run()

        ent_directory = Path(self.state["drop_directory"]) / "enterprise"
        self.data_drop(
            self.curl_cert_auth("https://127.0.0.1:8143/status/v1/services?level=debug"),
            ent_directory,
            "orchestration_status.json",
        )


# =============================================================================
# PE PostgreSQL
# =============================================================================

_RELATION_SIZE_SQL = """
    SELECT '{database}' AS db_name, nspname || '.' || relname AS relation, pg_size_pretty({function}(C.oid))
    FROM pg_class C LEFT JOIN pg_namespace N ON (N.oid = C.relnamespace)
    WHERE nspname NOT IN ('information_schema', 'pg_catalog', 'pg_toast')
    ORDER BY {function}(C.oid) DESC;
"""

PSQL_QUERIES = {
    "databases": "SELECT datname FROM pg_catalog.pg_database;",
    "database_sizes": """
        SELECT t1.datname AS db_name, pg_size_pretty(pg_database_size(t1.datname))
        FROM pg_database t1
        ORDER BY pg_database_size(t1.datname) DESC;
    """,
    "settings": "SELECT * FROM pg_settings;",
    "stat_activity": "SELECT * FROM pg_stat_activity ORDER BY query_start;",
    "replication_slots": "SELECT * FROM pg_replication_slots;",
    "replication_status": "SELECT * FROM pg_stat_replication;",
    "thundering_herd": """
        SELECT date_part('month', start_time) AS month,
        date_part('day', start_time) AS day,
        date_part('hour', start_time) AS hour,
        date_part('minute', start_time) as minute, count(*)
        FROM reports
        WHERE start_time BETWEEN now() - interval '7 days' AND now()
        GROUP BY date_part('month', start_time), date_part('day', start_time),
                 date_part('hour', start_time), date_part('minute', start_time)
        ORDER BY date_part('month', start_time) DESC, date_part('day', start_time) DESC,
                 date_part('hour', start_time) DESC, date_part('minute', start_time) DESC;
    """,
}

# drop file -> size function, reported for every pe-* database
RELATION_SIZE_REPORTS = {
    "db_relation_sizes.txt": "pg_relation_size",
    "db_table_sizes.txt": "pg_table_size",
    "db_total_relation_sizes.txt": "pg_total_relation_size",
}

RELATION_SIZES_BY_TABLE_REPORT = "db_relation_sizes_by_table.txt"

# Each table with its toast table and indexes, sized separately
_RELATION_SIZES_BY_TABLE_SQL = """
    WITH
      tables AS (
        SELECT c.oid, * FROM pg_catalog.pg_class AS c
        LEFT JOIN pg_catalog.pg_namespace AS n ON n.oid = c.relnamespace
        WHERE relkind = 'r' AND n.nspname NOT IN ('information_schema', 'pg_catalog')
      ),
      toast AS (
        SELECT c.oid, * FROM pg_catalog.pg_class AS c
        LEFT JOIN pg_catalog.pg_namespace AS n ON n.oid = c.relnamespace
        WHERE relkind = 't' AND n.nspname NOT IN ('information_schema', 'pg_catalog')
      ),
      indices AS (
        SELECT c.oid, * FROM pg_catalog.pg_class AS c
        LEFT JOIN pg_catalog.pg_namespace AS n ON n.oid = c.relnamespace
        WHERE relkind = 'i' AND n.nspname NOT IN ('information_schema', 'pg_catalog')
      )
    SELECT '{database}' || '.' || relname AS name, 'table' AS type,
           pg_size_pretty(pg_relation_size(oid)) AS size
    FROM tables
    UNION
      SELECT '{database}' || '.' || r.relname || '.' || t.relname AS name, 'toast' AS type,
             pg_size_pretty(pg_relation_size(t.oid)) AS size
      FROM toast AS t
      INNER JOIN tables AS r ON t.oid = r.reltoastrelid
    UNION
      SELECT '{database}' || '.' || r.relname || '.' || i.relname AS name, 'index' AS type,
             pg_size_pretty(pg_relation_size(i.oid)) AS size
      FROM indices AS i
      LEFT JOIN pg_catalog.pg_index AS c ON i.oid = c.indexrelid
      INNER JOIN tables AS r ON c.indrelid = r.oid
    ORDER BY size DESC;
"""


class PePostgresqlStatus(ServiceStatus):
    """PostgreSQL settings, activity, replication and database sizes."""

    def psql_return_result(self, sql: str, psql_options: str = "") -> str:
        inner = f"cd /tmp && {PUP_PATHS['server_bin']}/psql {psql_options} --command {shlex.quote(sql.strip())}"
        return self.exec_return_result(f"su pe-postgres --shell /bin/bash --command {shlex.quote(inner)}")

    def pe_databases(self) -> List[str]:
        output = self.psql_return_result(PSQL_QUERIES["databases"], "--tuples-only")
        return sorted(line.strip() for line in output.splitlines() if line.strip().startswith("pe-"))

    def run(self):
        super().run()

        drop = Path(self.state["drop_directory"])
        ent_directory = drop / "enterprise"
        res_directory = drop / "resources"

        self.data_drop(
            self.psql_return_result(PSQL_QUERIES["settings"], "--tuples-only"), ent_directory, "postgres_settings.txt"
        )
        self.data_drop(self.psql_return_result(PSQL_QUERIES["stat_activity"]), ent_directory, "db_stat_activity.txt")
        for query, drop_name in [
            ("thundering_herd", "thundering_herd_query.txt"),
            ("replication_slots", "postgres_replication_slots.txt"),
            ("replication_status", "postgres_replication_status.txt"),
        ]:
            self.data_drop(
                self.psql_return_result(PSQL_QUERIES[query], "--dbname pe-puppetdb"), ent_directory, drop_name
            )

        data = PUP_PATHS["server_data"]
        self.exec_drop(
            f"ls -d {data}/postgresql/*/data {data}/postgresql/*/PG_* | xargs du -sh",
            res_directory,
            "db_sizes_from_du.txt",
        )
        self.data_drop(self.psql_return_result(PSQL_QUERIES["database_sizes"]), res_directory, "db_sizes_from_psql.txt")

        for database in self.pe_databases():
            for drop_name, sql in self.relation_size_queries(database).items():
                result = f"{database}\n\n" + self.psql_return_result(sql, f"--dbname {shlex.quote(database)}")
                self.data_drop(result, res_directory, drop_name)

    def relation_size_queries(self, database: str) -> Dict[str, str]:
        """Drop file name -> size report SQL for one database."""
        queries = {
            drop_name: _RELATION_SIZE_SQL.format(database=database, function=function)
            for drop_name, function in RELATION_SIZE_REPORTS.items()
        }
        queries[RELATION_SIZES_BY_TABLE_REPORT] = _RELATION_SIZES_BY_TABLE_SQL.format(database=database)
        return queries
