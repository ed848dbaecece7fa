"""
Operating system checks.

    SystemConfig   /etc files, OS version, umask, SELinux, network config
    SystemLogs     system log, kernel ring buffer
    SystemStatus   environment, processes, services, ports, disk and memory
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path

from pe_support.nodes import Check

CONF_FILES = [
    os.path.join("/etc", f)
    for f in [
        "apt/apt.conf.d",
        "apt/sources.list.d",
        "dnf/dnf.conf",
        "hosts",
        "nsswitch.conf",
        "os-release",
        "resolv.conf",
        "yum.conf",
        "yum.repos.d",
    ]
]

SYSTEM_LOGS = ["/var/log/messages", "/var/log/syslog", "/var/log/system"]


class SystemConfig(Check):
    def run(self):
        drop = Path(self.state["drop_directory"])

        output_directory = drop / "system"
        if not self.create_path(output_directory):
            return False

        self.exec_drop("lsb_release -a", output_directory, "lsb_release.txt")
        self.exec_drop("sestatus", output_directory, "selinux.txt")
        self.exec_drop("umask", output_directory, "umask.txt")
        self.exec_drop("uname -a", output_directory, "uname.txt")

        for file in CONF_FILES:
            self.copy_drop(file, output_directory)

        output_directory = drop / "networking"
        if not self.create_path(output_directory):
            return False

        self.data_drop(self.facts.get("fqdn"), output_directory, "hostname_output.txt")
        self.exec_drop("ifconfig -a", output_directory, "ifconfig.txt")
        self.exec_drop("iptables -L", output_directory, "ip_tables.txt")
        self.exec_drop("ip6tables -L", output_directory, "ip_tables.txt")

        if not self.executable("iptables"):
            self.exec_drop("lsmod | grep ip", output_directory, "ip_modules.txt")

        if not self.noop:
            self._link_sos_layout(drop)
        return True

    def _link_sos_layout(self, drop: Path) -> None:
        """Add the hostname and etc/hosts links SOScleaner looks for."""
        (drop / "etc").mkdir(exist_ok=True)
        links = {
            drop / "hostname": "networking/hostname_output.txt",
            drop / "etc" / "hosts": "../system/etc/hosts",
        }
        for link, target in links.items():
            if not os.path.lexists(link):
                os.symlink(target, link)


class SystemLogs(Check):
    def run(self):
        output_directory = Path(self.state["drop_directory"]) / "logs"
        if not self.create_path(output_directory):
            return False

        for log_file in SYSTEM_LOGS:
            self.compress_drop(log_file, output_directory, recreate_parent_path=False)

        if self.documented_option("dmesg", "--ctime"):
            if self.documented_option("dmesg", "--time-format"):
                self.exec_drop("dmesg --ctime --time-format iso", output_directory, "dmesg.txt")
            else:
                self.exec_drop("dmesg --ctime", output_directory, "dmesg.txt")
        else:
            self.exec_drop("dmesg", output_directory, "dmesg.txt")
        return True


class SystemStatus(Check):
    def run(self):
        drop = Path(self.state["drop_directory"])

        output_directory = drop / "system"
        if not self.create_path(output_directory):
            return False

        self.exec_drop("env", output_directory, "env.txt")
        self.exec_drop("ps -aux", output_directory, "ps_aux.txt")
        self.exec_drop("ps -ef", output_directory, "ps_tree.txt")
        self.exec_drop("chkconfig --list", output_directory, "services.txt")
        self.exec_drop("systemctl list-units", output_directory, "services.txt")
        self.exec_drop("uptime", output_directory, "uptime.txt")

        output_directory = drop / "networking"
        if not self.create_path(output_directory):
            return False

        self.exec_drop("netstat -anptu", output_directory, "ports.txt")
        self.exec_drop("ntpq -p", output_directory, "ntpq_output.txt")

        if not self.noop:
            fqdn = self.facts.get("fqdn") or ""
            ip_address = self.exec_return_result(
                f"ping -t1 -c1 {shlex.quote(fqdn)} | head -n1 | tr -ds '()' ' ' | cut -d ' ' -f3",
                timeout=10,
            ).strip()
            if ip_address:
                self.data_drop(ip_address, output_directory, "guessed_ip_address.txt")
                self.exec_drop(
                    f"getent hosts {shlex.quote(ip_address)}",
                    output_directory,
                    "mapped_hostname_from_guessed_ip_address.txt",
                )

        output_directory = drop / "resources"
        if not self.create_path(output_directory):
            return False

        self.exec_drop("df -h", output_directory, "df_output.txt")
        self.exec_drop("df -i", output_directory, "df_inodes_output.txt")
        self.exec_drop("df -k", output_directory, "df_output.txt")
        self.exec_drop("free -h", output_directory, "free_mem.txt")
        return True
