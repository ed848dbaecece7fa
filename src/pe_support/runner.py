"""
Runner - top-level driver for a support run.

    runner = Runner(settings, build_registry())
    runner.add_child(BaseScope, name="")
    exit_code = runner.run()

run() performs, in order:

    setup()                 platform, privilege, settings and tool checks
    build root children     from the declared specs and the Registry
    --list                  describe the tree and stop
    drop directory          <dir>/puppet_enterprise_support[_ticket]_<host>_<timestamp>
    per-run log             <drop>/support_script_log.jsonl (not in noop)
    walk the tree           one node failing never stops the others
    archive                 tar.gz, optionally gpg encrypted
    deliver                 sftp upload, or a summary for manual upload

The drop directory is removed at the end unless z_do_not_delete_drop_directory
is set.
"""

from __future__ import annotations

import os
import re
import shutil
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, List, Type

from pe_support import archive
from pe_support.helpers import DiagnosticHelpers
from pe_support.log_manager import LogManager
from pe_support.nodes import Configable, Registry, Scope, format_exception, run_child
from pe_support.settings import Settings

DROP_DIRECTORY_PREFIX = "puppet_enterprise_support"
LOG_FILE_NAME = "support_script_log.jsonl"

RESET_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT")


class Runner(Configable, DiagnosticHelpers):
    """Build, walk and package the diagnostic tree."""

    def __init__(self, settings: Settings, registry: Registry | None = None):
        self.settings = settings
        self.registry = registry if registry is not None else Registry()
        self._child_specs: List[tuple] = []

    def add_child(self, child_type: Type, **options: Any) -> None:
        """Declare a root-level node, built fresh by every run()."""
        self._child_specs.append((child_type, options))

    def build_children(self) -> list:
        children = []
        for child_type, options in self._child_specs:
            if issubclass(child_type, Scope):
                children.append(child_type(settings=self.settings, registry=self.registry, **options))
            else:
                children.append(child_type(settings=self.settings, **options))
        return children

    def reset_signals(self) -> None:
        """Restore default dispositions so an interrupt can kill a hung command."""
        for name in RESET_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, signal.SIG_DFL)

    def setup(self) -> bool:
        """
        Validate the runtime environment.

        Returns:
            True if the run may proceed. Failures are logged.
        """
        self.reset_signals()

        try:
            kernel = self.facts.get("kernel") or ""
            identity = self.facts.get("identity") or {}
        except Exception as e:
            self.log.error(f"{type(e).__name__} raised when gathering facts: {e}\n\t{format_exception(e)}")
            return False

        if not re.search("linux", str(kernel), re.IGNORECASE):
            self.log.error("The support script is limited to Linux operating systems.")
            return False

        if not identity.get("privileged"):
            self.log.error("The support script must be run with root privileges.")
            return False

        try:
            self.settings.validate()
        except Exception as e:
            self.log.error(f"{type(e).__name__} raised when validating settings: {e}\n\t{format_exception(e)}")
            return False

        if self.settings.options.encrypt:
            gpg_command = self.executable("gpg2") or self.executable("gpg")
            if gpg_command is None:
                self.log.error(
                    "Could not find gpg or gpg2 on the PATH. GPG must be installed to use the --encrypt option"
                )
                return False
            self.state["gpg_command"] = gpg_command

        if self.settings.options.upload:
            sftp_command = self.executable("sftp")
            if sftp_command is None:
                self.log.error(
                    "Could not find sftp on the PATH. SFTP must be installed to use the --upload option"
                )
                return False
            self.state["sftp_command"] = sftp_command

        self.state["start_time"] = datetime.now().astimezone()
        return True

    def run(self) -> int:
        """Execute the run. Returns the process exit status."""
        if not self.setup():
            return 1

        try:
            children = self.build_children()

            if self.settings.options.list:
                for child in children:
                    if isinstance(child, Scope):
                        child.describe()
                    else:
                        self.display(child.name)
                return self.state["exit_code"]

            if not self.setup_output_directory():
                return 1
            self.setup_logfile()

            for child in children:
                if child.enabled and child.suitable():
                    run_child(child, self.log, self.display)

            self.cleanup_logfile()

            output_file = archive.create_output_archive(self.settings, self.state["drop_directory"], self.display)
            if self.settings.options.encrypt:
                output_file = archive.encrypt_output_archive(self.settings, output_file, self.display)

            if self.settings.options.upload:
                archive.sftp_upload(self.settings, output_file, self.display)
            else:
                archive.display_summary(output_file, self.display)
        except Exception as e:
            self.log.error(f"{type(e).__name__} raised when executing diagnostics: {e}\n\t{format_exception(e)}")
            return 1
        finally:
            self.cleanup_logfile()
            self.cleanup_output_directory()

        return self.state["exit_code"]

    def drop_directory_name(self) -> str:
        timestamp = self.state["start_time"].strftime("%Y%m%d%H%M%S")
        short_hostname = str(self.facts.get("hostname") or "").split(".")[0]
        parts = [DROP_DIRECTORY_PREFIX, self.settings.options.ticket or "", short_hostname, timestamp]
        return "_".join(part for part in parts if part)

    def setup_output_directory(self) -> bool:
        if "drop_directory" in self.state:
            return True

        parent_dir = os.path.realpath(self.settings.options.dir)
        drop_directory = os.path.join(parent_dir, self.drop_directory_name())

        self.display(f"Creating output directory: {drop_directory}")
        if not self.create_path(drop_directory, mode=0o700):
            return False

        self.state["drop_directory"] = drop_directory
        return True

    def cleanup_output_directory(self) -> None:
        drop_directory = self.state.get("drop_directory")
        if drop_directory is None or self.settings.options.z_do_not_delete_drop_directory:
            return
        if not os.path.isdir(drop_directory):
            return

        self.log.info(f"Cleaning up output directory: {drop_directory}")
        shutil.rmtree(drop_directory, ignore_errors=True)
        del self.state["drop_directory"]

    def setup_logfile(self) -> None:
        drop_directory = self.state.get("drop_directory")
        if self.noop or drop_directory is None or not os.path.isdir(drop_directory):
            return

        logger = LogManager.file_logger(Path(drop_directory) / LOG_FILE_NAME)
        self.state["log_file"] = logger
        self.log.add_logger(logger)

    def cleanup_logfile(self) -> None:
        logger = self.state.pop("log_file", None)
        if logger is None:
            return
        self.log.remove_logger(logger)
        LogManager.close_logger(logger)
