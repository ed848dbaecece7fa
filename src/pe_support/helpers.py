"""
Diagnostic helpers - the side-effecting API used by concrete checks.

Checks and scopes mix in DiagnosticHelpers to run commands, query the
platform, and "drop" output into the run's output directory. Every helper
that writes output honors noop mode: it displays what it would have done
and returns None without touching the filesystem.

Commands run through the shell with an optional timeout. A command that
times out or cannot be launched is treated as a failed call (empty output,
False status), never as a fault of the run.
"""

from __future__ import annotations

import gzip
import json
import os
import shlex
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

PUP_PATHS = {
    "puppetlabs_bin": "/opt/puppetlabs/bin",
    "puppet_bin": "/opt/puppetlabs/puppet/bin",
    "server_bin": "/opt/puppetlabs/server/bin",
    "server_data": "/opt/puppetlabs/server/data",
}

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

SECONDS_PER_DAY = 86400


class ExecutionFailure(RuntimeError):
    """Raised by exec_or_fail when a command does not succeed."""

    def __init__(self, command_line: str, status: Optional[int], detail: str = ""):
        self.command_line = command_line
        self.status = status
        message = f"exec_or_fail: command failed: {command_line} with status: {status}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def _command_env() -> Dict[str, str]:
    env = os.environ.copy()
    if not env.get("PATH"):
        env["PATH"] = DEFAULT_PATH
    return env


def run_shell(command_line: str, timeout: float = 0) -> subprocess.CompletedProcess:
    """
    Run a shell command line and capture its output.

    A timeout of 0 means no limit. Raises subprocess.TimeoutExpired (the
    child is killed by subprocess.run) or OSError if the shell cannot start.
    """
    return subprocess.run(
        command_line,
        shell=True,
        check=False,
        capture_output=True,
        text=True,
        errors="replace",
        env=_command_env(),
        timeout=timeout or None,
    )


def _age_filter(age: Any) -> Optional[float]:
    """Return an mtime cutoff for a max age in days, or None for no filter."""
    if isinstance(age, int) and not isinstance(age, bool) and age > 0:
        return time.time() - age * SECONDS_PER_DAY
    return None


def iter_files(path: Path, age: Any = None) -> Iterator[Path]:
    """Yield regular files at or under ``path``, newer than ``age`` days.

    Symlinked directories are descended into, matching ``cp --dereference``.
    """
    cutoff = _age_filter(age)

    if path.is_dir():
        candidates: Iterable[Path] = (
            Path(root) / name
            for root, _dirs, names in os.walk(path, followlinks=True)
            for name in sorted(names)
        )
    else:
        candidates = [path]

    for candidate in candidates:
        if not candidate.exists():
            continue
        if cutoff is not None and candidate.stat().st_mtime < cutoff:
            continue
        yield candidate


class DiagnosticHelpers:
    """
    Helper methods for generating diagnostic output.

    Hosts must provide ``settings``, ``state``, ``log`` and ``noop``
    (see pe_support.nodes.Configable).
    """

    # =========================================================================
    # Utilities
    # =========================================================================

    def display(self, info: str = "") -> None:
        print(info)

    def display_warning(self, info: str = "") -> None:
        self.log.warn(info)

    def exec_return_result(self, command_line: str, timeout: float = 0) -> str:
        """Return stdout of a command, or "" if it could not be run."""
        try:
            proc = run_shell(command_line, timeout)
        except subprocess.TimeoutExpired:
            self.log.error(f"exec_return_result: command timed out after {timeout}s: {command_line}")
            return ""
        except OSError as e:
            self.log.error(f"exec_return_result: command failed: {command_line} with error: {e}")
            return ""
        return proc.stdout.rstrip("\n")

    def exec_return_status(self, command_line: str, timeout: float = 0) -> bool:
        """Return True if a command exits zero."""
        try:
            proc = run_shell(command_line, timeout)
        except subprocess.TimeoutExpired:
            self.log.error(f"exec_return_status: command timed out after {timeout}s: {command_line}")
            return False
        except OSError as e:
            self.log.error(f"exec_return_status: command failed: {command_line} with error: {e}")
            return False
        return proc.returncode == 0

    def exec_or_fail(self, command_line: str, timeout: float = 0) -> str:
        """Run a command, raising ExecutionFailure unless it exits zero."""
        try:
            proc = run_shell(command_line, timeout)
        except subprocess.TimeoutExpired:
            raise ExecutionFailure(command_line, None, f"timed out after {timeout}s")
        except OSError as e:
            raise ExecutionFailure(command_line, None, str(e))

        if proc.returncode != 0:
            raise ExecutionFailure(command_line, proc.returncode, proc.stderr.strip())
        return proc.stdout

    def executable(self, command: str) -> Optional[str]:
        """Return the full path of an executable on PATH, or None."""
        return shutil.which(command, path=_command_env()["PATH"])

    def help_option(self, command: str) -> bool:
        """True if ``command --help`` exits zero."""
        return self.exec_return_status(f"{command} --help > /dev/null 2>&1")

    def documented_option(self, command: str, option: str) -> bool:
        """True if ``option`` appears in the --help output or man page of ``command``."""
        source = f"{command} --help" if self.help_option(command) else f"man {command}"
        return self.exec_return_status(f"{source} 2>/dev/null | grep -q -- {shlex.quote(option)}")

    def pretty_json(self, text: str, blacklist: Iterable[str] = ()) -> str:
        """Re-indent a JSON document, dropping blacklisted top-level keys."""
        if text == "":
            return text
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            self.log.error("pretty_json: unable to parse json")
            return ""

        for key in blacklist:
            if isinstance(data, list):
                for item in data:
                    if isinstance(item, dict):
                        item.pop(key, None)
            elif isinstance(data, dict):
                data.pop(key, None)

        return json.dumps(data, indent=2)

    def puppet_conf(self, setting: str, section: str = "main") -> str:
        """Return a Puppet setting, cached in run state after the first read."""
        cache = self.state.setdefault("puppet_conf", {}).setdefault(section, {})
        if setting not in cache:
            cache[setting] = self.exec_return_result(
                f"{PUP_PATHS['puppet_bin']}/puppet config print "
                f"--section {shlex.quote(section)} {shlex.quote(setting)}"
            )
        return cache[setting]

    def curl_url(self, url: str, headers: Optional[Dict[str, str]] = None, **options: Any) -> str:
        """Request a URL with curl and return the body.

        ``options`` are curl long flags; underscores become dashes.
        """
        parts = [f"{PUP_PATHS['puppet_bin']}/curl"]
        for name, value in (headers or {}).items():
            parts += ["-H", shlex.quote(f"{name}: {value}")]
        parts += ["--insecure", "--silent", "--show-error", "--connect-timeout 5", "--max-time 60"]
        for flag, value in options.items():
            parts += [f"--{flag.replace('_', '-')}", shlex.quote(str(value))]
        parts.append(shlex.quote(url))
        return self.exec_return_result(" ".join(parts))

    def curl_cert_auth(self, url: str, **options: Any) -> str:
        """Request a URL using the agent's certificate and private key."""
        cert = self.puppet_conf("hostcert")
        key = self.puppet_conf("hostprivkey")

        if not os.access(cert, os.R_OK):
            self.log.error(f"unable to read agent certificate for curl: {cert}")
            return ""
        if not os.access(key, os.R_OK):
            self.log.error(f"unable to read agent private key for curl: {key}")
            return ""

        options["key"] = key
        options["cert"] = cert
        return self.curl_url(url, **options)

    def pkg_manager(self) -> Optional[str]:
        """Return "rpm" or "dpkg" for this OS, or None (marking the run failed)."""
        if "platform_packaging" in self.state:
            return self.state["platform_packaging"]

        os_info = self.settings.facts.get("os") or {}
        family = str(os_info.get("family", "")).lower()
        if family in ("redhat", "suse"):
            manager = "rpm"
        elif family == "debian":
            manager = "dpkg"
        else:
            self.log.error(
                f'Unknown packaging system for operating system "{os_info.get("name")}" '
                f'and family "{os_info.get("family")}"'
            )
            self.state["exit_code"] = 1
            manager = None

        self.state["platform_packaging"] = manager
        return manager

    def query_packages_matching(self, regex: str) -> str:
        """Return a report of installed packages matching ``regex`` with verify output."""
        bar = "=" * 80
        manager = self.pkg_manager()
        if manager == "rpm":
            packages = self.exec_return_result(f"rpm --query --all | grep --extended-regexp {shlex.quote(regex)}")
            verify = "rpm --verify"
        elif manager == "dpkg":
            packages = self.exec_return_result(
                f"dpkg-query --show --showformat '${{Package}}\\n' | grep --extended-regexp {shlex.quote(regex)}"
            )
            verify = "dpkg --verify"
        else:
            self.log.warn("query_packages_matching: unable to list packages: no package manager for this OS")
            return "no package manager for this OS"

        result = [packages]
        for package in packages.splitlines():
            package = package.strip()
            if not package:
                continue
            result.append(f"\nPackage: {package}\n")
            result.append(self.exec_return_result(f"{verify} {shlex.quote(package)}"))
            result.append(f"\n{bar}\n")
        return "".join(result)

    def package_installed(self, package: str) -> bool:
        """Return whether a package is installed, cached in run state."""
        cache = self.state.setdefault("installed_packages", {})
        if package in cache:
            return cache[package]

        manager = self.pkg_manager()
        if manager == "rpm":
            status = "Version" in self.exec_return_result(f"rpm --query --info {shlex.quote(package)}")
        elif manager == "dpkg":
            status = self.exec_return_status(f"dpkg-query --show {shlex.quote(package)}")
        else:
            self.log.warn("package_installed: unable to query package for platform: no package manager for this OS")
            status = False

        cache[package] = status
        return status

    # =========================================================================
    # Output
    # =========================================================================

    def create_path(self, path: Path | str, mode: Optional[int] = None) -> bool:
        """Create a directory and its parents. No-op in noop mode."""
        if self.noop:
            return True
        try:
            if mode is None:
                os.makedirs(path, exist_ok=True)
            else:
                os.makedirs(path, mode=mode, exist_ok=True)
        except OSError as e:
            self.log.error(f"{type(e).__name__} raised when creating directory: {e}")
            return False
        return True

    def exec_drop(
        self,
        command_line: str,
        dst: Path | str,
        file: str,
        timeout: float = 0,
        stderr: Optional[str] = None,
    ) -> Optional[bool]:
        """
        Append the output of a command to ``dst/file``.

        stderr goes to ``dst/stderr`` when given, otherwise it is merged
        into the output file.
        """
        command = command_line.split(" ")[0]
        dst_file = Path(dst) / file
        stderr_dst = "2>&1" if stderr is None else f"2>> {shlex.quote(str(Path(dst) / stderr))}"
        full_command = f"{command_line} >> {shlex.quote(str(dst_file))} {stderr_dst}"

        if not self.executable(command):
            self.log.debug(f"exec_drop: command not found: {command} cannot execute: {full_command}")
            return False

        self.log.debug(f"exec_drop: appending output of: {command_line} to: {dst_file}")

        if self.noop:
            self.display(f" (noop) Collecting output of: {command_line}")
            return None
        self.display(f" ** Collecting output of: {command_line}")

        if not self.create_path(dst):
            return False

        return self.exec_return_status(full_command, timeout)

    def data_drop(self, data: Any, dst: Path | str, file: str) -> Optional[bool]:
        """Append ``data`` and a newline to ``dst/file``."""
        dst_file = Path(dst) / file
        self.log.debug(f"data_drop: appending to: {dst_file}")

        if self.noop:
            self.display(f" (noop) Adding data to: {dst_file}")
            return None
        self.display(f" ** Adding data to: {dst_file}")

        if not self.create_path(dst):
            return False

        with open(dst_file, "a", encoding="utf-8") as f:
            f.write(f"{data}\n")
        return True

    def compress_drop(
        self,
        src: Path | str,
        dst: Path | str,
        recreate_parent_path: bool = True,
    ) -> Optional[bool]:
        """Gzip a file into ``dst``, keeping its modification time."""
        src = Path(src)
        self.log.debug(f"compress_drop: compressing: {src} to: {dst}")

        if not (src.is_file() and os.access(src, os.R_OK)):
            self.log.debug(f"compress_drop: source not readable: {src}")
            return False

        if self.noop:
            self.display(f" (noop) Compressing: {src}")
            return None
        self.display(f" ** Compressing: {src}")

        if recreate_parent_path:
            dst_file = Path(dst) / (str(src).lstrip("/") + ".gz")
        else:
            dst_file = Path(dst) / (src.name + ".gz")

        if not self.create_path(dst_file.parent):
            return False

        try:
            with open(src, "rb") as fin, gzip.open(dst_file, "wb") as fout:
                shutil.copyfileobj(fin, fout)
            st = src.stat()
            os.utime(dst_file, (st.st_atime, st.st_mtime))
        except OSError as e:
            self.log.error(f"compress_drop: {type(e).__name__} raised compressing {src}: {e}")
            return False
        return True

    def copy_drop(
        self,
        src: Path | str,
        dst: Path | str,
        recreate_parent_path: bool = True,
        cwd: Optional[Path | str] = None,
        age: Any = None,
    ) -> Optional[bool]:
        """
        Copy a file or directory tree into ``dst``.

        Args:
            recreate_parent_path: Re-create the parent directories of ``src``
                (relative to ``cwd`` when given) underneath ``dst``.
            cwd: Directory that relative ``src`` paths are resolved against.
            age: Only copy files modified within this many days. None, 0 or
                a negative value copies everything.
        """
        expanded = Path(cwd) / src if cwd is not None else Path(src)
        self.log.debug(f"copy_drop: copying: {expanded} to: {dst}")

        if not os.access(expanded, os.R_OK):
            self.log.debug(f"copy_drop: source not readable: {expanded}")
            return False

        if self.noop:
            self.display(f" (noop) Copying: {expanded}")
            return None
        self.display(f" ** Copying: {expanded}")

        if not self.create_path(dst):
            return False

        try:
            for path in iter_files(expanded, age):
                if recreate_parent_path:
                    if cwd is not None:
                        rel = path.relative_to(Path(cwd))
                    elif path.is_absolute():
                        rel = Path(*path.parts[1:])
                    else:
                        rel = path
                elif expanded.is_dir():
                    rel = path.relative_to(expanded.parent)
                else:
                    rel = Path(path.name)

                target = Path(dst) / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)
        except OSError as e:
            self.log.error(f"copy_drop: {type(e).__name__} raised copying {expanded}: {e}")
            return False
        return True
