"""
File gathering checks.

GatherFiles copies batches of files into the drop directory. Each batch is a
mapping:

    {"from": "/etc/puppetlabs",         # optional base for relative patterns
     "copy": ["puppet/puppet.conf",     # glob patterns
              "pxp-agent/modules/"],
     "to": "enterprise/etc/puppetlabs", # relative to the drop directory
     "max_age": -1}                     # optional, days; defaults to log_age

Before copying, the check sums the size of every file it would copy and
refuses to run unless the drop directory has twice that much free space: the
files are copied once and then again into the archive.
"""

from __future__ import annotations

import glob
import os
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pe_support.helpers import iter_files
from pe_support.nodes import Check

BYTES_PER_MB = 1024 * 1024

REDACT_MARKER = b"password"


@dataclass
class FileBatch:
    """One group of files to copy into the same destination."""

    copy: List[str]
    to: str
    source: Optional[str] = None
    max_age: Optional[int] = None
    resolved: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Any) -> "FileBatch":
        if not isinstance(data, Mapping):
            raise ValueError(f"A file batch must be a mapping. Got a value of type {type(data).__name__}.")

        copy = data.get("copy")
        if not isinstance(copy, (list, tuple)) or not copy or not all(isinstance(c, str) and c for c in copy):
            raise ValueError("A file batch must have a non-empty list of strings for copy.")

        to = data.get("to")
        if not isinstance(to, str) or not to:
            raise ValueError("A file batch must have a non-empty string for to.")

        source = data.get("from")
        if source is not None and not isinstance(source, str):
            raise ValueError("The from value of a file batch must be a string.")

        max_age = data.get("max_age")
        if max_age is not None and (isinstance(max_age, bool) or not isinstance(max_age, int)):
            raise ValueError("The max_age value of a file batch must be an integer.")

        return cls(copy=list(copy), to=to, source=source, max_age=max_age)


class GatherFiles(Check):
    """Copy lists of files and directories, subject to age and disk space limits."""

    def setup(self, **options):
        files = options.get("files")
        if not isinstance(files, (list, tuple)):
            raise ValueError(f"{type(self).__name__} must be initialized with a list for the files parameter.")
        self.files = [FileBatch.from_mapping(batch) for batch in files]

        self.confine(kernel="linux")

    def resolve_batches(self) -> List[FileBatch]:
        """Expand globs and fill in the destination and age of every batch."""
        drop = Path(self.state["drop_directory"])
        batches = []

        for batch in self.files:
            if batch.source is None:
                resolved = [match for pattern in batch.copy for match in sorted(glob.glob(pattern))]
            else:
                resolved = [
                    match
                    for pattern in batch.copy
                    for match in sorted(glob.glob(pattern, root_dir=batch.source))
                ]

            batches.append(
                FileBatch(
                    copy=batch.copy,
                    to=str(drop / batch.to),
                    source=batch.source,
                    max_age=batch.max_age if batch.max_age is not None else self.settings.options.log_age,
                    resolved=resolved,
                )
            )
        return batches

    def run(self):
        self.batches = self.resolve_batches()

        if not self.disk_available(self.batches):
            return False

        for batch in self.batches:
            for src in batch.resolved:
                self.copy_drop(src, batch.to, cwd=batch.source, age=batch.max_age)
        return True

    def disk_available(self, batches: List[FileBatch]) -> bool:
        """Check there is room to copy, then archive, every file."""
        if self.noop:
            return True

        try:
            free = shutil.disk_usage(self.state["drop_directory"]).free
        except OSError as e:
            self.log.error(f"Could not determine disk space available on {self.state['drop_directory']}: {e}")
            return False

        required = 0
        for batch in batches:
            for src in batch.resolved:
                path = Path(batch.source) / src if batch.source is not None else Path(src)
                required += sum(f.stat().st_size for f in iter_files(path, batch.max_age))

        if required * 2 > free:
            self.log.error(
                f"Not enough free disk space in {self.settings.options.dir} to gather {self.name}.\n"
                f"Available: {free // BYTES_PER_MB} MB, Required: {required * 2 // BYTES_PER_MB} MB"
            )
            return False
        return True


class ServiceLogs(GatherFiles):
    """Log files plus the systemd journal of each service."""

    def setup(self, **options):
        super().setup(**options)

        services = options.get("services")
        if not isinstance(services, (list, tuple)):
            raise ValueError("ServiceLogs must be initialized with a list of strings for the services parameter.")
        self.services = list(services)

    def run(self):
        result = super().run()

        if not self.noop and self.executable("journalctl"):
            log_age = self.settings.options.log_age
            since = f" --since '{log_age} days ago'" if log_age > 0 else ""

            for service in self.services:
                log_directory = Path(self.state["drop_directory"]) / "logs" / service.replace("pe-", "", 1)
                if not self.create_path(log_directory):
                    continue
                self.exec_drop(
                    f"journalctl --full --output=short-iso --unit={shlex.quote(service + '.service')}{since}",
                    log_directory,
                    f"{service}-journalctl.log",
                )
        return result


def redact_file(path: Path) -> None:
    """Remove every line mentioning a password."""
    lines = path.read_bytes().splitlines(keepends=True)
    kept = [line for line in lines if REDACT_MARKER not in line]
    if len(kept) != len(lines):
        path.write_bytes(b"".join(kept))


class ConfigFiles(GatherFiles):
    """Configuration files, with password lines removed from the copies."""

    def run(self):
        result = super().run()
        if self.noop or result is False:
            return result

        for batch in self.batches:
            for src in batch.resolved:
                copied = Path(batch.to) / (src if batch.source is not None else src.lstrip(os.sep))
                for path in iter_files(copied):
                    redact_file(path)
        return result


class PeFileSync(GatherFiles):
    """
    File sync state directories.

    Disabled by default: these directories are likely to contain sensitive
    data.
    """

    def setup(self, **options):
        super().setup(**options)

        self.enabled = False
        self.confine(lambda: self.package_installed("pe-puppetserver"))
