"""
Facts - environment facts used by confines and the runner.

Facts are resolved lazily and cached for the life of the Facts instance.
A fact that cannot be resolved on this host is absent: ``get`` returns the
supplied default, and ``name in facts`` is False.

Known facts:
    kernel      "Linux", "Darwin", ...
    hostname    short host name
    fqdn        fully qualified domain name
    identity    {"user": ..., "uid": ..., "privileged": bool}
    os          {"name": ..., "family": ..., "release": ...}
    osfamily    shortcut for os["family"]
"""

from __future__ import annotations

import getpass
import os
import platform
import socket
from pathlib import Path
from typing import Any, Callable, Dict, Optional

OS_RELEASE = Path("/etc/os-release")

# ID / ID_LIKE values from os-release mapped onto package families
OS_FAMILIES = {
    "rhel": "RedHat",
    "centos": "RedHat",
    "fedora": "RedHat",
    "rocky": "RedHat",
    "almalinux": "RedHat",
    "ol": "RedHat",
    "amzn": "RedHat",
    "sles": "Suse",
    "suse": "Suse",
    "opensuse": "Suse",
    "debian": "Debian",
    "ubuntu": "Debian",
}

_MISSING = object()


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse KEY=value lines from an os-release file."""
    result = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        result[key] = value.strip().strip('"').strip("'")
    return result


def _kernel() -> Optional[str]:
    return platform.system() or None


def _hostname() -> Optional[str]:
    name = socket.gethostname()
    return name.split(".")[0] if name else None


def _fqdn() -> Optional[str]:
    return socket.getfqdn() or None


def _identity() -> Dict[str, Any]:
    uid = os.geteuid() if hasattr(os, "geteuid") else None
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        # uid without a passwd entry and no LOGNAME/USER in the environment
        user = None
    return {"user": user, "uid": uid, "privileged": uid == 0}


def _os() -> Optional[Dict[str, str]]:
    if not OS_RELEASE.exists():
        return None

    info = parse_os_release(OS_RELEASE.read_text(encoding="utf-8", errors="replace"))
    family = None
    for candidate in [info.get("ID", "")] + info.get("ID_LIKE", "").split():
        if candidate.lower() in OS_FAMILIES:
            family = OS_FAMILIES[candidate.lower()]
            break

    return {
        "name": info.get("NAME", info.get("ID", "unknown")),
        "family": family or info.get("ID", "unknown"),
        "release": info.get("VERSION_ID", ""),
    }


def _osfamily() -> Optional[str]:
    os_info = _os()
    return os_info["family"] if os_info else None


RESOLVERS: Dict[str, Callable[[], Any]] = {
    "kernel": _kernel,
    "hostname": _hostname,
    "fqdn": _fqdn,
    "identity": _identity,
    "os": _os,
    "osfamily": _osfamily,
}


class Facts:
    """Lazy, cached fact lookup."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._cache: Dict[str, Any] = dict(overrides or {})

    def get(self, name: str, default: Any = None) -> Any:
        """Return the value of a fact, or ``default`` if it is undefined."""
        name = str(name)
        if name in self._cache:
            return self._cache[name]

        resolver = RESOLVERS.get(name)
        if resolver is None:
            return default

        try:
            value = resolver()
        except Exception:
            # Unresolvable on this host
            value = None

        self._cache[name] = value
        return value

    def __contains__(self, name: object) -> bool:
        return str(name) in self._cache or str(name) in RESOLVERS

    def set(self, name: str, value: Any) -> None:
        """Pin a fact to a fixed value."""
        self._cache[str(name)] = value
