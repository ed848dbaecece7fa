"""
Settings - validated options and shared run state.

One Settings object is created at process start and handed to the Runner,
which passes it to every Scope and Check it builds. It holds:

    options   SupportOptions, a pydantic model of user-facing options
    state     plain dict of transient run state (exit_code, drop_directory, ...)
    log       the LogManager shared by every component
    facts     the fact lookup used by confines

Options are only changed through ``configure``, which validates every key
before applying any of them. Sources, lowest precedence first:

    1. defaults declared on SupportOptions
    2. a YAML file (``load_file``)
    3. environment variables (``apply_env``)
    4. command line flags
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from pe_support.facts import Facts
from pe_support.log_manager import LogManager

# Sentinel stored for log_age when every log should be collected
LOG_AGE_ALL = 999

DEFAULT_LOG_AGE = 14

DEFAULT_SCOPES = ("enterprise", "etc", "log", "networking", "resources", "system")

# Configuration file locations (checked in order)
CONFIG_SEARCH_PATHS = [
    Path.home() / ".pe_support" / "config.yaml",
    Path("/etc/puppetlabs/pe_support/config.yaml"),
]

ENV_MAPPINGS = {
    "PE_SUPPORT_DIR": "dir",
    "PE_SUPPORT_TICKET": "ticket",
    "PE_SUPPORT_LOG_AGE": "log_age",
}

TICKET_PATTERN = re.compile(r"[A-Za-z0-9_\-]+")


class SettingsError(ValueError):
    """Raised by configure() when an option has an invalid value."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(message)


class ConfigurationError(RuntimeError):
    """Raised by validate() when options are inconsistent with the host."""


def _default_dir() -> str:
    return "/var/tmp" if os.path.isdir("/var/tmp") else "/tmp"


class SupportOptions(BaseModel):
    """User-facing options. Unknown keys are accepted and kept as-is."""

    model_config = ConfigDict(extra="allow")

    dir: str = Field(default_factory=_default_dir)
    log_age: int = DEFAULT_LOG_AGE
    ticket: Optional[str] = None

    noop: bool = False
    encrypt: bool = False
    upload: bool = False
    upload_disable_host_key_check: bool = False
    list: bool = False
    z_do_not_delete_drop_directory: bool = False

    upload_key: Optional[str] = None
    upload_user: Optional[str] = None
    gpg_key: Optional[str] = None

    enable: List[str] = Field(default_factory=lambda: [])
    disable: List[str] = Field(default_factory=lambda: [])
    only: List[str] = Field(default_factory=lambda: [])

    # Legacy comma-separated scope selection, kept for older wrappers
    scope: Dict[str, bool] = Field(default_factory=lambda: {s: True for s in DEFAULT_SCOPES})

    @field_validator(
        "noop", "encrypt", "upload", "upload_disable_host_key_check",
        "list", "z_do_not_delete_drop_directory",
        mode="before",
    )
    @classmethod
    def _check_boolean(cls, value: Any, info: ValidationInfo) -> bool:
        if not isinstance(value, bool):
            raise ValueError(
                f"The {info.field_name} option must be set to true or false. "
                f"Got a value of type {type(value).__name__}."
            )
        return value

    @field_validator("enable", "disable", "only", mode="before")
    @classmethod
    def _check_name_list(cls, value: Any, info: ValidationInfo) -> List[str]:
        if not isinstance(value, (list, tuple)):
            raise ValueError(
                f"The {info.field_name} option must be set to a list value. "
                f"Got a value of type {type(value).__name__}."
            )
        for item in value:
            if not isinstance(item, str):
                raise ValueError(
                    f"The {info.field_name} option must contain only strings. "
                    f"Got an item of type {type(item).__name__}."
                )
        return [item for item in value]

    @field_validator("log_age", mode="before")
    @classmethod
    def _check_log_age(cls, value: Any) -> int:
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        if isinstance(value, str):
            if value == "all":
                return LOG_AGE_ALL
            if value.isdigit():
                return int(value)
        raise ValueError(f'The log_age option must be a number, or the string "all". Got {value!r}')

    @field_validator("ticket", mode="before")
    @classmethod
    def _check_ticket(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str) or not TICKET_PATTERN.fullmatch(value):
            raise ValueError(
                "The ticket option may contain only numbers, letters, underscores, "
                f"and dashes. Got {value!r}"
            )
        return value

    @field_validator("dir", "upload_key", "gpg_key", mode="before")
    @classmethod
    def _check_path(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, os.PathLike):
            return os.fspath(value)
        if value is None and info.field_name == "dir":
            raise ValueError("The dir option must be set to a path.")
        return value

    @field_validator("scope", mode="before")
    @classmethod
    def _check_scope(cls, value: Any) -> Dict[str, bool]:
        if isinstance(value, str):
            return {name: True for name in value.split(",") if name}
        if isinstance(value, Mapping):
            return dict(value)
        raise ValueError(
            "The scope option must be a comma-separated string. "
            f"Got a value of type {type(value).__name__}."
        )


def _first_error(exc: ValidationError, order: List[str]) -> SettingsError:
    """Turn a pydantic ValidationError into a SettingsError for one key.

    When several keys fail, the one that came first in the configure() call
    is reported.
    """
    errors = exc.errors()

    def position(err: dict) -> int:
        key = str(err["loc"][0]) if err.get("loc") else ""
        return order.index(key) if key in order else len(order)

    err = min(errors, key=position)
    key = str(err["loc"][0]) if err.get("loc") else "?"
    cause = err.get("ctx", {}).get("error")
    message = str(cause) if cause is not None else f"The {key} option is invalid: {err['msg']}"
    return SettingsError(key, message)


class Settings:
    """Shared configuration and state for a support run."""

    def __init__(
        self,
        log: Optional[LogManager] = None,
        facts: Optional[Facts] = None,
        **options: Any,
    ):
        self.log = log if log is not None else LogManager()
        self.facts = facts if facts is not None else Facts()
        self.options = SupportOptions()
        self.state: Dict[str, Any] = {"exit_code": 0}

        if options:
            self.configure(**options)

    def configure(self, **options: Any) -> None:
        """
        Merge options into the current configuration.

        Every key is validated before any is applied: if one value is
        invalid, SettingsError is raised and none of the keys in this call
        take effect.
        """
        if not options:
            return

        merged = self.options.model_dump()
        merged.update(options)

        try:
            candidate = SupportOptions.model_validate(merged)
        except ValidationError as exc:
            raise _first_error(exc, list(options)) from None

        self.options = candidate

    def get(self, key: str, default: Any = None) -> Any:
        """Return an option by name, including pass-through keys."""
        return getattr(self.options, key, default)

    @property
    def noop(self) -> bool:
        return self.options.noop

    def load_file(self, path: Path | str) -> Path:
        """Configure from a YAML mapping of option names to values."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise SettingsError("config", f"Config file must contain a YAML mapping, got {type(data).__name__}: {path}")

        self.configure(**{str(k): v for k, v in data.items()})
        return path

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """Apply environment variable overrides."""
        environ = os.environ if environ is None else environ
        overrides = {
            option: environ[env_var]
            for env_var, option in ENV_MAPPINGS.items()
            if env_var in environ
        }
        self.configure(**overrides)

    def validate(self) -> None:
        """
        Check options against the host before a run.

        Raises:
            ConfigurationError: on the first inconsistency found.
        """
        opts = self.options

        if os.path.islink(opts.dir):
            raise ConfigurationError(f"The dir option cannot be a symlink: {opts.dir}")
        if not (os.path.isdir(opts.dir) and os.access(opts.dir, os.W_OK)):
            raise ConfigurationError(f"The dir option is not an existing, writable directory: {opts.dir}")

        if opts.upload and not opts.ticket:
            raise ConfigurationError("The upload option requires a value to be specified for the ticket setting.")

        if opts.upload and opts.upload_key is not None and not os.access(opts.upload_key, os.R_OK):
            raise ConfigurationError(f"The upload_key option is not readable or does not exist: {opts.upload_key}")


def find_config_file() -> Optional[Path]:
    """Return the first existing file in CONFIG_SEARCH_PATHS."""
    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return None
