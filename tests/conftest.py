"""
Pytest configuration and shared fixtures.
"""

import itertools
import logging
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pe_support.facts import Facts
from pe_support.log_manager import LogManager
from pe_support.nodes import Check, Registry, Scope
from pe_support.settings import Settings


# =============================================================================
# LOG CAPTURE
# =============================================================================

class ListHandler(logging.Handler):
    """Keep every record in memory."""

    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


_CAPTURE_IDS = itertools.count()


class CaptureSink:
    """A logging.Logger sink whose output can be inspected."""

    def __init__(self, level=logging.DEBUG):
        self.handler = ListHandler()
        self.logger = logging.getLogger(f"pe_support.test.{next(_CAPTURE_IDS)}")
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.logger.addHandler(self.handler)

    def messages(self, level=None):
        return [
            r.getMessage()
            for r in self.handler.records
            if level is None or r.levelno == level
        ]

    def text(self, level=None):
        return "\n".join(self.messages(level))


@pytest.fixture
def capture():
    """A DEBUG sink attached to nothing yet."""
    return CaptureSink()


@pytest.fixture
def log(capture):
    """A LogManager fanning out to the capture sink."""
    manager = LogManager()
    manager.add_logger(capture.logger)
    return manager


# =============================================================================
# SETTINGS FIXTURES
# =============================================================================

LINUX_FACTS = {
    "kernel": "Linux",
    "hostname": "pe-node",
    "fqdn": "pe-node.example.com",
    "identity": {"user": "root", "uid": 0, "privileged": True},
    "os": {"name": "Rocky Linux", "family": "RedHat", "release": "9.3"},
    "osfamily": "RedHat",
}


@pytest.fixture
def facts():
    """Facts for a privileged RedHat-family Linux node."""
    return Facts(overrides=dict(LINUX_FACTS))


@pytest.fixture
def settings(tmp_path, log, facts):
    """Settings writing to a temporary output directory."""
    out = tmp_path / "out"
    out.mkdir()
    return Settings(log=log, facts=facts, dir=str(out))


# =============================================================================
# TREE HELPERS
# =============================================================================

class RecordingCheck(Check):
    """Check that appends its name to settings.state["ran"]."""

    def setup(self, **options):
        if options.get("default_disabled"):
            self.enabled = False

    def run(self):
        self.state.setdefault("ran", []).append(self.name)


class FailingCheck(Check):
    def run(self):
        raise RuntimeError("boom")


class TreeScope(Scope):
    """Scope that can start disabled or unsuitable."""

    def setup(self, **options):
        if options.get("default_disabled"):
            self.enabled = False
        if options.get("unsuitable"):
            self.confine(lambda: False)


def make_scope_type(name):
    """Create a distinct Scope subclass so each gets its own registry entry."""
    return type(name, (TreeScope,), {})


@pytest.fixture
def registry():
    return Registry()
