"""
Base checks that run on every node regardless of operator selection.
"""

from __future__ import annotations

import json

from pe_support.confine import Confinable
from pe_support.nodes import Check


class AlwaysEnabled:
    """Mixin for nodes that ignore confines and --enable/--disable/--only."""

    @property
    def enabled(self) -> bool:
        return True

    @enabled.setter
    def enabled(self, value: bool) -> None:
        Confinable.enabled.fset(self, value)

    def suitable(self) -> bool:
        return True


class BaseStatus(AlwaysEnabled, Check):
    """Write metadata.json: tool version, ticket and start time of the run."""

    def run(self):
        from pe_support import __version__

        metadata = json.dumps(
            {
                "version": __version__,
                "ticket": self.settings.options.ticket,
                "timestamp": self.state["start_time"].isoformat(timespec="milliseconds"),
            },
            indent=2,
        )
        return self.data_drop(metadata, self.state["drop_directory"], "metadata.json")
