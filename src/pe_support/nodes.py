"""
Nodes - the Check/Scope tree walked by the Runner.

A Scope is a composite node; a Check is a leaf. Both carry:

    name        own short name joined to the parent's resolved name with "."
                (the parent segment is omitted when it is empty)
    confines    runtime preconditions (see pe_support.confine)
    enabled     operator selection, resolved from only/enable/disable

The children of each Scope type are declared in a Registry, built once and
passed into tree construction:

    registry = Registry()
    registry.add_child(BaseScope, SystemScope, name="system")
    registry.add_child(SystemScope, SystemConfig, name="config")

    root = BaseScope(settings=settings, registry=registry, name="")

A Scope builds its own children during construction, against its default
enabled state, and is then resolved by its parent. A disabled Scope is never
run, so nothing beneath it runs whatever its own flag says. Resolution order
for a child, with selected = only + enable:

    1. parent disabled                       -> disabled
    2. only non-empty and child enabled      -> disabled unless a selected
                                                entry is a prefix of its name
    3. Scope child                           -> enabled if its name is a prefix
                                                of a selected entry
       Check child                           -> enabled if its name is selected
    4. name in disable                       -> disabled

Prefixes are matched on whole segments: "a" is a prefix of "a" and "a.b",
never of "ab".
"""

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from pe_support.confine import Confinable
from pe_support.helpers import DiagnosticHelpers
from pe_support.settings import Settings

SEPARATOR = "."


@runtime_checkable
class Suitable(Protocol):
    enabled: bool

    def suitable(self) -> bool: ...


@runtime_checkable
class Node(Suitable, Protocol):
    @property
    def name(self) -> str: ...

    def run(self) -> Any: ...


def is_prefix(prefix: str, name: str) -> bool:
    """True if ``prefix`` names ``name`` or one of its ancestors."""
    if not prefix:
        return False
    return name == prefix or name.startswith(prefix + SEPARATOR)


def format_exception(exc: BaseException) -> str:
    """Render an exception trace for a single log message."""
    lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return "\n\t".join("".join(lines).rstrip().splitlines())


def run_child(child: Node, log: Any, display: Callable[[str], None] = print) -> None:
    """
    Run one node, timing it and containing any exception it raises.

    Used by Scope.run for each eligible child and by the Runner for root
    nodes. The caller decides eligibility (enabled and suitable).
    """
    start = time.monotonic()
    log.info(f"starting evaluation of: {child.name}")

    if child.name:
        if isinstance(child, Check):
            display(f"Evaluating check: {child.name}")
        else:
            display(f"\nEvaluating scope: {child.name}")

    try:
        child.run()
    except Exception as e:
        log.error(f"{type(e).__name__} raised during {child.name}: {e}\n\t{format_exception(e)}")

    elapsed = time.monotonic() - start
    log.debug(f"finished evaluation of {child.name} in {elapsed:.3f} seconds")


# =============================================================================
# Registry
# =============================================================================


@dataclass
class ChildSpec:
    """One declared child of a Scope type."""

    child_type: type
    options: Dict[str, Any] = field(default_factory=dict)


class Registry:
    """Ordered child declarations per Scope type.

    Declarations belong to the exact type they were made for; subclasses of
    a Scope type do not inherit its children.
    """

    def __init__(self):
        self._specs: Dict[type, List[ChildSpec]] = {}

    def add_child(self, scope_type: type, child_type: type, **options: Any) -> None:
        self._specs.setdefault(scope_type, []).append(ChildSpec(child_type, dict(options)))

    def child_specs(self, scope_type: type) -> List[ChildSpec]:
        return list(self._specs.get(scope_type, []))

    def __contains__(self, scope_type: object) -> bool:
        return scope_type in self._specs


# =============================================================================
# Shared node behavior
# =============================================================================


class Configable:
    """Trait exposing the shared Settings and its collaborators."""

    settings: Settings

    @property
    def log(self):
        return self.settings.log

    @property
    def facts(self):
        return self.settings.facts

    @property
    def state(self) -> Dict[str, Any]:
        return self.settings.state

    @property
    def noop(self) -> bool:
        return self.settings.noop


class _TreeNode(Configable, Confinable, DiagnosticHelpers):
    """Construction and naming shared by Check and Scope."""

    def __init__(self, parent: Optional["Scope"] = None, *, settings: Optional[Settings] = None, **options: Any):
        if settings is None:
            settings = parent.settings if parent is not None else Settings()

        self.settings = settings
        self._parent = parent
        self._own_name = options.get("name")
        self._init_confinable()

        self.setup(**options)

        if self._own_name is None:
            raise ValueError(f"{type(self).__name__} must be initialized with a name parameter.")

    @property
    def parent(self) -> Optional["Scope"]:
        return self._parent

    @property
    def name(self) -> str:
        """Resolved hierarchical name, computed once."""
        try:
            return self._resolved_name
        except AttributeError:
            pass

        if self._parent is None or not self._parent.name:
            self._resolved_name = str(self._own_name)
        else:
            self._resolved_name = SEPARATOR.join([self._parent.name, str(self._own_name)])
        return self._resolved_name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"

    def setup(self, **options: Any) -> None:
        """Hook for subclasses: declare confines, defaults and node options."""


class Check(_TreeNode):
    """Leaf unit of work."""

    def run(self) -> Any:
        raise NotImplementedError("A subclass of Check must provide a run method.")


class Scope(_TreeNode):
    """Composite unit of work owning an ordered list of children."""

    def __init__(
        self,
        parent: Optional["Scope"] = None,
        *,
        settings: Optional[Settings] = None,
        registry: Optional[Registry] = None,
        **options: Any,
    ):
        if registry is None:
            registry = parent.registry if isinstance(parent, Scope) else Registry()
        self.registry = registry
        self._children: List[_TreeNode] = []

        super().__init__(parent, settings=settings, **options)
        self._initialize_children()

    @property
    def children(self) -> List[_TreeNode]:
        return list(self._children)

    def _initialize_children(self) -> None:
        for spec in self.registry.child_specs(type(self)):
            try:
                child = spec.child_type(self, **spec.options)
            except Exception as e:
                self.log.error(
                    f"{type(e).__name__} raised when initializing {spec.child_type.__name__} "
                    f"in scope '{self.name}': {e}\n\t{format_exception(e)}"
                )
                continue
            self.resolve_child(child)
            self._children.append(child)

    def resolve_child(self, child: _TreeNode) -> None:
        """Apply only/enable/disable to a freshly constructed child."""
        options = self.settings.options
        selected = list(options.only) + list(options.enable)

        if not self.enabled:
            child.enabled = False

        if options.only and child.enabled:
            if not any(is_prefix(entry, child.name) for entry in selected):
                child.enabled = False

        if isinstance(child, Scope):
            # Something nested inside the scope was selected
            if any(is_prefix(child.name, entry) for entry in selected):
                child.enabled = True
        elif child.name in selected:
            child.enabled = True

        if child.name in options.disable:
            child.enabled = False

    def run(self) -> None:
        """Run every enabled and suitable child, depth-first, in order."""
        for child in self._children:
            if not (child.enabled and child.suitable()):
                continue
            run_child(child, self.log, self.display)

    def describe(self) -> None:
        """Print the names of suitable descendants."""
        for child in self._children:
            if not child.suitable():
                continue

            if child.enabled:
                self.display(child.name)
            else:
                self.display(f"{child.name} (opt-in with --enable)")

            if isinstance(child, Scope):
                child.describe()


