"""
Confines - suitability predicates for Scopes and Checks.

A Confine is a single boolean test, either on the value of a fact or on an
arbitrary callable. Confinable gives a node a list of confines and an
operator-controlled enabled flag:

    suitable()  -> every confine holds (runtime preconditions)
    enabled     -> operator selection (--enable / --disable / --only)

Confine forms:
    Confine("kernel", "linux")                       fact matches a value
    Confine("osfamily", "redhat", "suse")            fact matches any value
    Confine("fqdn", block=lambda v: v.endswith(".corp"))
    Confine(block=lambda: os.path.exists("/opt/puppetlabs"))
"""

from __future__ import annotations

import re
import traceback
from collections.abc import Mapping
from typing import Any, Callable, List, Optional, Tuple

_UNDEFINED = object()


def normalize(value: Any) -> Any:
    """Lowercase strings so fact comparisons are case-insensitive."""
    if isinstance(value, str):
        return value.lower()
    return value


def value_matches(expected: Any, actual: Any) -> bool:
    """
    Test a normalized fact value against one acceptance value.

    - range:           membership
    - compiled regex:  search against the string form of the fact
    - list/tuple/set:  equality with the fact, or membership of the fact
    - anything else:   equality, without bool/int crossover
    """
    if isinstance(expected, range):
        return isinstance(actual, int) and not isinstance(actual, bool) and actual in expected
    if isinstance(expected, re.Pattern):
        return isinstance(actual, str) and expected.search(actual) is not None
    if isinstance(expected, (list, tuple, set, frozenset)):
        if isinstance(actual, (list, tuple, set, frozenset)):
            return type(actual)(normalize(v) for v in expected) == actual
        return any(value_matches(normalize(v), actual) for v in expected)
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected is actual
    return expected == actual


class Confine:
    """A restricting test resolved on demand to True or False."""

    def __init__(
        self,
        fact: Optional[str] = None,
        *values: Any,
        block: Optional[Callable[..., Any]] = None,
        facts: Any = None,
        log: Any = None,
    ):
        if fact is None and block is None:
            raise ValueError("The fact name must be provided")
        if fact is not None and not values and block is None:
            raise ValueError("One or more values or a block must be provided")
        if values and block is not None:
            raise ValueError("Values and a block cannot be combined in one confine")
        if fact is None and values:
            raise ValueError("The fact name must be provided")

        self._fact = fact
        self._values: Tuple[Any, ...] = tuple(values)
        self._block = block
        self._facts = facts if facts is not None else {}
        self._log = log

    @property
    def fact(self) -> Optional[str]:
        return self._fact

    @property
    def values(self) -> List[Any]:
        return list(self._values)

    @property
    def block(self) -> Optional[Callable[..., Any]]:
        return self._block

    def __repr__(self) -> str:
        if self._block is not None:
            return f"Confine({self._fact!r}, block={self._block!r})"
        return f"Confine({self._fact!r}, {', '.join(repr(v) for v in self._values)})"

    def _call_block(self, *args: Any) -> bool:
        try:
            return bool(self._block(*args))
        except Exception as e:
            if self._log is not None:
                self._log.error(
                    f"{type(e).__name__} raised during Confine: {e}\n\t"
                    + "\n\t".join(traceback.format_exc().splitlines())
                )
            return False

    def is_true(self) -> bool:
        """Evaluate the confine. Never raises."""
        if self._fact is None:
            return self._call_block()

        raw = self._facts.get(self._fact, _UNDEFINED)
        if raw is _UNDEFINED:
            if self._log is not None:
                self._log.warn(f"Confine requested undefined fact named: {self._fact}")
            return False

        value = normalize(raw)
        if value is None:
            return False

        if self._block is not None:
            return self._call_block(value)

        return any(value_matches(normalize(v), value) for v in self._values)


class Confinable:
    """
    Trait for objects that declare confines and carry an enabled flag.

    Hosts provide ``facts`` and ``log`` attributes; the Configable trait in
    pe_support.nodes supplies both from Settings.
    """

    facts: Any
    log: Any

    def _init_confinable(self) -> None:
        self._confines: List[Confine] = []
        self._enabled = True

    @property
    def confines(self) -> List[Confine]:
        return list(self._confines)

    def confine(
        self,
        confines: Any = None,
        block: Optional[Callable[..., Any]] = None,
        **facts: Any,
    ) -> None:
        """
        Add conditions that must hold for this object to be suitable.

            confine(kernel="linux")                    one Confine per fact
            confine({"osfamily": ["redhat", "suse"]})  list values are splatted
            confine("fqdn", block=fn)                  fn receives the fact value
            confine(fn) / confine(block=fn)            fn takes no arguments
        """
        if callable(confines) and block is None:
            confines, block = None, confines

        mapping = {}
        if isinstance(confines, Mapping):
            mapping.update(confines)
        mapping.update(facts)

        for fact, values in mapping.items():
            if not isinstance(values, (list, tuple)):
                values = [values]
            self._confines.append(Confine(str(fact), *values, facts=self.facts, log=self.log))

        if block is not None:
            fact = None if isinstance(confines, Mapping) else confines
            self._confines.append(Confine(fact, block=block, facts=self.facts, log=self.log))

    def suitable(self) -> bool:
        """True when every confine holds, or when there are none."""
        return all(c.is_true() for c in self._confines)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if not isinstance(value, bool):
            raise TypeError(
                f"The value of enabled must be set to True or False. "
                f"Got a value of type {type(value).__name__}."
            )
        self._enabled = value
