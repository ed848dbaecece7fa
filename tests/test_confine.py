"""
Tests for Confine matching and the Confinable trait.
"""

import logging
import re

import pytest

from pe_support.confine import Confinable, Confine, value_matches
from pe_support.facts import Facts


def confined(*values, fact_value, block=None, log=None):
    facts = Facts(overrides={"yay": fact_value})
    return Confine("yay", *values, block=block, facts=facts, log=log).is_true()


class TestConstruction:
    """Only fact+values, fact+block, or block alone are accepted."""

    def test_fact_without_values_or_block(self):
        with pytest.raises(ValueError):
            Confine("kernel")

    def test_nothing(self):
        with pytest.raises(ValueError):
            Confine()

    def test_values_and_block(self):
        with pytest.raises(ValueError):
            Confine("kernel", "linux", block=lambda v: True)

    def test_valid_forms(self):
        Confine("kernel", "linux")
        Confine("kernel", block=lambda v: True)
        Confine(block=lambda: True)


class TestMatching:
    """is_true() over fact values."""

    def test_string_match_is_case_insensitive(self):
        assert confined("linux", fact_value="Linux")
        assert confined("LINUX", fact_value="linux")

    def test_any_value_matches(self):
        assert confined("redhat", "suse", fact_value="Suse")
        assert not confined("redhat", "suse", fact_value="Debian")

    def test_range_membership(self):
        assert confined(range(5, 8), fact_value=6)
        assert not confined(2, 1, [3, 4], range(5, 8), fact_value=9)

    def test_regex(self):
        assert confined(re.compile(r"^pe-"), fact_value="PE-Console")

    def test_list_equality_and_membership(self):
        assert confined([3, 4], fact_value=[3, 4])
        assert confined([3, 4], fact_value=4)
        assert not confined([3, 4], fact_value=5)

    def test_booleans_do_not_match_ints(self):
        assert confined(True, fact_value=True)
        assert not confined(True, fact_value=1)
        assert not confined(False, fact_value=True)

    def test_none_value_is_false(self):
        assert not confined("x", fact_value=None)

    def test_block_receives_normalized_value(self):
        seen = []
        assert confined(block=lambda v: seen.append(v) or True, fact_value="MiXeD")
        assert seen == ["mixed"]

    def test_block_only(self):
        assert Confine(block=lambda: True).is_true()
        assert not Confine(block=lambda: 0).is_true()

    def test_value_matches_plain_equality(self):
        assert value_matches("a", "a")
        assert not value_matches("a", "b")


class TestNeverRaises:
    """Undefined facts and failing blocks resolve to False."""

    def test_undefined_fact_warns(self, log, capture):
        confine = Confine("no_such_fact", "x", facts=Facts(), log=log)
        assert confine.is_true() is False
        assert "Confine requested undefined fact named: no_such_fact" in capture.messages(logging.WARNING)

    def test_raising_block_is_logged(self, log, capture):
        def broken():
            raise KeyError("missing")

        assert Confine(block=broken, log=log).is_true() is False

        errors = capture.messages(logging.ERROR)
        assert len(errors) == 1
        assert errors[0].startswith("KeyError raised during Confine")
        assert "broken" in errors[0]

    def test_raising_block_with_fact(self, log):
        assert confined(block=lambda v: 1 / 0, fact_value="x", log=log) is False


class Host(Confinable):
    def __init__(self, facts, log):
        self.facts = facts
        self.log = log
        self._init_confinable()


class TestConfinable:
    """confine() forms, suitable() and the enabled flag."""

    @pytest.fixture
    def host(self, facts, log):
        return Host(facts, log)

    def test_no_confines_is_suitable(self, host):
        assert host.suitable()

    def test_keyword_confine(self, host):
        host.confine(kernel="linux")
        assert len(host.confines) == 1
        assert host.suitable()

    def test_mapping_with_list_values(self, host):
        host.confine({"osfamily": ["debian", "redhat"], "kernel": "linux"})
        assert [c.fact for c in host.confines] == ["osfamily", "kernel"]
        assert host.confines[0].values == ["debian", "redhat"]
        assert host.suitable()

    def test_all_confines_must_hold(self, host):
        host.confine(kernel="linux")
        host.confine(osfamily="debian")
        assert not host.suitable()

    def test_fact_and_block(self, host):
        host.confine("fqdn", block=lambda v: v.endswith(".example.com"))
        assert host.suitable()

    def test_block_only(self, host):
        host.confine(lambda: False)
        assert not host.suitable()

    def test_enabled_defaults_true(self, host):
        assert host.enabled is True
        host.enabled = False
        assert host.enabled is False

    def test_enabled_rejects_non_bool(self, host):
        with pytest.raises(TypeError):
            host.enabled = "yes"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
