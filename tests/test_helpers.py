"""
Tests for DiagnosticHelpers: command execution, drops and package queries.
"""

import gzip
import json
import logging
import os
import subprocess
import time
from unittest.mock import patch

import pytest

from pe_support.helpers import DiagnosticHelpers, ExecutionFailure, iter_files
from pe_support.nodes import Configable


class Helper(Configable, DiagnosticHelpers):
    def __init__(self, settings):
        self.settings = settings


@pytest.fixture
def helper(settings):
    return Helper(settings)


@pytest.fixture
def drop(tmp_path):
    path = tmp_path / "drop"
    path.mkdir()
    return path


class TestExec:
    """Command execution with timeouts."""

    def test_return_result(self, helper):
        assert helper.exec_return_result("echo hello") == "hello"

    def test_return_result_of_failing_command(self, helper):
        assert helper.exec_return_result("echo partial; exit 3") == "partial"

    def test_return_status(self, helper):
        assert helper.exec_return_status("true") is True
        assert helper.exec_return_status("false") is False

    def test_timeout_is_a_failed_call(self, helper, capture):
        assert helper.exec_return_result("sleep 5", timeout=0.2) == ""
        assert helper.exec_return_status("sleep 5", timeout=0.2) is False
        assert any("timed out" in m for m in capture.messages(logging.ERROR))

    def test_or_fail_raises(self, helper):
        with pytest.raises(ExecutionFailure) as exc:
            helper.exec_or_fail("exit 2")
        assert exc.value.status == 2

    def test_or_fail_timeout(self, helper):
        with pytest.raises(ExecutionFailure, match="timed out"):
            helper.exec_or_fail("sleep 5", timeout=0.2)

    def test_or_fail_returns_output(self, helper):
        assert helper.exec_or_fail("echo ok") == "ok\n"

    def test_executable(self, helper):
        assert helper.executable("sh")
        assert helper.executable("definitely-not-a-command-xyz") is None


class TestPrettyJson:
    def test_removes_blacklisted_keys(self, helper):
        text = json.dumps({"host": "ldap", "password": "secret", "ds_pw_obfuscated": True})
        result = json.loads(helper.pretty_json(text, ["password", "ds_pw_obfuscated"]))
        assert result == {"host": "ldap"}

    def test_invalid_json(self, helper, capture):
        assert helper.pretty_json("{not json") == ""
        assert "pretty_json: unable to parse json" in capture.messages(logging.ERROR)

    def test_empty(self, helper):
        assert helper.pretty_json("") == ""


class TestPackages:
    """Package manager detection and caching."""

    def test_rpm_for_redhat(self, helper):
        assert helper.pkg_manager() == "rpm"

    def test_dpkg_for_debian(self, helper, settings):
        settings.facts.set("os", {"name": "Ubuntu", "family": "Debian", "release": "22.04"})
        assert helper.pkg_manager() == "dpkg"

    def test_unknown_family_marks_failure(self, helper, settings, capture):
        settings.facts.set("os", {"name": "Arch", "family": "arch", "release": ""})
        assert helper.pkg_manager() is None
        assert settings.state["exit_code"] == 1
        assert any("Unknown packaging system" in m for m in capture.messages(logging.ERROR))

    def test_package_installed_is_cached(self, helper, settings):
        with patch.object(Helper, "exec_return_result", return_value="Name : pe-puppetdb\nVersion : 7.0") as run:
            assert helper.package_installed("pe-puppetdb") is True
            assert helper.package_installed("pe-puppetdb") is True
        assert run.call_count == 1
        assert settings.state["installed_packages"] == {"pe-puppetdb": True}

    def test_puppet_conf_is_cached(self, helper, settings):
        with patch.object(Helper, "exec_return_result", return_value="/etc/puppetlabs/puppet/ssl") as run:
            assert helper.puppet_conf("ssldir") == "/etc/puppetlabs/puppet/ssl"
            assert helper.puppet_conf("ssldir") == "/etc/puppetlabs/puppet/ssl"
        assert run.call_count == 1
        assert settings.state["puppet_conf"]["main"]["ssldir"] == "/etc/puppetlabs/puppet/ssl"


class TestDrops:
    """Writing output into the drop directory."""

    def test_data_drop_appends(self, helper, drop):
        helper.data_drop("one", drop, "out.txt")
        helper.data_drop("two", drop, "out.txt")
        assert (drop / "out.txt").read_text() == "one\ntwo\n"

    def test_exec_drop(self, helper, drop):
        assert helper.exec_drop("echo collected", drop / "sub", "out.txt") is True
        assert (drop / "sub" / "out.txt").read_text() == "collected\n"

    def test_exec_drop_merges_stderr(self, helper, drop):
        helper.exec_drop("sh -c 'echo err >&2'", drop, "out.txt")
        assert (drop / "out.txt").read_text() == "err\n"

    def test_exec_drop_separate_stderr(self, helper, drop):
        helper.exec_drop("sh -c 'echo out; echo err >&2'", drop, "out.txt", stderr="err.txt")
        assert (drop / "out.txt").read_text() == "out\n"
        assert (drop / "err.txt").read_text() == "err\n"

    def test_exec_drop_missing_command(self, helper, drop):
        assert helper.exec_drop("definitely-not-a-command-xyz --flag", drop, "out.txt") is False
        assert not (drop / "out.txt").exists()

    def test_copy_drop_recreates_parent_path(self, helper, drop, tmp_path):
        src = tmp_path / "etc" / "app"
        src.mkdir(parents=True)
        (src / "app.conf").write_text("conf")

        assert helper.copy_drop("app/app.conf", drop, cwd=tmp_path / "etc") is True
        assert (drop / "app" / "app.conf").read_text() == "conf"

    def test_copy_drop_directory_flat(self, helper, drop, tmp_path):
        src = tmp_path / "logs"
        (src / "nested").mkdir(parents=True)
        (src / "a.log").write_text("a")
        (src / "nested" / "b.log").write_text("b")

        helper.copy_drop(src, drop, recreate_parent_path=False)
        assert (drop / "logs" / "a.log").read_text() == "a"
        assert (drop / "logs" / "nested" / "b.log").read_text() == "b"

    def test_copy_drop_follows_symlinked_directories(self, helper, drop, tmp_path):
        real = tmp_path / "real"
        real.mkdir()
        (real / "x.log").write_text("x")
        src = tmp_path / "logs"
        src.mkdir()
        (src / "linked").symlink_to(real, target_is_directory=True)

        helper.copy_drop("logs", drop, cwd=tmp_path)
        assert (drop / "logs" / "linked" / "x.log").read_text() == "x"

    def test_copy_drop_age_filter(self, helper, drop, tmp_path):
        src = tmp_path / "logs"
        src.mkdir()
        (src / "new.log").write_text("new")
        old = src / "old.log"
        old.write_text("old")
        long_ago = time.time() - 30 * 86400
        os.utime(old, (long_ago, long_ago))

        helper.copy_drop("logs", drop, cwd=tmp_path, age=14)
        assert (drop / "logs" / "new.log").exists()
        assert not (drop / "logs" / "old.log").exists()

    def test_copy_drop_unreadable_source(self, helper, drop, tmp_path):
        assert helper.copy_drop(tmp_path / "missing", drop) is False

    def test_compress_drop(self, helper, drop, tmp_path):
        src = tmp_path / "messages"
        src.write_text("kernel: hello\n")
        mtime = time.time() - 3600
        os.utime(src, (mtime, mtime))

        helper.compress_drop(src, drop, recreate_parent_path=False)

        out = drop / "messages.gz"
        assert gzip.decompress(out.read_bytes()) == b"kernel: hello\n"
        assert int(out.stat().st_mtime) == int(mtime)


class TestNoop:
    """Drops report what they would do and write nothing."""

    @pytest.fixture
    def helper(self, settings):
        settings.configure(noop=True)
        return Helper(settings)

    def test_drops_return_none(self, helper, drop, tmp_path, capsys):
        src = tmp_path / "file.txt"
        src.write_text("x")

        assert helper.data_drop("x", drop, "out.txt") is None
        assert helper.exec_drop("echo x", drop, "cmd.txt") is None
        assert helper.copy_drop(src, drop) is None
        assert helper.compress_drop(src, drop) is None
        assert list(drop.iterdir()) == []

        out = capsys.readouterr().out
        assert " (noop) Adding data to: " in out
        assert " (noop) Collecting output of: echo x" in out
        assert " (noop) Copying: " in out
        assert " (noop) Compressing: " in out

    def test_create_path_does_nothing(self, helper, tmp_path):
        assert helper.create_path(tmp_path / "new") is True
        assert not (tmp_path / "new").exists()


class TestIterFiles:
    def test_single_file(self, tmp_path):
        f = tmp_path / "a"
        f.write_text("a")
        assert list(iter_files(f)) == [f]

    def test_negative_age_keeps_everything(self, tmp_path):
        f = tmp_path / "a"
        f.write_text("a")
        os.utime(f, (0, 0))
        assert list(iter_files(tmp_path, -1)) == [f]
        assert list(iter_files(tmp_path, 1)) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
