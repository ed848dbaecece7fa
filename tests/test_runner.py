"""
Tests for the Runner: setup checks, list mode, full runs and cleanup.
"""

import json
import logging
import os
import signal
import tarfile
from unittest.mock import patch

import pytest

from conftest import FailingCheck, RecordingCheck, TreeScope, make_scope_type
from pe_support import archive
from pe_support import facts as facts_module
from pe_support.checks import AlwaysEnabled
from pe_support.facts import Facts
from pe_support.runner import Runner
from pe_support.settings import Settings


class Root(AlwaysEnabled, TreeScope):
    pass


class ExplodingCheck(RecordingCheck):
    def run(self):
        super().run()
        raise RuntimeError("archive should still happen")


@pytest.fixture(autouse=True)
def no_signal_changes(monkeypatch):
    """Keep the test process's own signal handlers."""
    calls = []
    monkeypatch.setattr(signal, "signal", lambda signum, handler: calls.append((signum, handler)))
    return calls


@pytest.fixture
def runner(settings, registry):
    registry.add_child(Root, RecordingCheck, name="first")
    registry.add_child(Root, FailingCheck, name="broken")
    registry.add_child(Root, ExplodingCheck, name="exploding")
    registry.add_child(Root, RecordingCheck, name="opt-in", default_disabled=True)

    r = Runner(settings, registry)
    r.add_child(Root, name="")
    return r


def out_dir(settings):
    return settings.options.dir


class TestSetup:
    """Environment checks before anything runs."""

    def test_succeeds(self, runner, settings, no_signal_changes):
        assert runner.setup() is True
        assert "start_time" in settings.state
        assert {s for s, _ in no_signal_changes} == {signal.SIGINT, signal.SIGTERM, signal.SIGQUIT}
        assert all(h == signal.SIG_DFL for _, h in no_signal_changes)

    def test_non_linux(self, runner, settings, capture):
        settings.facts.set("kernel", "Darwin")
        assert runner.setup() is False
        assert "The support script is limited to Linux operating systems." in capture.messages(logging.ERROR)

    def test_unprivileged(self, runner, settings, capture):
        settings.facts.set("identity", {"user": "me", "uid": 1000, "privileged": False})
        assert runner.setup() is False
        assert any("root privileges" in m for m in capture.messages(logging.ERROR))

    def test_invalid_settings(self, runner, settings, capture):
        settings.configure(upload=True)
        assert runner.setup() is False
        assert any(m.startswith("ConfigurationError raised when validating settings") for m in capture.messages())

    def test_encrypt_requires_gpg(self, runner, settings, capture):
        settings.configure(encrypt=True)
        with patch.object(Runner, "executable", return_value=None):
            assert runner.setup() is False
        assert any("Could not find gpg or gpg2" in m for m in capture.messages(logging.ERROR))

    def test_encrypt_records_gpg(self, runner, settings):
        settings.configure(encrypt=True)
        with patch.object(Runner, "executable", side_effect=lambda cmd: f"/usr/bin/{cmd}"):
            assert runner.setup() is True
        assert settings.state["gpg_command"] == "/usr/bin/gpg2"

    def test_upload_requires_sftp(self, runner, settings, capture):
        settings.configure(upload=True, ticket="123")
        with patch.object(Runner, "executable", return_value=None):
            assert runner.setup() is False
        assert any("Could not find sftp" in m for m in capture.messages(logging.ERROR))

    def test_fact_lookup_error_fails_setup(self, runner, settings, capture):
        with patch.object(Facts, "get", side_effect=KeyError("getpwuid(): uid not found: 1234")):
            assert runner.run() == 1

        assert any(
            m.startswith("KeyError raised when gathering facts")
            for m in capture.messages(logging.ERROR)
        )

    def test_unresolvable_identity_is_unprivileged(self, log, capture, tmp_path, registry, monkeypatch):
        def no_passwd_entry():
            raise KeyError("getpwuid(): uid not found: 1234")

        monkeypatch.setitem(facts_module.RESOLVERS, "identity", no_passwd_entry)
        settings = Settings(log=log, facts=Facts(overrides={"kernel": "Linux"}), dir=str(tmp_path))

        assert Runner(settings, registry).run() == 1
        assert "The support script must be run with root privileges." in capture.messages(logging.ERROR)

    def test_run_returns_1_when_setup_fails(self, runner, settings):
        settings.facts.set("kernel", "windows")
        assert runner.run() == 1
        assert os.listdir(out_dir(settings)) == []


class TestRun:
    """Full runs against a small tree."""

    def test_list_mode(self, runner, settings, capsys):
        settings.configure(list=True)
        assert runner.run() == 0

        out = capsys.readouterr().out
        assert "first\nbroken\nexploding\nopt-in (opt-in with --enable)\n" in out
        assert "ran" not in settings.state
        assert os.listdir(out_dir(settings)) == []

    def test_full_run_archives_and_cleans_up(self, runner, settings, capsys):
        assert runner.run() == 0

        assert settings.state["ran"] == ["first", "exploding"]
        assert "drop_directory" not in settings.state

        entries = os.listdir(out_dir(settings))
        assert len(entries) == 1
        archive_name = entries[0]
        assert archive_name.startswith("puppet_enterprise_support_pe-node_")
        assert archive_name.endswith(".tar.gz")
        assert oct(os.stat(os.path.join(out_dir(settings), archive_name)).st_mode & 0o777) == "0o600"

        with tarfile.open(os.path.join(out_dir(settings), archive_name)) as tar:
            names = tar.getnames()
        drop_name = archive_name[: -len(".tar.gz")]
        assert f"{drop_name}/support_script_log.jsonl" in names

        out = capsys.readouterr().out
        assert f"Output archive file: {os.path.join(out_dir(settings), archive_name)}" in out

    def test_run_log_records_failures(self, runner, settings):
        settings.configure(z_do_not_delete_drop_directory=True)
        runner.run()

        drops = [d for d in os.listdir(out_dir(settings)) if not d.endswith(".tar.gz")]
        assert len(drops) == 1
        log_path = os.path.join(out_dir(settings), drops[0], "support_script_log.jsonl")
        entries = [json.loads(line) for line in open(log_path)]

        errors = [e["msg"] for e in entries if e["level"] == "ERROR"]
        assert errors[0].startswith("RuntimeError raised during broken: boom")
        assert errors[1].startswith("RuntimeError raised during exploding: archive should still happen")
        assert any(e["msg"] == "starting evaluation of: first" for e in entries)

    def test_file_sink_detached_after_run(self, runner, settings):
        runner.run()
        assert "log_file" not in settings.state
        assert len(settings.log.loggers) == 1

    def test_ticket_in_drop_directory_name(self, runner, settings):
        settings.configure(ticket="SUP-7")
        runner.setup()
        name = runner.drop_directory_name()
        assert name.startswith("puppet_enterprise_support_SUP-7_pe-node_")
        assert len(name.rsplit("_", 1)[1]) == 14

    def test_output_directory_is_private_and_idempotent(self, runner, settings):
        runner.setup()
        assert runner.setup_output_directory() is True
        drop = settings.state["drop_directory"]
        assert oct(os.stat(drop).st_mode & 0o777) == "0o700"
        assert runner.setup_output_directory() is True
        assert settings.state["drop_directory"] == drop

    def test_noop_run_writes_nothing(self, runner, settings, capsys):
        settings.configure(noop=True)
        assert runner.run() == 0
        assert os.listdir(out_dir(settings)) == []
        assert "Creating output archive: " in capsys.readouterr().out

    def test_exit_code_from_state(self, settings, registry):
        class MarksFailure(RecordingCheck):
            def run(self):
                self.state["exit_code"] = 1

        registry.add_child(Root, MarksFailure, name="marks")
        r = Runner(settings, registry)
        r.add_child(Root, name="")
        assert r.run() == 1

    def test_exception_after_walk_returns_1_and_cleans_up(self, runner, settings, capture):
        with patch.object(archive, "create_output_archive", side_effect=OSError("disk full")):
            assert runner.run() == 1

        assert os.listdir(out_dir(settings)) == []
        assert any(
            m.startswith("OSError raised when executing diagnostics: disk full")
            for m in capture.messages(logging.ERROR)
        )

    def test_upload_uses_sftp(self, runner, settings):
        settings.configure(upload=True, ticket="123")
        with patch.object(Runner, "executable", return_value="/usr/bin/sftp"), \
                patch.object(archive, "sftp_upload") as upload, \
                patch.object(archive, "display_summary") as summary:
            assert runner.run() == 0

        upload.assert_called_once()
        summary.assert_not_called()

    def test_unsuitable_root_child_is_skipped(self, settings, registry):
        Hidden = make_scope_type("Hidden")
        registry.add_child(Hidden, RecordingCheck, name="inside")
        r = Runner(settings, registry)
        r.add_child(Hidden, name="hidden", unsuitable=True)
        r.run()
        assert "ran" not in settings.state


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
