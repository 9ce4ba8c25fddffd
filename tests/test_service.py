"""Tests for systemd user service management."""

import subprocess
from pathlib import Path

import pytest

from daily_journal.errors import EXIT_SERVICE_ERROR, ServiceError
from daily_journal.service import SERVICE_NAME, install_service, render_unit, uninstall_service


class FakeRun:
    """Records subprocess.run calls and fails on chosen systemctl verbs."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        code = 1 if cmd[2] in self.fail_on else 0
        return subprocess.CompletedProcess(cmd, code, stdout="", stderr="Failed to connect to bus" if code else "")


@pytest.fixture
def fake_run(monkeypatch):
    run = FakeRun()
    monkeypatch.setattr(subprocess, "run", run)
    return run


def test_render_unit(tmp_path):
    unit = render_unit(["/usr/bin/python3", "-m", "daily_journal.cli", "monitor"], tmp_path / "my journal")
    assert f"ExecStart=/usr/bin/python3 -m daily_journal.cli monitor '{tmp_path.resolve() / 'my journal'}'" in unit
    assert "Restart=on-failure" in unit
    assert "WantedBy=default.target" in unit


def test_install(tmp_path, fake_run):
    unit_path = install_service(tmp_path / "journal", ["journal-timestamp-monitor"], unit_dir=tmp_path / "units")

    assert unit_path == tmp_path / "units" / SERVICE_NAME
    assert "journal-timestamp-monitor" in unit_path.read_text()
    assert fake_run.calls == [
        ["systemctl", "--user", "daemon-reload"],
        ["systemctl", "--user", "enable", SERVICE_NAME],
        ["systemctl", "--user", "start", SERVICE_NAME],
    ]


def test_install_failure(tmp_path, monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(fail_on={"enable"}))
    with pytest.raises(ServiceError) as exc_info:
        install_service(tmp_path, ["journal-timestamp-monitor"], unit_dir=tmp_path / "units")
    assert exc_info.value.exit_code == EXIT_SERVICE_ERROR
    assert exc_info.value.details == "Failed to connect to bus"


def test_systemctl_missing(tmp_path, monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(ServiceError, match="not available"):
        install_service(tmp_path, ["journal-timestamp-monitor"], unit_dir=tmp_path / "units")


def test_uninstall(tmp_path, fake_run):
    unit_dir = tmp_path / "units"
    install_service(tmp_path, ["journal-timestamp-monitor"], unit_dir=unit_dir)
    fake_run.calls.clear()

    assert uninstall_service(unit_dir=unit_dir) is True
    assert not (unit_dir / SERVICE_NAME).exists()
    assert [c[2] for c in fake_run.calls] == ["stop", "disable", "daemon-reload"]


def test_uninstall_when_absent(tmp_path, monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(fail_on={"stop", "disable"}))
    assert uninstall_service(unit_dir=Path(tmp_path)) is False
