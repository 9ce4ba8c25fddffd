"""Tests for batch migration of plaintext entries."""

import shutil
from contextlib import contextmanager

import portalocker
import pytest

from daily_journal import migration
from daily_journal.errors import ConfigError, EncryptionError, JournalError, SopsErrorKind
from daily_journal.migration import candidate_files, check_preconditions, migrate
from daily_journal.models import EncryptionState, MigrationOutcome
from daily_journal.sops import is_encrypted

from conftest import snapshot

ENTRY = "---\nid: {0}\ntitle: 'Day {0} -'\nupdated: 2024-01-0{0}, 00:00:00\n---\nbody {0}\n"


@pytest.fixture
def populated(journal_dir, sops_config):
    """Three plaintext entries plus files migration must ignore."""
    for n in (1, 2, 3):
        (journal_dir / f"journal.daily.2024.01.0{n}.md").write_text(ENTRY.format(n))
    (journal_dir / "notes.txt").write_text("not an entry\n")
    (journal_dir / "sub").mkdir()
    (journal_dir / "sub" / "nested.md").write_text("nested\n")
    return journal_dir


def entries(directory):
    return {k: v for k, v in snapshot(directory).items() if k.endswith(".md") and not k.startswith(".")}


class TestMigrate:
    """End-to-end migration runs."""

    def test_encrypts_all_plaintext(self, populated, sops_config, tool):
        report = migrate(populated, sops_config, tool)

        assert report.ok
        assert report.total == 3
        assert report.encrypted == 3
        for name in entries(populated):
            path = populated / name
            assert is_encrypted(path) == EncryptionState.ENCRYPTED
            assert tool.decrypt(path, sops_config).startswith("---\nid: ")
        assert (populated / "notes.txt").read_text() == "not an entry\n"
        assert (populated / "sub" / "nested.md").read_text() == "nested\n"

    def test_decrypted_content_unchanged(self, populated, sops_config, tool):
        before = entries(populated)
        migrate(populated, sops_config, tool)
        for name, content in before.items():
            assert tool.decrypt(populated / name, sops_config).encode() == content

    def test_second_run_is_idempotent(self, populated, sops_config, tool):
        migrate(populated, sops_config, tool)
        after_first = entries(populated)

        report = migrate(populated, sops_config, tool)
        assert report.ok
        assert report.already_encrypted == report.total == 3
        assert report.encrypted == 0
        assert entries(populated) == after_first

    def test_empty_file_skipped(self, populated, sops_config, tool):
        (populated / "journal.daily.2024.01.09.md").write_text("")
        report = migrate(populated, sops_config, tool)
        skipped = [r for r in report.results if r.outcome == MigrationOutcome.SKIPPED]
        assert [r.path.name for r in skipped] == ["journal.daily.2024.01.09.md"]
        assert report.ok
        assert (populated / "journal.daily.2024.01.09.md").read_text() == ""

    def test_no_backups_left_behind(self, populated, sops_config, tool):
        migrate(populated, sops_config, tool)
        leftovers = [p.name for p in populated.iterdir() if ".migrate." in p.name or ".roundtrip." in p.name]
        assert leftovers == []

    def test_failed_files_restored(self, populated, sops_config, tool, monkeypatch):
        before = entries(populated)
        assert tool.round_trip(sops_config, populated)
        monkeypatch.setenv("FAKE_SOPS_FAIL_ON", "encrypt")
        monkeypatch.setenv("FAKE_SOPS_MESSAGE", "Error: no key could decrypt the data key")

        report = migrate(populated, sops_config, tool)

        assert not report.ok
        assert report.failed == 3
        assert entries(populated) == before
        assert all("no key could decrypt" in r.reason for r in report.results)
        assert "Failed:            3" in report.summary()


class TestPreconditions:
    """Failures that abort before any file is touched."""

    def test_invalid_config_leaves_directory_untouched(self, populated, tool):
        config = populated / ".sops.yaml"
        config.write_text("invalid yaml content\n")
        before = snapshot(populated)

        with pytest.raises(ConfigError):
            migrate(populated, config, tool)
        assert snapshot(populated) == before

    def test_missing_config(self, journal_dir, tool):
        with pytest.raises(EncryptionError) as exc_info:
            migrate(journal_dir, None, tool)
        assert exc_info.value.kind == SopsErrorKind.CONFIG_NOT_FOUND
        assert exc_info.value.exit_code == 3

    def test_missing_tool(self, populated, sops_config, missing_tool):
        before = snapshot(populated)
        with pytest.raises(EncryptionError) as exc_info:
            migrate(populated, sops_config, missing_tool)
        assert exc_info.value.kind == SopsErrorKind.TOOL_MISSING
        assert snapshot(populated) == before

    def test_round_trip_failure(self, populated, tool):
        config = populated / ".sops.yaml"
        config.write_text("creation_rules:\n  - age: invalid_key_format\n")
        before = snapshot(populated)
        with pytest.raises(EncryptionError) as exc_info:
            migrate(populated, config, tool)
        assert exc_info.value.kind == SopsErrorKind.ROUND_TRIP_FAILED
        assert snapshot(populated) == before

    def test_missing_directory(self, temp_dir, sops_config, tool):
        with pytest.raises(JournalError, match="does not exist"):
            check_preconditions(temp_dir / "absent", sops_config, tool)


def test_candidate_files_ignores_hidden_and_other(populated):
    (populated / ".journal.daily.2024.01.01.tmp.x.md").write_text("tmp")
    assert [p.name for p in candidate_files(populated)] == [
        "journal.daily.2024.01.01.md",
        "journal.daily.2024.01.02.md",
        "journal.daily.2024.01.03.md",
    ]


class TestRollback:
    """Every way out of a per-file encryption leaves the file as it was."""

    def test_interrupt_restores_file(self, populated, sops_config, tool, monkeypatch):
        before = entries(populated)
        assert tool.round_trip(sops_config, populated)

        def interrupted(path, config_path=None):
            path.write_text('{\n  "data": "ENC[trunc')
            raise KeyboardInterrupt

        monkeypatch.setattr(tool, "encrypt_in_place", interrupted)
        with pytest.raises(KeyboardInterrupt):
            migrate(populated, sops_config, tool)

        assert entries(populated) == before
        assert [p.name for p in populated.iterdir() if ".migrate." in p.name] == []

    def test_backup_failure_is_recorded(self, populated, sops_config, tool, monkeypatch):
        before = entries(populated)

        def disk_full(src, dst, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(shutil, "copy2", disk_full)
        report = migrate(populated, sops_config, tool)

        assert report.failed == 3
        assert all("No space left on device" in r.reason for r in report.results)
        assert entries(populated) == before
        assert [p.name for p in populated.iterdir() if ".migrate." in p.name] == []

    def test_locked_file_is_recorded(self, populated, sops_config, tool, monkeypatch):
        @contextmanager
        def held(path, timeout=60.0):
            raise portalocker.AlreadyLocked("held elsewhere")
            yield

        monkeypatch.setattr(migration, "file_lock", held)
        report = migrate(populated, sops_config, tool)

        assert report.failed == 3
        assert {r.reason for r in report.results} == {"locked by another process"}


def test_preconditions_return_config(populated, sops_config, tool):
    assert check_preconditions(populated, sops_config, tool) == sops_config
