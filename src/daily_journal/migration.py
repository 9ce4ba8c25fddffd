"""Batch conversion of plaintext entries to encrypted form."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

import portalocker

from .errors import EncryptionError, JournalError, SopsErrorKind
from .locking import discard, file_lock, private_temp_file
from .models import EncryptionState, MigrationOutcome, MigrationReport, is_candidate_file
from .sops import SopsTool, check_sops_config, is_encrypted

logger = logging.getLogger(__name__)


def check_preconditions(directory: Path, config_path: Optional[Path], tool: SopsTool) -> Path:
    """Everything that must hold before a single file is touched.

    Returns:
        The validated encryption config path

    Raises:
        JournalError: If the directory is missing.
        ConfigError: If the config is missing or structurally invalid.
        EncryptionError: If sops is unavailable or the round trip fails.
    """
    if not directory.is_dir():
        raise JournalError(f"Directory does not exist: '{directory}'")
    if not os.access(directory, os.W_OK):
        raise JournalError(f"Directory is not writable: '{directory}'")

    if not tool.available:
        raise EncryptionError(
            "SOPS executable not found in PATH; cannot migrate",
            kind=SopsErrorKind.TOOL_MISSING,
            operation="migration",
        )

    if config_path is None:
        raise EncryptionError(
            "SOPS configuration file not found. Create a .sops.yaml file in your journal directory.",
            kind=SopsErrorKind.CONFIG_NOT_FOUND,
            operation="migration",
        )
    check_sops_config(config_path)

    if not tool.round_trip(config_path, directory):
        raise EncryptionError(
            f"SOPS round-trip test failed with config {config_path}; no files were migrated",
            kind=SopsErrorKind.ROUND_TRIP_FAILED,
            operation="round-trip test",
            diagnostics=tool.round_trip_errors.get(config_path.resolve(), ""),
        )
    return config_path


def candidate_files(directory: Path) -> list[Path]:
    """Entries managed by this tool, non-recursive."""
    return sorted(
        p for p in directory.iterdir()
        if is_candidate_file(p) and p.is_file() and not p.is_symlink()
    )


def _failure_reason(error: BaseException) -> str:
    reason = str(error)
    if isinstance(error, EncryptionError) and error.diagnostics:
        reason = f"{reason} [{error.diagnostics.splitlines()[0]}]"
    return reason


def _make_backup(path: Path) -> Path:
    backup = private_temp_file(path, tag="migrate")
    try:
        shutil.copy2(path, backup)
    except BaseException:
        discard(backup)
        raise
    return backup


def _encrypt_locked(path: Path, config_path: Path, tool: SopsTool, report: MigrationReport) -> None:
    state = is_encrypted(path)
    if state == EncryptionState.ENCRYPTED:
        report.add(path, MigrationOutcome.ALREADY_ENCRYPTED)
        return
    if state == EncryptionState.NOT_FOUND:
        report.add(path, MigrationOutcome.SKIPPED, "disappeared or became unreadable")
        return

    try:
        backup = _make_backup(path)
    except OSError as e:
        logger.error("Cannot back up %s, leaving it unencrypted: %s", path, e)
        report.add(path, MigrationOutcome.FAILED, f"backup failed: {e}")
        return

    try:
        tool.encrypt_in_place(path, config_path)
        if is_encrypted(path) != EncryptionState.ENCRYPTED:
            raise EncryptionError(
                "SOPS reported success but the file carries no encryption marker",
                operation=f"encryption of {path.name}",
            )
    except BaseException as e:
        os.replace(backup, path)
        if not isinstance(e, (EncryptionError, OSError)):
            raise
        reason = _failure_reason(e)
        logger.error("Failed to encrypt %s: %s", path, reason)
        report.add(path, MigrationOutcome.FAILED, reason)
        return

    discard(backup)
    logger.info("Encrypted %s", path)
    report.add(path, MigrationOutcome.ENCRYPTED)


def migrate_file(path: Path, config_path: Path, tool: SopsTool, report: MigrationReport) -> None:
    """Encrypt one file, restoring it from a backup on any failure.

    Per-file problems are recorded in report. Only an interrupt propagates,
    and only after the file has been restored.
    """
    if not os.access(path, os.R_OK) or not os.access(path, os.W_OK):
        report.add(path, MigrationOutcome.SKIPPED, "not readable and writable")
        return
    try:
        empty = path.stat().st_size == 0
    except OSError:
        report.add(path, MigrationOutcome.SKIPPED, "disappeared or became unreadable")
        return
    if empty:
        report.add(path, MigrationOutcome.SKIPPED, "empty file")
        return

    try:
        with file_lock(path):
            _encrypt_locked(path, config_path, tool, report)
    except portalocker.LockException as e:
        logger.error("Cannot lock %s: %s", path, e)
        report.add(path, MigrationOutcome.FAILED, "locked by another process")


def migrate(directory: Path, config_path: Optional[Path], tool: SopsTool) -> MigrationReport:
    """Encrypt every plaintext entry in directory.

    Preconditions are checked first and abort the run with no file touched.
    After that each file is processed independently: a failure restores that
    file and moves on.
    """
    config_path = check_preconditions(directory, config_path, tool)

    report = MigrationReport(directory=directory)
    for path in candidate_files(directory):
        migrate_file(path, config_path, tool, report)

    logger.info(
        "Migration finished: %d encrypted, %d already encrypted, %d skipped, %d failed",
        report.encrypted, report.already_encrypted, report.skipped, report.failed,
    )
    return report
