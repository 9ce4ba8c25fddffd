"""Core journal engine - entry creation with atomic, all-or-nothing commits."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import JournalConfig
from .errors import EditorError, EncryptionError, JournalError, SopsErrorKind, WriteError
from .locking import discard, file_lock, private_temp_file, publish
from .models import EncryptionState, JournalEntry, generate_unique_id
from .sops import SopsTool, check_sops_config, is_encrypted
from .template import build_variables, render, template_warnings

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"


class CreateResult(Enum):
    """Outcome of a create_entry call that did not raise."""
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class EncryptionDecision:
    """Whether new entries get encrypted, and with which config."""
    encrypt: bool
    config_path: Optional[Path] = None
    reason: str = ""

    @classmethod
    def plaintext(cls, reason: str = "") -> "EncryptionDecision":
        return cls(encrypt=False, reason=reason)


def decide_encryption(config: JournalConfig, tool: SopsTool) -> EncryptionDecision:
    """Decide whether the entry being created must be encrypted.

    Raises:
        ConfigError: If the encryption config is structurally invalid.
        EncryptionError: If encryption was asked for but cannot be performed.
    """
    config_path = config.sops_config_path
    if config_path is None:
        return EncryptionDecision.plaintext("no SOPS config found")

    check_sops_config(config_path)

    if not tool.available:
        if config.sops_config_explicit:
            raise EncryptionError(
                f"SOPS config {config_path} was requested but the sops executable is not available",
                kind=SopsErrorKind.TOOL_MISSING,
                operation="encryption",
            )
        logger.warning("SOPS config found but sops is not installed; creating unencrypted entry")
        return EncryptionDecision.plaintext("sops not available")

    if not tool.round_trip(config_path, config.output_dir):
        raise EncryptionError(
            f"SOPS round-trip test failed with config {config_path}; refusing to write unencrypted data",
            kind=SopsErrorKind.ROUND_TRIP_FAILED,
            operation="round-trip test",
            diagnostics=tool.round_trip_errors.get(config_path.resolve(), ""),
        )

    logger.info("SOPS encryption enabled (%s, %s)", config_path, tool.version)
    return EncryptionDecision(encrypt=True, config_path=config_path, reason="round-trip test passed")


class EntryWriter:
    """Owns the file-creation transaction for one entry."""

    def __init__(
        self,
        tool: SopsTool,
        force: bool = False,
        quiet: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.tool = tool
        self.force = force
        self.quiet = quiet
        self.confirm = confirm

    def _should_overwrite(self, path: Path) -> bool:
        if not os.access(path, os.W_OK):
            raise WriteError(f"Existing journal entry is not writable: {path}")
        if self.force:
            logger.info("Overwriting existing journal entry (forced): %s", path)
            return True
        if self.quiet or self.confirm is None:
            return False
        return self.confirm(f"Journal entry already exists: {path}. Overwrite it?")

    def backup(self, path: Path) -> Path:
        """Copy an existing entry to its sibling backup path."""
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)
        try:
            shutil.copy2(path, backup_path)
        except OSError as e:
            raise WriteError(f"Failed to create backup file: {backup_path}", details=str(e)) from e
        logger.info("Backup created: %s", backup_path)
        return backup_path

    def create_entry(self, path: Path, rendered_text: str, decision: EncryptionDecision) -> CreateResult:
        """Write rendered_text to path, encrypting first if decided.

        The target only ever holds its previous content or the complete new
        entry: the text goes to a private temp file, gets encrypted there,
        and is renamed into place as the last step.

        Raises:
            WriteError: If the file system refuses any step.
            EncryptionError: If sops fails; the target is left untouched.
        """
        existed = path.exists()
        if existed and not self._should_overwrite(path):
            logger.info("Journal entry already exists, leaving it alone: %s", path)
            return CreateResult.ALREADY_EXISTS

        with file_lock(path):
            if path.exists():
                if not existed:
                    logger.info("Journal entry was created concurrently, leaving it alone: %s", path)
                    return CreateResult.ALREADY_EXISTS
                self.backup(path)

            try:
                tmp_path = private_temp_file(path)
            except OSError as e:
                raise WriteError(f"Failed to create temporary file in {path.parent}", details=str(e)) from e

            try:
                tmp_path.write_text(rendered_text, encoding="utf-8")
                if decision.encrypt:
                    self.tool.encrypt_in_place(tmp_path, decision.config_path)
                    if is_encrypted(tmp_path) != EncryptionState.ENCRYPTED:
                        raise EncryptionError(
                            "SOPS reported success but the entry carries no encryption marker",
                            operation=f"encryption of {path.name}",
                        )
                publish(tmp_path, path)
            except OSError as e:
                discard(tmp_path)
                raise WriteError(f"Failed to write journal entry to: {path}", details=str(e)) from e
            except BaseException:
                discard(tmp_path)
                raise

        logger.info("Journal entry created: %s", path)
        return CreateResult.CREATED


def open_in_editor(path: Path, editor: str, tool: SopsTool, config_path: Optional[Path] = None) -> None:
    """Open an entry for editing, through sops when it is encrypted.

    Raises:
        EditorError: The entry itself is not affected.
    """
    if not path.is_file():
        raise EditorError(f"Journal entry file no longer exists: {path}")

    state = is_encrypted(path)
    if state == EncryptionState.ENCRYPTED:
        if not tool.available:
            raise EditorError(f"Cannot edit encrypted entry without sops: {path}")
        cmd = tool.edit_command(path, config_path)
        env = dict(os.environ, EDITOR=editor)
    else:
        if shutil.which(editor.split()[0]) is None:
            raise EditorError(f"Editor '{editor}' not found, cannot open journal entry")
        cmd = editor.split() + [str(path)]
        env = None

    logger.info("Opening %s with %s", path, " ".join(cmd))
    try:
        result = subprocess.run(cmd, env=env)
    except OSError as e:
        raise EditorError(f"Failed to launch editor '{editor}'", details=str(e)) from e
    if result.returncode != 0:
        raise EditorError(f"Editor '{editor}' exited with an error (exit code {result.returncode})")


class JournalEngine:
    """Creates entries from a resolved configuration."""

    def __init__(
        self,
        config: JournalConfig,
        tool: Optional[SopsTool] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.config = config
        self.tool = tool or SopsTool(timeout=config.sops_timeout)
        self.writer = EntryWriter(self.tool, force=config.force, quiet=config.quiet, confirm=confirm)

    def render_entry(self, unique_id: Optional[str] = None) -> str:
        """Render the configured template for the configured date."""
        for warning in template_warnings(self.config.template_text):
            logger.warning("%s", warning)
        variables = build_variables(
            self.config.entry_time,
            self.config.start_date,
            unique_id or generate_unique_id(),
        )
        return render(self.config.template_text, variables)

    def create(self) -> tuple[CreateResult, EncryptionDecision]:
        """Create today's (or the override date's) entry.

        Validation and the encryption decision happen before anything is
        written, so a failure there leaves the directory untouched.
        """
        path = self.config.output_path
        decision = decide_encryption(self.config, self.tool)
        text = self.render_entry()
        result = self.writer.create_entry(path, text, decision)
        return result, decision

    def read_entry(self, path: Optional[Path] = None) -> JournalEntry:
        """Parse an entry, decrypting it if needed.

        Raises:
            JournalError: If the file is missing or not a journal entry.
            EncryptionError: If decryption fails.
        """
        path = path or self.config.output_path
        state = is_encrypted(path)
        if state == EncryptionState.NOT_FOUND:
            raise JournalError(f"Journal entry not found: {path}")
        if state == EncryptionState.ENCRYPTED:
            text = self.tool.decrypt(path, self.config.sops_config_path)
        else:
            text = path.read_text(encoding="utf-8")
        try:
            return JournalEntry.from_text(path, text, encrypted=state == EncryptionState.ENCRYPTED)
        except ValueError as e:
            raise JournalError(str(e)) from e

    def edit(self, path: Optional[Path] = None) -> None:
        """Open an entry in the configured editor."""
        open_in_editor(path or self.config.output_path, self.config.editor, self.tool, self.config.sops_config_path)
