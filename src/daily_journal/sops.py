"""Encryption state detection and the sops subprocess contract.

The encryption tool is treated as an opaque executable:

    sops [--config C] --encrypt --in-place FILE
    sops [--config C] --decrypt FILE

Detection of encrypted files never invokes the tool; it looks for the textual
markers sops (or an armored PGP message) leaves behind.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from datetime import date
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError, EncryptionError, SopsErrorKind, sops_failure
from .locking import discard, private_temp_file
from .models import EncryptionState, entry_filename

logger = logging.getLogger(__name__)

DEFAULT_SOPS_EXECUTABLE = "sops"
DEFAULT_SOPS_TIMEOUT = 30.0
SOPS_CONFIG_NAMES = (".sops.yaml", ".sops.yml")
KEY_BACKENDS = (
    "age",
    "pgp",
    "kms",
    "gcp_kms",
    "azure_keyvault",
    "azure_kv",
    "hc_vault_transit_uri",
    "key_groups",
)

_MARKERS = [
    re.compile(r'^\s*"?sops"?\s*:', re.MULTILINE),
    re.compile(r'"?sops_version"?\s*:'),
    re.compile(r"ENC\[[A-Za-z0-9_]+,"),
    re.compile(r"-----BEGIN PGP MESSAGE-----"),
]

ROUND_TRIP_PAYLOAD = "---\nid: roundtrip\nupdated: roundtrip\n---\ndaily-journal encryption check\n"


def is_encrypted(path: Path) -> EncryptionState:
    """Inspect a file for encryption-at-rest markers."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except (FileNotFoundError, IsADirectoryError, PermissionError) as e:
        logger.debug("Cannot inspect %s: %s", path, e)
        return EncryptionState.NOT_FOUND
    except OSError as e:
        logger.warning("Cannot inspect %s: %s", path, e)
        return EncryptionState.NOT_FOUND

    for marker in _MARKERS:
        if marker.search(text):
            logger.debug("%s is encrypted (marker %s)", path, marker.pattern)
            return EncryptionState.ENCRYPTED
    return EncryptionState.PLAINTEXT


def find_sops_config(location: Path) -> Optional[Path]:
    """Resolve a file, or a directory holding one of the canonical names."""
    if location.is_file():
        return location
    if location.is_dir():
        for name in SOPS_CONFIG_NAMES:
            candidate = location / name
            if candidate.is_file():
                return candidate
    return None


def check_sops_config(path: Path) -> None:
    """Structurally validate a sops configuration file.

    Only the shape is checked: a creation_rules list with at least one rule
    naming a key backend. Whether the keys are usable is the round trip's job.

    Raises:
        ConfigError: Describing the first problem found.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"SOPS config is not readable: '{path}'", details=str(e)) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"SOPS config is not valid YAML: '{path}'", details=str(e)) from e

    if not isinstance(data, dict):
        raise ConfigError(f"SOPS config must be a mapping: '{path}'")

    rules = data.get("creation_rules")
    if not isinstance(rules, list) or not rules:
        raise ConfigError(f"SOPS config has no creation_rules: '{path}'")

    for rule in rules:
        if isinstance(rule, dict) and any(rule.get(backend) for backend in KEY_BACKENDS):
            return
    raise ConfigError(f"SOPS config declares no key backend ({', '.join(KEY_BACKENDS[:5])}...): '{path}'")


def validate_sops_config(path: Path) -> bool:
    """Boolean form of check_sops_config."""
    try:
        check_sops_config(path)
    except ConfigError as e:
        logger.warning("%s", e)
        return False
    return True


class SopsTool:
    """Memoized view of the encryption tool's capabilities for one run."""

    def __init__(self, executable: str = DEFAULT_SOPS_EXECUTABLE, timeout: float = DEFAULT_SOPS_TIMEOUT):
        self.executable = executable
        self.timeout = timeout
        self._resolved: Optional[str] = None
        self._located = False
        self._version: Optional[str] = None
        self._round_trips: dict[Path, bool] = {}
        self.round_trip_errors: dict[Path, str] = {}

    def _locate(self) -> None:
        if self._located:
            return
        self._located = True
        self._resolved = shutil.which(self.executable)
        if self._resolved is None:
            logger.warning("SOPS executable not found in PATH: %s", self.executable)
            return
        try:
            result = subprocess.run(
                [self._resolved, "--version"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            lines = (result.stdout or result.stderr).strip().splitlines()
            self._version = lines[0] if lines else "unknown"
        except (OSError, subprocess.TimeoutExpired) as e:
            self._version = "unknown"
            logger.debug("Could not read sops version: %s", e)
        logger.debug("SOPS is available: %s", self._version)

    @property
    def available(self) -> bool:
        self._locate()
        return self._resolved is not None

    @property
    def version(self) -> Optional[str]:
        self._locate()
        return self._version

    def _command(self, config_path: Optional[Path], *args: str) -> list[str]:
        cmd = [self._resolved or self.executable]
        if config_path is not None:
            cmd += ["--config", str(config_path)]
        cmd += list(args)
        return cmd

    def _run(self, operation: str, cmd: list[str]) -> subprocess.CompletedProcess:
        if not self.available:
            raise EncryptionError(
                "SOPS executable not found in PATH",
                kind=SopsErrorKind.TOOL_MISSING,
                operation=operation,
            )
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise EncryptionError(
                f"SOPS {operation} timed out after {self.timeout:g}s",
                kind=SopsErrorKind.TIMEOUT,
                operation=operation,
            ) from e
        except OSError as e:
            raise sops_failure(operation, str(e)) from e
        if result.returncode != 0:
            raise sops_failure(operation, result.stderr or result.stdout)
        return result

    def encrypt_in_place(self, path: Path, config_path: Optional[Path] = None) -> None:
        """Encrypt path in place.

        Raises:
            EncryptionError: Classified from the tool's diagnostics.
        """
        self._run(f"encryption of {path.name}", self._command(config_path, "--encrypt", "--in-place", str(path)))

    def decrypt(self, path: Path, config_path: Optional[Path] = None) -> str:
        """Return the plaintext of an encrypted file."""
        result = self._run(f"decryption of {path.name}", self._command(config_path, "--decrypt", str(path)))
        return result.stdout

    def edit_command(self, path: Path, config_path: Optional[Path] = None) -> list[str]:
        """Command line that opens an encrypted file in the user's editor."""
        return self._command(config_path, str(path))

    def round_trip(self, config_path: Path, workdir: Path) -> bool:
        """Encrypt then decrypt a known payload with config_path.

        The sample file is created in workdir under an entry-shaped name so
        that path-scoped creation rules apply to it the same way they apply
        to real entries. Cached
        per config path for the lifetime of this object.
        """
        key = config_path.resolve()
        if key in self._round_trips:
            return self._round_trips[key]

        passed = False
        if self.available:
            sample = private_temp_file(workdir / entry_filename(date.today()), tag="roundtrip")
            try:
                sample.write_text(ROUND_TRIP_PAYLOAD, encoding="utf-8")
                self.encrypt_in_place(sample, config_path)
                if is_encrypted(sample) != EncryptionState.ENCRYPTED:
                    logger.warning("Round-trip sample was not encrypted by sops")
                else:
                    passed = self.decrypt(sample, config_path) == ROUND_TRIP_PAYLOAD
                    if not passed:
                        logger.warning("Round-trip sample decrypted to different content")
            except EncryptionError as e:
                logger.warning("Round-trip test failed: %s", e)
                self.round_trip_errors[key] = e.diagnostics or str(e)
                if e.diagnostics:
                    logger.debug("sops said: %s", e.diagnostics)
            finally:
                discard(sample)

        self._round_trips[key] = passed
        return passed
