"""Error taxonomy and process exit codes."""

from __future__ import annotations

from enum import Enum
from typing import Optional

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_ENCRYPTION_ERROR = 2
EXIT_CONFIG_ERROR = 3
EXIT_SERVICE_ERROR = 4


class SopsErrorKind(Enum):
    """Category of a failed sops invocation, derived from its stderr."""
    NO_MATCHING_RULE = "no_matching_rule"
    NO_ACCESSIBLE_KEY = "no_accessible_key"
    CONFIG_NOT_FOUND = "config_not_found"
    PERMISSION_DENIED = "permission_denied"
    TOOL_MISSING = "tool_missing"
    TIMEOUT = "timeout"
    ROUND_TRIP_FAILED = "round_trip_failed"
    OTHER = "other"


class JournalError(Exception):
    """Base exception for journal operations."""
    exit_code = EXIT_GENERAL_ERROR
    label = "Error"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


class TemplateError(JournalError):
    """Raised when a custom template cannot be used."""
    pass


class WriteError(JournalError):
    """Raised when an entry cannot be committed to disk."""
    pass


class EditorError(JournalError):
    """Raised when opening an entry in the editor fails after it was created."""
    pass


class WatchedDirectoryLost(JournalError):
    """Raised when the directory under watch disappears."""
    pass


class ConfigError(JournalError):
    """Encryption config or settings are missing, invalid or unreadable."""
    exit_code = EXIT_CONFIG_ERROR
    label = "Configuration Error"


class ServiceError(JournalError):
    """Background service lifecycle failure."""
    exit_code = EXIT_SERVICE_ERROR
    label = "Service Error"


class EncryptionError(JournalError):
    """Encryption tool missing, round trip failed, or an invocation failed."""
    label = "Encryption Error"

    def __init__(
        self,
        message: str,
        kind: SopsErrorKind = SopsErrorKind.OTHER,
        operation: str = "",
        diagnostics: str = "",
    ):
        super().__init__(message, details=diagnostics or None)
        self.kind = kind
        self.operation = operation
        self.diagnostics = diagnostics

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        if self.kind == SopsErrorKind.CONFIG_NOT_FOUND:
            return EXIT_CONFIG_ERROR
        if self.kind == SopsErrorKind.PERMISSION_DENIED:
            return EXIT_GENERAL_ERROR
        return EXIT_ENCRYPTION_ERROR


def classify_sops_error(stderr: str) -> SopsErrorKind:
    """Map sops diagnostic output onto an error category."""
    if "no creation rule" in stderr:
        return SopsErrorKind.NO_MATCHING_RULE
    if "no key could decrypt" in stderr:
        return SopsErrorKind.NO_ACCESSIBLE_KEY
    if "config file not found" in stderr:
        return SopsErrorKind.CONFIG_NOT_FOUND
    if "permission denied" in stderr.lower():
        return SopsErrorKind.PERMISSION_DENIED
    return SopsErrorKind.OTHER


def sops_failure(operation: str, stderr: str) -> EncryptionError:
    """Build a classified EncryptionError for a failed sops call."""
    kind = classify_sops_error(stderr)
    diagnostics = stderr.strip()
    if kind == SopsErrorKind.NO_MATCHING_RULE:
        message = f"No creation rule matched for {operation}. Check your .sops.yaml file."
    elif kind == SopsErrorKind.NO_ACCESSIBLE_KEY:
        message = f"No accessible keys found for {operation}. Verify your private keys are available."
    elif kind == SopsErrorKind.CONFIG_NOT_FOUND:
        message = "SOPS configuration file not found. Create a .sops.yaml file in your journal directory."
    elif kind == SopsErrorKind.PERMISSION_DENIED:
        message = f"Permission denied during {operation}. Check file and directory permissions."
    else:
        first_line = diagnostics.splitlines()[0] if diagnostics else "unknown error"
        message = f"SOPS {operation} failed: {first_line}"
    return EncryptionError(message, kind=kind, operation=operation, diagnostics=diagnostics)


TROUBLESHOOTING = {
    EncryptionError: (
        "SOPS Troubleshooting:\n"
        "  1. Ensure SOPS is installed and in PATH\n"
        "  2. Verify .sops.yaml configuration exists and is valid\n"
        "  3. Check that encryption keys are accessible\n"
        "  4. Test SOPS manually: echo 'test: data' | sops --encrypt /dev/stdin"
    ),
    ConfigError: (
        "Configuration Troubleshooting:\n"
        "  1. Check that configuration files exist and are readable\n"
        "  2. Verify file paths are correct\n"
        "  3. Ensure proper file permissions\n"
        "  4. Check configuration file syntax"
    ),
    ServiceError: (
        "Service Troubleshooting:\n"
        "  1. Check service status: systemctl --user status journal-timestamp-monitor.service\n"
        "  2. Verify the unit file is installed\n"
        "  3. Check service logs: journalctl --user -u journal-timestamp-monitor.service"
    ),
}


def format_error(exc: JournalError, verbose: bool = False) -> str:
    """One-line classified message, with details and hints when verbose."""
    lines = [f"{exc.label}: {exc}"]
    if verbose:
        if exc.details:
            lines.append(f"Details: {exc.details}")
        for cls, hint in TROUBLESHOOTING.items():
            if isinstance(exc, cls):
                lines.append("")
                lines.append(hint)
                break
    return "\n".join(lines)
