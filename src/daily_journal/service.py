"""systemd user service for the journal timestamp monitor."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from .errors import ServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "journal-timestamp-monitor.service"

UNIT_TEMPLATE = """[Unit]
Description=Journal Timestamp Monitor Service
After=network.target

[Service]
Type=simple
ExecStart={exec_start}
Restart=on-failure
RestartSec=5s

[Install]
WantedBy=default.target
"""


def get_systemd_user_dir() -> Path:
    """Get the systemd user unit directory."""
    return Path.home() / ".config" / "systemd" / "user"


def render_unit(monitor_command: list[str], directory: Path) -> str:
    """Unit file text running the monitor against directory."""
    exec_start = shlex.join(monitor_command + [str(directory.resolve())])
    return UNIT_TEMPLATE.format(exec_start=exec_start)


def systemctl(*args: str, check: bool = True) -> subprocess.CompletedProcess:
    """Run `systemctl --user ...`.

    Raises:
        ServiceError: If check is set and the command fails.
    """
    cmd = ["systemctl", "--user", *args]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ServiceError("systemctl is not available", details=str(e)) from e
    if check and result.returncode != 0:
        operation = args[0] if args else "call"
        raise ServiceError(
            f"Service {operation} failed for '{SERVICE_NAME}' (exit code: {result.returncode})",
            details=result.stderr.strip() or None,
        )
    return result


def install_service(directory: Path, monitor_command: list[str], unit_dir: Optional[Path] = None) -> Path:
    """Write the unit file, then reload, enable and start the service.

    Returns:
        Path of the installed unit file
    """
    unit_dir = unit_dir or get_systemd_user_dir()
    unit_path = unit_dir / SERVICE_NAME
    try:
        unit_dir.mkdir(parents=True, exist_ok=True)
        unit_path.write_text(render_unit(monitor_command, directory), encoding="utf-8")
    except OSError as e:
        raise ServiceError(f"Cannot write unit file: {unit_path}", details=str(e)) from e

    systemctl("daemon-reload")
    systemctl("enable", SERVICE_NAME)
    systemctl("start", SERVICE_NAME)
    logger.info("Installed %s", unit_path)
    return unit_path


def uninstall_service(unit_dir: Optional[Path] = None) -> bool:
    """Stop, disable and remove the service.

    Returns:
        False if no unit file was installed
    """
    unit_dir = unit_dir or get_systemd_user_dir()
    unit_path = unit_dir / SERVICE_NAME

    systemctl("stop", SERVICE_NAME, check=False)
    systemctl("disable", SERVICE_NAME, check=False)

    if not unit_path.exists():
        return False
    try:
        unit_path.unlink()
    except OSError as e:
        raise ServiceError(f"Cannot remove unit file: {unit_path}", details=str(e)) from e
    systemctl("daemon-reload")
    return True
