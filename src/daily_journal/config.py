"""Configuration resolution for daily-journal.

Everything a run needs is resolved once, up front, into an immutable
JournalConfig that is passed explicitly to the engine. Sources, highest
precedence first:

1. Command line options
2. Environment (SOPS_CONFIG_PATH, EDITOR, JOURNAL_POLLING_INTERVAL)
3. Settings file ~/.config/cj/config.toml
4. Auto-detection and built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .errors import ConfigError, JournalError
from .models import entry_filename, now, parse_date
from .sops import DEFAULT_SOPS_TIMEOUT, SOPS_CONFIG_NAMES, find_sops_config
from .template import DEFAULT_TEMPLATE, load_template

# Python 3.11+ has tomllib in stdlib; fall back to tomli for older versions
try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python <3.11

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL = 60  # seconds
SETTINGS_FILENAME = "config.toml"
START_DATE_FILENAME = "start_date"


def get_config_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    """Get the cj configuration directory.

    Uses ~/.config/cj by default. Can be overridden with the CJ_CONFIG_DIR
    environment variable.
    """
    env = os.environ if env is None else env
    custom_dir = env.get("CJ_CONFIG_DIR")
    if custom_dir:
        return Path(custom_dir)
    return Path.home() / ".config" / "cj"


@dataclass
class Settings:
    """Defaults read from the settings file."""
    directory: Optional[Path] = None
    editor: Optional[str] = None
    template: Optional[Path] = None
    sops_config: Optional[Path] = None
    polling_interval: int = DEFAULT_POLLING_INTERVAL
    sops_timeout: float = DEFAULT_SOPS_TIMEOUT


def dict_to_settings(data: dict[str, Any]) -> Settings:
    """Convert a parsed settings table to Settings."""
    settings = Settings()
    journal = data.get("journal", data)

    def as_path(value: Any) -> Optional[Path]:
        return Path(value).expanduser() if value else None

    if "directory" in journal:
        settings.directory = as_path(journal["directory"])
    if "editor" in journal:
        settings.editor = journal["editor"] or None
    if "template" in journal:
        settings.template = as_path(journal["template"])

    sops = data.get("sops", {})
    if "config" in sops:
        settings.sops_config = as_path(sops["config"])
    if "timeout" in sops:
        settings.sops_timeout = float(sops["timeout"])

    monitor = data.get("monitor", {})
    if "polling_interval" in monitor:
        settings.polling_interval = int(monitor["polling_interval"])

    return settings


def load_settings(config_dir: Path) -> Settings:
    """Load the settings file if present.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    path = config_dir / SETTINGS_FILENAME
    if not path.exists():
        return Settings()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return dict_to_settings(data)
    except (OSError, tomllib.TOMLDecodeError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid settings file: '{path}'", details=str(e)) from e


class StartDateStore:
    """The persisted day-count start date, one plain-text value."""

    def __init__(self, config_dir: Path):
        self.path = config_dir / START_DATE_FILENAME

    def load(self) -> Optional[date]:
        """Return the persisted date, or None if unset.

        Raises:
            ConfigError: If the stored value is not a date.
        """
        if not self.path.exists():
            return None
        raw = self.path.read_text(encoding="utf-8").strip()
        try:
            return parse_date(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid start date in {self.path}: {raw!r}") from e

    def save(self, value: date) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{value.isoformat()}\n", encoding="utf-8")
        logger.info("Start date set to: %s", value.isoformat())


@dataclass
class ResolveOptions:
    """Raw overrides, typically straight from the command line."""
    directory: Optional[Path] = None
    output: Optional[str] = None
    template: Optional[Path] = None
    date: Optional[str] = None
    set_start_date: Optional[str] = None
    sops_config: Optional[Path] = None
    editor: Optional[str] = None
    open_editor: bool = False
    force: bool = False
    quiet: bool = False
    verbose: bool = False


@dataclass(frozen=True)
class JournalConfig:
    """Fully resolved configuration for one invocation."""
    output_dir: Path
    output_path: Path
    template_text: str
    entry_time: datetime
    start_date: date
    template_path: Optional[Path] = None
    sops_config_path: Optional[Path] = None
    sops_config_explicit: bool = False
    sops_timeout: float = DEFAULT_SOPS_TIMEOUT
    editor: str = "vi"
    open_editor: bool = False
    force: bool = False
    quiet: bool = False
    verbose: bool = False


def resolve_start_date(
    store: StartDateStore,
    set_value: Optional[str] = None,
    quiet: bool = False,
    prompt: Optional[Callable[[str], str]] = None,
    today: Optional[date] = None,
) -> date:
    """Resolve the day-count start date.

    Order: explicit set > persisted value > interactive prompt (unless quiet)
    > today. Whatever is resolved on a first run is persisted.

    Raises:
        JournalError: If an explicit set value is not a valid date.
    """
    today = today or now().date()

    if set_value:
        try:
            value = parse_date(set_value)
        except ValueError as e:
            raise JournalError(f"Invalid date format: {set_value} (expected YYYY-MM-DD)") from e
        store.save(value)
        return value

    persisted = store.load()
    if persisted is not None:
        return persisted

    value = today
    if not quiet and prompt is not None:
        answer = prompt(f"Enter start date (YYYY-MM-DD) or press Enter for today [{today.isoformat()}]: ").strip()
        if answer:
            try:
                value = parse_date(answer)
            except ValueError:
                logger.warning("Invalid date format, using today: %s", today.isoformat())
    store.save(value)
    return value


def resolve_entry_time(override: Optional[str]) -> datetime:
    """Entry date-time: midnight of an override date, else now."""
    if not override:
        return now()
    try:
        return datetime.combine(parse_date(override), datetime.min.time())
    except ValueError as e:
        raise JournalError(f"Invalid date format: {override} (expected YYYY-MM-DD)") from e


def resolve_sops_config(
    explicit: Optional[Path],
    output_dir: Path,
    env: Mapping[str, str],
    cwd: Path,
    settings_path: Optional[Path] = None,
) -> tuple[Optional[Path], bool]:
    """Locate the encryption config.

    Order: explicit argument > SOPS_CONFIG_PATH > settings file > probing the
    output directory then the current directory.

    Returns:
        (path or None, whether it was explicitly requested)

    Raises:
        ConfigError: If an explicit path does not resolve to a readable file.
    """
    if explicit is not None:
        found = find_sops_config(explicit)
        if found is None or not os.access(found, os.R_OK):
            raise ConfigError(f"SOPS config file not found or not readable: '{explicit}'")
        logger.info("Using SOPS config: %s", found)
        return found, True

    env_value = env.get("SOPS_CONFIG_PATH")
    if env_value:
        found = find_sops_config(Path(env_value))
        if found is not None:
            logger.info("Using SOPS config from environment: %s", found)
            return found, True
        logger.warning("SOPS config path specified in environment but not found: %s", env_value)

    if settings_path is not None:
        found = find_sops_config(settings_path)
        if found is not None:
            logger.info("Using SOPS config from settings: %s", found)
            return found, True
        logger.warning("SOPS config path from settings not found: %s", settings_path)

    for directory in (output_dir, cwd):
        for name in SOPS_CONFIG_NAMES:
            candidate = directory / name
            if candidate.is_file():
                logger.info("Found SOPS config: %s", candidate)
                return candidate, False

    logger.debug("No SOPS config found")
    return None, False


def ensure_output_dir(directory: Path) -> None:
    """Create the output directory if needed and check it is writable."""
    if not directory.is_dir():
        if directory.exists():
            raise JournalError(f"Output path is not a directory: {directory}")
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise JournalError(f"Failed to create output directory: {directory}", details=str(e)) from e
        logger.info("Created output directory: %s", directory)
    elif not os.access(directory, os.W_OK):
        raise JournalError(f"Output directory is not writable: {directory}")


def resolve_config(
    options: ResolveOptions,
    store: StartDateStore,
    settings: Optional[Settings] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
    prompt: Optional[Callable[[str], str]] = None,
) -> JournalConfig:
    """Resolve a complete JournalConfig.

    Raises:
        JournalError: Bad dates, unusable output directory or template.
        ConfigError: Explicit encryption config missing.
    """
    settings = settings or Settings()
    env = os.environ if env is None else env
    cwd = cwd or Path.cwd()

    entry_time = resolve_entry_time(options.date)

    output_dir = options.directory or settings.directory or cwd
    ensure_output_dir(output_dir)
    output_path = output_dir / (options.output or entry_filename(entry_time.date()))
    if output_path.exists() and not output_path.is_file():
        raise JournalError(f"Output path exists but is not a regular file: {output_path}")

    template_path = options.template or settings.template
    template_text = load_template(template_path) if template_path else DEFAULT_TEMPLATE

    sops_config_path, explicit = resolve_sops_config(
        options.sops_config, output_dir, env, cwd, settings_path=settings.sops_config
    )

    # Persisted only once everything else has validated.
    start_date = resolve_start_date(
        store,
        set_value=options.set_start_date,
        quiet=options.quiet,
        prompt=prompt,
    )

    editor = options.editor or settings.editor or env.get("EDITOR") or "vi"

    return JournalConfig(
        output_dir=output_dir,
        output_path=output_path,
        template_text=template_text,
        template_path=template_path,
        entry_time=entry_time,
        start_date=start_date,
        sops_config_path=sops_config_path,
        sops_config_explicit=explicit,
        sops_timeout=settings.sops_timeout,
        editor=editor,
        open_editor=options.open_editor or options.editor is not None,
        force=options.force,
        quiet=options.quiet,
        verbose=options.verbose,
    )


def polling_interval(settings: Settings, env: Optional[Mapping[str, str]] = None) -> int:
    """Polling interval for the fallback change source."""
    env = os.environ if env is None else env
    value = env.get("JOURNAL_POLLING_INTERVAL", "")
    if value.isdigit() and int(value) > 0:
        return int(value)
    return settings.polling_interval
