"""Command line entry points: `cj` and `journal-timestamp-monitor`."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import portalocker

from .config import (
    ResolveOptions,
    StartDateStore,
    get_config_dir,
    load_settings,
    polling_interval,
    resolve_config,
    resolve_sops_config,
)
from .engine import CreateResult, JournalEngine
from .errors import (
    EXIT_ENCRYPTION_ERROR,
    EXIT_GENERAL_ERROR,
    EXIT_SUCCESS,
    EditorError,
    JournalError,
    format_error,
)
from .migration import migrate
from .service import SERVICE_NAME, install_service, uninstall_service
from .sops import SopsTool, validate_sops_config
from .watcher import ReconcileOutcome, TimestampReconciler, choose_change_source

LOG_FORMAT = "%(asctime)s [%(levelname)s] - %(message)s"


def configure_logging(
    quiet: bool = False,
    verbose: bool = False,
    log_file: Optional[Path] = None,
    default_level: int = logging.WARNING,
) -> None:
    """Route package logging to stderr, or to log_file when given."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = default_level

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("daily_journal")
    root.handlers[:] = [handler]
    root.setLevel(level)
    root.propagate = False


def ask_yes_no(question: str) -> bool:
    answer = input(f"{question} (y/N): ").strip().lower()
    return answer in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cj",
        description="Creates a daily journal entry from a template",
    )
    parser.add_argument("-t", "--template", type=Path, help="Template file (default: embedded template)")
    parser.add_argument("-o", "--output", help="Output file (default: journal.daily.YYYY.MM.DD.md)")
    parser.add_argument("-e", "--edit", action="store_true", help="Open the journal entry in editor after creation")
    parser.add_argument("-E", "--editor", help="Specify editor to use (default: $EDITOR)")
    parser.add_argument(
        "-d",
        "--directory",
        type=Path,
        help="Directory to save the journal entry (default: current directory)",
    )
    parser.add_argument("-f", "--force", action="store_true", help="Force overwrite without confirmation")
    parser.add_argument("-q", "--quiet", action="store_true", help="Will not display any prompts, no messages")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show diagnostic detail")
    parser.add_argument("-s", "--set-start-date", metavar="DATE", help="Set the start date for day counting")
    parser.add_argument("--date", help="Override the date for this journal entry (default: today)")
    parser.add_argument("--open", action="store_true", help="Open the existing entry for the date instead of creating it")

    sops_group = parser.add_argument_group("encryption", "SOPS encryption")
    sops_group.add_argument("--sops-config", type=Path, help="Path to .sops.yaml (default: auto-detect)")
    sops_group.add_argument(
        "--migrate-to-encrypted",
        action="store_true",
        help="Encrypt all existing plaintext entries in the directory",
    )

    service_group = parser.add_argument_group("service", "Timestamp monitor service management")
    service_group.add_argument(
        "-i",
        "--install-service",
        action="store_true",
        help="Install timestamp monitor as a systemd user service",
    )
    service_group.add_argument(
        "-u",
        "--uninstall-service",
        action="store_true",
        help="Uninstall timestamp monitor systemd user service",
    )
    return parser


def run(argv: Optional[list[str]] = None) -> int:
    """Run `cj` and return the process exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(quiet=args.quiet, verbose=args.verbose)

    def say(message: str) -> None:
        if not args.quiet:
            print(message)

    interactive = not args.quiet and sys.stdin.isatty()

    try:
        settings = load_settings(get_config_dir())
        directory = args.directory or settings.directory or Path.cwd()

        if args.install_service:
            unit = install_service(directory, [sys.executable, "-m", "daily_journal.cli", "monitor"])
            say(f"Journal timestamp monitor service installed and started: {unit}")
            say(f"Check its status with: systemctl --user status {SERVICE_NAME}")
            return EXIT_SUCCESS

        if args.uninstall_service:
            if uninstall_service():
                say("Journal timestamp monitor service uninstalled successfully!")
            else:
                say("Service file not found. It may have already been uninstalled.")
            return EXIT_SUCCESS

        if args.migrate_to_encrypted:
            config_path, _ = resolve_sops_config(
                args.sops_config, directory, os.environ, Path.cwd(), settings_path=settings.sops_config
            )
            report = migrate(directory, config_path, SopsTool(timeout=settings.sops_timeout))
            say(report.summary())
            return EXIT_SUCCESS if report.ok else EXIT_ENCRYPTION_ERROR

        options = ResolveOptions(
            directory=args.directory,
            output=args.output,
            template=args.template,
            date=args.date,
            set_start_date=args.set_start_date,
            sops_config=args.sops_config,
            editor=args.editor,
            open_editor=args.edit,
            force=args.force,
            quiet=args.quiet,
            verbose=args.verbose,
        )
        config = resolve_config(
            options,
            StartDateStore(get_config_dir()),
            settings=settings,
            prompt=input if interactive else None,
        )
        engine = JournalEngine(config, confirm=ask_yes_no if interactive else None)

        if args.open:
            if not config.output_path.is_file():
                raise JournalError(f"Journal entry does not exist: {config.output_path}")
            engine.edit()
            return EXIT_SUCCESS

        say(f"Creating journal entry: {config.output_path}")
        result, decision = engine.create()
        if result == CreateResult.ALREADY_EXISTS:
            say(f"Journal entry already exists: {config.output_path}")
            return EXIT_SUCCESS
        say(f"Journal entry created successfully{' (encrypted)' if decision.encrypt else ''}!")

        if config.open_editor:
            try:
                engine.edit()
            except EditorError as e:
                print(format_error(e, verbose=args.verbose), file=sys.stderr)
                say(f"Your journal entry was created successfully at: {config.output_path}")
                return EXIT_GENERAL_ERROR

    except JournalError as e:
        print(format_error(e, verbose=args.verbose), file=sys.stderr)
        return e.exit_code
    except (OSError, portalocker.LockException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_GENERAL_ERROR
    except KeyboardInterrupt:
        print("Operation cancelled", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    return EXIT_SUCCESS


def main() -> None:
    """Main entry point for `cj`."""
    sys.exit(run())


def build_monitor_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="journal-timestamp-monitor",
        description="Keep the 'updated:' field of journal entries current",
    )
    parser.add_argument("directory", type=Path, help="Journal directory to watch")
    parser.add_argument("--poll", action="store_true", help="Poll for changes instead of using inotifywait")
    parser.add_argument("--interval", type=int, help="Polling interval in seconds (default: 60)")
    parser.add_argument("--sops-config", type=Path, help="Path to .sops.yaml (default: auto-detect)")
    parser.add_argument("--log-file", type=Path, help="Write the log here instead of stderr")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug detail")
    return parser


def run_monitor(argv: Optional[list[str]] = None) -> int:
    """Run the timestamp monitor until the directory vanishes or a signal."""
    args = build_monitor_parser().parse_args(argv)
    configure_logging(args.quiet, args.verbose, args.log_file, default_level=logging.INFO)
    log = logging.getLogger("daily_journal.cli")

    try:
        settings = load_settings(get_config_dir())
        directory = args.directory
        if not directory.is_dir():
            directory.mkdir(parents=True, exist_ok=True)

        tool = SopsTool(timeout=settings.sops_timeout)
        config_path, _ = resolve_sops_config(
            args.sops_config, directory, os.environ, Path.cwd(), settings_path=settings.sops_config
        )
        if config_path is not None and not validate_sops_config(config_path):
            log.warning("SOPS config found but invalid - continuing without encryption support")
            config_path = None
        if not tool.available:
            log.warning("SOPS executable not available - encrypted entries will be skipped")

        interval = args.interval or polling_interval(settings)
        source = choose_change_source(directory, poll=args.poll, interval=interval)
        reconciler = TimestampReconciler(directory, tool=tool, config_path=config_path)

        signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(EXIT_SUCCESS))
        counts = reconciler.run(source)
        log.info("Change source exhausted: %d updated, %d failed",
                 counts[ReconcileOutcome.UPDATED], counts[ReconcileOutcome.FAILED])
    except JournalError as e:
        log.error("%s", e)
        print(format_error(e, verbose=args.verbose), file=sys.stderr)
        return e.exit_code
    except OSError as e:
        log.error("Monitor failed: %s", e)
        return EXIT_GENERAL_ERROR
    except KeyboardInterrupt:
        log.info("Monitor stopped")

    return EXIT_SUCCESS


def monitor_main() -> None:
    """Main entry point for `journal-timestamp-monitor`."""
    sys.exit(run_monitor())


if __name__ == "__main__":  # pragma: no cover
    if len(sys.argv) > 1 and sys.argv[1] == "monitor":
        sys.exit(run_monitor(sys.argv[2:]))
    main()
