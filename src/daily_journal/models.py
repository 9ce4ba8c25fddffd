"""Data models for journal entries, encryption state and migration results."""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%d, %H:%M:%S"
ENTRY_SUFFIX = ".md"
UNIQUE_ID_LENGTH = 21
UNIQUE_ID_ALPHABET = string.ascii_lowercase + string.digits

FRONTMATTER_DELIMITER = "---"
_FIELD_RE = re.compile(r"^(?P<key>[A-Za-z_][\w-]*):\s?(?P<value>.*)$")


class EncryptionState(Enum):
    """Result of inspecting a file for encryption markers."""
    ENCRYPTED = "encrypted"
    PLAINTEXT = "plaintext"
    NOT_FOUND = "not_found"  # Missing or unreadable; callers decide


class MigrationOutcome(Enum):
    """Per-file result of a migration run."""
    ALREADY_ENCRYPTED = "already_encrypted"
    ENCRYPTED = "encrypted"
    SKIPPED = "skipped"
    FAILED = "failed"


def now() -> datetime:
    """Current local time truncated to whole seconds."""
    return datetime.now().replace(microsecond=0)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime the way entry frontmatter stores it."""
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(s: str) -> datetime:
    """Parse a frontmatter timestamp."""
    return datetime.strptime(s.strip(), TIMESTAMP_FORMAT)


def parse_date(s: str) -> date:
    """Parse a YYYY-MM-DD date, raising ValueError on bad input."""
    return datetime.strptime(s.strip(), "%Y-%m-%d").date()


def generate_unique_id() -> str:
    """Generate a 21 character lowercase alphanumeric entry id."""
    return "".join(secrets.choice(UNIQUE_ID_ALPHABET) for _ in range(UNIQUE_ID_LENGTH))


def day_count(entry_date: date, start_date: date) -> int:
    """Ordinal day of entry_date counting start_date as day 1."""
    return (entry_date - start_date).days + 1


def entry_filename(entry_date: date) -> str:
    """Default file name for the entry of a given day."""
    return f"journal.daily.{entry_date:%Y}.{entry_date:%m}.{entry_date:%d}{ENTRY_SUFFIX}"


def is_candidate_file(path: Path) -> bool:
    """True for non-hidden markdown files, the only files this tool manages."""
    return path.suffix == ENTRY_SUFFIX and not path.name.startswith(".")


def split_frontmatter(text: str) -> Optional[tuple[list[str], int, int]]:
    """Locate the leading metadata block.

    Returns:
        (lines, start, end) where lines[start] and lines[end] are the two
        delimiter lines, or None if the text has no complete block.
    """
    lines = text.splitlines(keepends=True)
    delimiters = [i for i, line in enumerate(lines) if line.rstrip("\r\n") == FRONTMATTER_DELIMITER]
    if len(delimiters) < 2:
        return None
    return lines, delimiters[0], delimiters[1]


def read_frontmatter(text: str) -> dict[str, str]:
    """Parse `key: value` lines of the metadata block."""
    located = split_frontmatter(text)
    if located is None:
        return {}
    lines, start, end = located
    fields: dict[str, str] = {}
    for line in lines[start + 1:end]:
        match = _FIELD_RE.match(line.rstrip("\r\n"))
        if match and match.group("key") not in fields:
            fields[match.group("key")] = match.group("value").strip()
    return fields


@dataclass
class JournalEntry:
    """A single dated journal file."""
    path: Path
    entry_id: str
    created: datetime
    day_count: int
    updated: datetime
    title: str = ""
    encrypted: bool = False

    @classmethod
    def from_text(cls, path: Path, text: str, encrypted: bool = False) -> "JournalEntry":
        """Build an entry from a plaintext view of its file.

        Raises:
            ValueError: If the metadata block or a required field is missing.
        """
        fields = read_frontmatter(text)
        missing = [k for k in ("id", "created", "updated") if k not in fields]
        if missing:
            raise ValueError(f"{path} is missing frontmatter fields: {missing}")

        title = fields.get("title", "").strip("'\"")
        match = re.search(r"Day (\d+)", title)
        return cls(
            path=path,
            entry_id=fields["id"],
            created=parse_timestamp(fields["created"]),
            day_count=int(match.group(1)) if match else 0,
            updated=parse_timestamp(fields["updated"]),
            title=title,
            encrypted=encrypted,
        )


@dataclass
class FileResult:
    """Outcome of migrating one file."""
    path: Path
    outcome: MigrationOutcome
    reason: str = ""


@dataclass
class MigrationReport:
    """Aggregate of per-file outcomes for one migration run."""
    directory: Path
    results: list[FileResult] = field(default_factory=list)

    def add(self, path: Path, outcome: MigrationOutcome, reason: str = "") -> None:
        self.results.append(FileResult(path=path, outcome=outcome, reason=reason))

    def count(self, outcome: MigrationOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def already_encrypted(self) -> int:
        return self.count(MigrationOutcome.ALREADY_ENCRYPTED)

    @property
    def encrypted(self) -> int:
        return self.count(MigrationOutcome.ENCRYPTED)

    @property
    def skipped(self) -> int:
        return self.count(MigrationOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(MigrationOutcome.FAILED)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def summary(self) -> str:
        """Human readable report."""
        lines = [
            f"Migration summary for {self.directory}:",
            f"  Total files:       {self.total}",
            f"  Already encrypted: {self.already_encrypted}",
            f"  Newly encrypted:   {self.encrypted}",
            f"  Skipped:           {self.skipped}",
            f"  Failed:            {self.failed}",
        ]
        for result in self.results:
            if result.outcome in (MigrationOutcome.SKIPPED, MigrationOutcome.FAILED):
                lines.append(f"  - {result.path.name}: {result.outcome.value} ({result.reason})")
        return "\n".join(lines)
