"""Shared pytest fixtures for daily-journal tests."""

import os
import stat
import sys
import tempfile
from datetime import date, datetime
from pathlib import Path

import pytest

from daily_journal.config import JournalConfig
from daily_journal.sops import SopsTool
from daily_journal.template import DEFAULT_TEMPLATE

# Stand-in for the sops binary. Same command line contract, reversible
# base64 "encryption", and JSON output shaped like sops' binary format.
FAKE_SOPS = r'''
import base64
import json
import os
import re
import sys


def fail(message):
    sys.stderr.write(message + "\n")
    sys.exit(1)


args = sys.argv[1:]
log = os.environ.get("FAKE_SOPS_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(" ".join(args) + "\n")

if args == ["--version"]:
    print("sops 3.8.1 (fake)")
    sys.exit(0)

config = None
if args[:1] == ["--config"]:
    config, args = args[1], args[2:]

fail_on = os.environ.get("FAKE_SOPS_FAIL_ON", "")
message = os.environ.get("FAKE_SOPS_MESSAGE", "Error: no key could decrypt the data key")

if config is not None:
    if not os.path.exists(config):
        fail("config file not found: " + config)
    with open(config, encoding="utf-8") as f:
        if "invalid_key" in f.read():
            fail("Could not generate data key: failed to parse age recipient invalid_key_format")

if args[:2] == ["--encrypt", "--in-place"]:
    if fail_on in ("encrypt", "all"):
        fail(message)
    path = args[2]
    with open(path, encoding="utf-8") as f:
        text = f.read()
    if '"sops":' in text:
        fail("The file you have provided contains a top-level entry called 'sops'")
    data = base64.b64encode(text.encode("utf-8")).decode("ascii")
    doc = {
        "data": "ENC[AES256_GCM,data:%s,iv:fake,tag:fake,type:str]" % data,
        "sops": {"version": "3.8.1", "age": [{"recipient": "age1fake"}]},
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f, indent="\t")
        f.write("\n")
elif args[:1] == ["--decrypt"]:
    if fail_on in ("decrypt", "all"):
        fail(message)
    with open(args[1], encoding="utf-8") as f:
        doc = json.load(f)
    match = re.match(r"ENC\[AES256_GCM,data:([^,]*),", doc["data"])
    sys.stdout.write(base64.b64decode(match.group(1)).decode("utf-8"))
else:
    fail("unsupported arguments: " + " ".join(sys.argv[1:]))
'''

# Stand-in for inotifywait -m: prints one event per name listed in
# FAKE_INOTIFY_EVENTS, then optionally removes the watched directory or hangs.
FAKE_INOTIFYWAIT = r'''
import os
import sys
import time

directory = sys.argv[-1]
log = os.environ.get("FAKE_INOTIFY_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(" ".join(sys.argv[1:]) + "\n")

with open(os.environ["FAKE_INOTIFY_EVENTS"], encoding="utf-8") as f:
    names = f.read().split()
for name in names:
    print(os.path.join(directory, name), flush=True)

if os.environ.get("FAKE_INOTIFY_REMOVE"):
    os.rmdir(directory)
if os.environ.get("FAKE_INOTIFY_HANG"):
    time.sleep(30)
'''

VALID_SOPS_CONFIG = """creation_rules:
  - path_regex: \\.md$
    age: >-
      age1ql3z7hjy54pw3hyww5ayyfg7zqgvc7w3j2elw8zmrj2kg5sfn9aqmcac8p
"""


@pytest.fixture
def temp_dir():
    """Create a temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def journal_dir(temp_dir):
    """Directory that holds journal entries."""
    path = temp_dir / "journal"
    path.mkdir()
    return path


@pytest.fixture
def config_dir(temp_dir):
    """Stand-in for ~/.config/cj."""
    return temp_dir / "config"


@pytest.fixture
def fake_sops(temp_dir):
    """Path to an executable fake sops."""
    return write_script(temp_dir / "bin" / "sops", FAKE_SOPS)


@pytest.fixture
def sops_log(temp_dir, monkeypatch):
    """File recording every fake sops invocation, one per line."""
    log = temp_dir / "sops.log"
    monkeypatch.setenv("FAKE_SOPS_LOG", str(log))
    return log


@pytest.fixture
def tool(fake_sops):
    """SopsTool bound to the fake executable."""
    return SopsTool(executable=str(fake_sops), timeout=30)


@pytest.fixture
def missing_tool():
    """SopsTool whose executable does not exist."""
    return SopsTool(executable="sops-not-installed-anywhere")


@pytest.fixture
def sops_config(journal_dir):
    """A structurally valid .sops.yaml in the journal directory."""
    path = journal_dir / ".sops.yaml"
    path.write_text(VALID_SOPS_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def make_config(journal_dir):
    """Factory for JournalConfig with sensible test defaults."""

    def _make(**overrides):
        entry_time = overrides.pop("entry_time", datetime(2024, 1, 15))
        values = dict(
            output_dir=journal_dir,
            output_path=journal_dir / f"journal.daily.{entry_time:%Y.%m.%d}.md",
            template_text=DEFAULT_TEMPLATE,
            entry_time=entry_time,
            start_date=date(2024, 1, 1),
            quiet=True,
        )
        values.update(overrides)
        return JournalConfig(**values)

    return _make


def snapshot(directory: Path) -> dict[str, bytes]:
    """Names and contents of every file in directory."""
    return {p.name: p.read_bytes() for p in sorted(directory.iterdir()) if p.is_file()}


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment variables that influence resolution."""
    for name in ("SOPS_CONFIG_PATH", "JOURNAL_POLLING_INTERVAL", "CJ_CONFIG_DIR", "FAKE_SOPS_FAIL_ON"):
        monkeypatch.delenv(name, raising=False)
    return os.environ


def write_script(path: Path, body: str) -> Path:
    """Write an executable script run by the current interpreter."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_inotifywait(temp_dir, monkeypatch):
    """Path to an executable fake inotifywait reading its events from a file."""
    events = temp_dir / "inotify-events"
    events.write_text("", encoding="utf-8")
    monkeypatch.setenv("FAKE_INOTIFY_EVENTS", str(events))
    monkeypatch.setenv("FAKE_INOTIFY_LOG", str(temp_dir / "inotify.log"))
    monkeypatch.delenv("FAKE_INOTIFY_REMOVE", raising=False)
    monkeypatch.delenv("FAKE_INOTIFY_HANG", raising=False)
    return write_script(temp_dir / "bin" / "inotifywait", FAKE_INOTIFYWAIT)
