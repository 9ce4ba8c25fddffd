"""Template rendering for new journal entries."""

from __future__ import annotations

import re
from datetime import date, datetime
from pathlib import Path

from .errors import TemplateError
from .models import day_count, format_timestamp

PLACEHOLDERS = (
    "CURRENT_YEAR",
    "CURRENT_MONTH",
    "CURRENT_DAY",
    "CURRENT_DATE",
    "DAY_COUNT",
    "UNIQUE_ID",
    "PREV_MONTH",
    "PREV_YEAR",
)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(" + "|".join(PLACEHOLDERS) + r")\s*\}\}")

DEFAULT_TEMPLATE = """---
id: {{ UNIQUE_ID }}
title: 'Day {{ DAY_COUNT }} -'
desc: ''
updated: {{ CURRENT_DATE }}
created: {{ CURRENT_DATE }}
---

## Feelings


## Thoughts
### General:


---
## Revision:
### Monthly:
[[journal.daily.{{ CURRENT_YEAR }}.{{ PREV_MONTH }}.{{ CURRENT_DAY }}.md]].


### Yearly:
[[journal.daily.{{ PREV_YEAR }}.{{ CURRENT_MONTH }}.{{ CURRENT_DAY }}.md]].


###
"""


def build_variables(entry_time: datetime, start_date: date, unique_id: str) -> dict[str, str]:
    """Resolve every placeholder value for an entry."""
    prev_month = 12 if entry_time.month == 1 else entry_time.month - 1
    return {
        "CURRENT_YEAR": f"{entry_time:%Y}",
        "CURRENT_MONTH": f"{entry_time:%m}",
        "CURRENT_DAY": f"{entry_time:%d}",
        "CURRENT_DATE": format_timestamp(entry_time),
        "DAY_COUNT": str(day_count(entry_time.date(), start_date)),
        "UNIQUE_ID": unique_id,
        "PREV_MONTH": f"{prev_month:02d}",
        "PREV_YEAR": str(entry_time.year - 1),
    }


def render(template_text: str, variables: dict[str, str]) -> str:
    """Substitute known placeholders; anything without a value stays as is."""
    def replace(match: re.Match) -> str:
        return variables.get(match.group(1), match.group(0))

    return _PLACEHOLDER_RE.sub(replace, template_text)


def load_template(path: Path) -> str:
    """Read a custom template file.

    Raises:
        TemplateError: If the file is missing, unreadable or empty.
    """
    if not path.is_file():
        raise TemplateError(f"Template file '{path}' not found")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateError(f"Template file '{path}' is not readable", details=str(e)) from e
    if not text.strip():
        raise TemplateError(f"Template file '{path}' is empty")
    return text


def template_warnings(template_text: str) -> list[str]:
    """Non-fatal problems with a template."""
    warnings = []
    if "---" not in template_text:
        warnings.append("Template file does not contain YAML frontmatter markers (---)")
    if not re.search(r"\{\{\s*CURRENT_DATE\s*\}\}", template_text):
        warnings.append("Template does not contain {{ CURRENT_DATE }} placeholder")
    return warnings
