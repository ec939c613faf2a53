"""Diff rendering: human (Rich), JSON and CSV.

The engine keeps values exact; escaping of non-printable characters and
truncation of long values happen only in ``render_human``.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Sequence

from rich.text import Text

from envision.engine.diff import DiffEntry, DiffSummary
from envision.engine.models import Category, ChangeKind

MAX_VALUE_WIDTH = 80

SYMBOLS = {
    ChangeKind.ADDED: "+",
    ChangeKind.REMOVED: "-",
    ChangeKind.MODIFIED: "~",
    ChangeKind.UNCHANGED: "=",
}

KIND_STYLES = {
    ChangeKind.ADDED: "green",
    ChangeKind.REMOVED: "red",
    ChangeKind.MODIFIED: "yellow",
    ChangeKind.UNCHANGED: "dim",
}

CATEGORY_LABELS = {
    Category.ORIGINAL: "original",
    Category.TRACKED_SET: "tracked",
    Category.TRACKED_UNSET: "tracked",
    Category.UNTRACKED: "untracked",
    Category.DRIFTED: "drifted",
}

CATEGORY_STYLES = {
    Category.ORIGINAL: "dim",
    Category.TRACKED_SET: "cyan",
    Category.TRACKED_UNSET: "cyan",
    Category.UNTRACKED: "magenta",
    Category.DRIFTED: "bold red",
}

CSV_FIELDS = ("name", "category", "kind", "old", "new", "target", "source")


def escape_value(value: str, max_width: int = MAX_VALUE_WIDTH) -> str:
    """Printable, single-line form of ``value``, truncated to ``max_width``."""
    parts: list[str] = []
    for ch in value:
        code = ord(ch)
        if 0xDC80 <= code <= 0xDCFF:
            # Surrogate-escaped byte from an undecodable environment value.
            parts.append(f"\\x{code - 0xDC00:02x}")
        elif ch == "\n":
            parts.append("\\n")
        elif ch == "\t":
            parts.append("\\t")
        elif ch == "\\":
            parts.append("\\\\")
        elif not ch.isprintable():
            parts.append(f"\\x{code:02x}" if code < 0x100 else f"\\u{code:04x}")
        else:
            parts.append(ch)
    escaped = "".join(parts)
    if max_width > 3 and len(escaped) > max_width:
        escaped = escaped[: max_width - 3] + "..."
    return escaped


def _entry_line(entry: DiffEntry, max_width: int) -> Text:
    kind = entry.kind
    line = Text()
    line.append(f"{SYMBOLS[kind]} ", style=KIND_STYLES[kind])
    line.append(entry.name, style="bold")
    if kind is ChangeKind.ADDED:
        line.append(f"={escape_value(entry.new or '', max_width)}")
    elif kind is ChangeKind.REMOVED:
        line.append(f"={escape_value(entry.old or '', max_width)}")
    elif kind is ChangeKind.MODIFIED:
        line.append(
            f": {escape_value(entry.old or '', max_width)}"
            f" -> {escape_value(entry.new or '', max_width)}"
        )
    else:
        line.append(f"={escape_value(entry.new or '', max_width)}")

    label = CATEGORY_LABELS[entry.category]
    line.append(f" ({label})", style=CATEGORY_STYLES[entry.category])
    if entry.category is Category.DRIFTED:
        expected = (
            "unset" if entry.target is None
            else escape_value(entry.target, max_width)
        )
        line.append(f" expected {expected}", style="dim")
    return line


def render_human(
    entries: Sequence[DiffEntry],
    unchanged: int = 0,
    max_width: int = MAX_VALUE_WIDTH,
) -> Text:
    """One line per entry plus an ``N unchanged`` footer."""
    out = Text()
    if not entries:
        out.append("No differences from baseline\n", style="dim")
    for entry in entries:
        out.append_text(_entry_line(entry, max_width))
        out.append("\n")
    if unchanged:
        out.append(f"{unchanged} unchanged\n", style="dim")
    return out


def render_json(
    entries: Sequence[DiffEntry],
    summary: DiffSummary | None = None,
    unchanged: int = 0,
) -> str:
    payload = {
        "entries": [e.to_dict() for e in entries],
        "unchanged": unchanged,
    }
    if summary is not None:
        payload["summary"] = summary.to_dict()
    return json.dumps(payload, indent=2) + "\n"


def render_csv(entries: Sequence[DiffEntry]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_FIELDS, lineterminator="\n")
    writer.writeheader()
    for entry in entries:
        row = entry.to_dict()
        writer.writerow({k: "" if row[k] is None else row[k] for k in CSV_FIELDS})
    return buf.getvalue()
