"""Diff engine: classify every variable against baseline and change log.

Everything here is pure. Classification is re-derived from
(baseline, latest record, live value) on every query and never stored.
"""
from __future__ import annotations

import fnmatch
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from envision.shared.models.session import ChangeRecord

from .models import Category, ChangeKind, Operation, is_managed_variable

Predicate = Callable[["DiffEntry"], bool]


def classify(
    name: str,
    baseline: Mapping[str, str],
    record: ChangeRecord | None,
    live: str | None,
) -> Category:
    """Category of one name. ``live`` is None when the name is absent.

    Value equality wins: a tracked name whose live value matches the
    record's target is tracked, however it got there.
    """
    if record is None:
        if name in baseline and baseline[name] == live:
            return Category.ORIGINAL
        return Category.UNTRACKED
    if record.operation is Operation.SET:
        return Category.TRACKED_SET if live == record.new_value else Category.DRIFTED
    return Category.TRACKED_UNSET if live is None else Category.DRIFTED


@dataclass(frozen=True)
class DiffEntry:
    """One classified variable.

    ``old`` is the baseline value, ``new`` the live value and ``target`` the
    value the latest record expects; each is None when absent.
    """

    name: str
    category: Category
    old: str | None
    new: str | None
    target: str | None = None
    source: str | None = None
    operation: Operation | None = None

    @property
    def kind(self) -> ChangeKind:
        if self.old is None and self.new is not None:
            return ChangeKind.ADDED
        if self.old is not None and self.new is None:
            return ChangeKind.REMOVED
        if self.old != self.new:
            return ChangeKind.MODIFIED
        return ChangeKind.UNCHANGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "kind": self.kind.value,
            "old": self.old,
            "new": self.new,
            "target": self.target,
            "source": self.source,
        }


def compute(
    baseline: Mapping[str, str],
    changes: Sequence[ChangeRecord],
    live: Mapping[str, str],
    predicate: Predicate | None = None,
    ignore: Iterable[str] = (),
) -> list[DiffEntry]:
    """Classify every name in baseline, live environment and change log.

    Names managed by envision and names in ``ignore`` are skipped. Entries
    come back sorted by name.
    """
    latest: dict[str, ChangeRecord] = {}
    for record in changes:
        latest[record.name] = record

    ignored = set(ignore)
    names = set(baseline) | set(live) | set(latest)
    entries: list[DiffEntry] = []
    for name in sorted(names):
        if name in ignored or is_managed_variable(name):
            continue
        record = latest.get(name)
        value = live.get(name)
        entry = DiffEntry(
            name=name,
            category=classify(name, baseline, record, value),
            old=baseline.get(name),
            new=value,
            target=record.target if record else None,
            source=record.source if record else None,
            operation=record.operation if record else None,
        )
        if predicate is None or predicate(entry):
            entries.append(entry)
    return entries


# ── Predicates ──────────────────────────────────────────────


def tracked_only(entry: DiffEntry) -> bool:
    return entry.category.has_record


def untracked_only(entry: DiffEntry) -> bool:
    return entry.category is Category.UNTRACKED


def changed_only(entry: DiffEntry) -> bool:
    return entry.category is not Category.ORIGINAL


def name_pattern(pattern: str) -> Predicate:
    """Case-sensitive shell-style glob over the variable name."""
    def _match(entry: DiffEntry) -> bool:
        return fnmatch.fnmatchcase(entry.name, pattern)
    return _match


def all_of(*predicates: Predicate | None) -> Predicate | None:
    active = [p for p in predicates if p is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def _all(entry: DiffEntry) -> bool:
        return all(p(entry) for p in active)
    return _all


@dataclass
class DiffSummary:
    """Per-category counts over a list of entries."""

    counts: dict[Category, int] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: Iterable[DiffEntry]) -> DiffSummary:
        counts = {category: 0 for category in Category}
        for entry in entries:
            counts[entry.category] += 1
        return cls(counts=counts)

    def count(self, category: Category) -> int:
        return self.counts.get(category, 0)

    @property
    def tracked(self) -> int:
        return sum(n for c, n in self.counts.items() if c.has_record)

    @property
    def untracked(self) -> int:
        return self.count(Category.UNTRACKED)

    @property
    def drifted(self) -> int:
        return self.count(Category.DRIFTED)

    @property
    def dirty(self) -> bool:
        return any(n for c, n in self.counts.items() if c.is_dirty)

    def to_dict(self) -> dict[str, Any]:
        return {
            **{c.value: n for c, n in self.counts.items()},
            "dirty": self.dirty,
        }
