"""Core enums, constants and name validation.

Single source of truth shared by the engine and the persisted models.
"""
from __future__ import annotations

import re
from enum import Enum

from .errors import InvalidNameError

VARIABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Variables written by envision itself; never captured or classified.
MANAGED_PREFIX = "ENVISION_"
SCOPE_VAR = "ENVISION_SCOPE"

MANUAL_SOURCE = "manual"
PROFILE_SOURCE_PREFIX = "profile:"

# Variables that warrant a warning before modification.
CRITICAL_VARIABLES: tuple[str, ...] = (
    "PATH", "HOME", "USER", "SHELL", "TERM", "LANG", "PWD", "OLDPWD",
    "LD_LIBRARY_PATH", "LD_PRELOAD",
)

# Variables bash marks readonly; the parent shell refuses to change them.
SHELL_READONLY_VARIABLES: tuple[str, ...] = (
    "BASHOPTS", "BASH_VERSINFO", "EUID", "PPID", "SHELLOPTS", "UID",
)


class Operation(str, Enum):
    """Kind of tracked mutation."""
    SET = "set"
    UNSET = "unset"


class Category(str, Enum):
    """Classification of one variable against baseline and change log."""
    ORIGINAL = "original"
    TRACKED_SET = "tracked_set"
    TRACKED_UNSET = "tracked_unset"
    UNTRACKED = "untracked"
    DRIFTED = "tracked_then_drifted"

    @property
    def has_record(self) -> bool:
        return self in (Category.TRACKED_SET, Category.TRACKED_UNSET, Category.DRIFTED)

    @property
    def is_dirty(self) -> bool:
        return self in (Category.UNTRACKED, Category.DRIFTED)


class ChangeKind(str, Enum):
    """How the live value relates to the baseline value."""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class OverwriteKind(str, Enum):
    """Provenance of a value replaced or removed by set/unset."""
    TRACKED = "tracked"
    ORIGINAL = "original"
    UNTRACKED = "untracked"


class LoadStatus(str, Enum):
    """Outcome of reading the persisted session record."""
    OK = "ok"
    NOT_FOUND = "not_found"
    CORRUPT = "corrupt"


def validate_variable_name(name: str) -> str:
    """Return ``name`` unchanged or raise InvalidNameError."""
    if not name:
        raise InvalidNameError(name, "name cannot be empty")
    if not (name[0].isascii() and (name[0].isalpha() or name[0] == "_")):
        raise InvalidNameError(name, "must start with a letter or underscore")
    if VARIABLE_NAME_RE.match(name) is None:
        bad = next(
            c for c in name
            if not (c.isascii() and (c.isalnum() or c == "_"))
        )
        raise InvalidNameError(name, f"contains invalid character '{bad}'")
    return name


def is_managed_variable(name: str) -> bool:
    return name.startswith(MANAGED_PREFIX)


def profile_source(profile_name: str) -> str:
    return f"{PROFILE_SOURCE_PREFIX}{profile_name}"
