"""Profile loader: validate, evaluate and apply a profile script.

A profile is a shell script whose assignments are applied as tracked
changes tagged ``profile:<name>``. Validation happens before any mutation;
per-variable failures during apply are collected, not raised.
"""
from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from envision.shared.models.session import Session
from envision.shared.services.snapshot import DEFAULT_MAX_SNAPSHOTS, SnapshotHistory

from .config import DEFAULT_PROFILE_EXTENSIONS
from .environment import EnvironmentAccessor
from .errors import (
    InvalidNameError,
    OperationCancelledError,
    ProfileInvalidExtensionError,
    ProfileNotFoundError,
    ProfileParseFailureError,
    ReadonlyVariableError,
)
from .executor import ScriptExecutor
from .models import CRITICAL_VARIABLES, profile_source, validate_variable_name
from .tracker import ChangeTracker, SetResult, UnsetResult

logger = logging.getLogger(__name__)

NAME_MARKER_RE = re.compile(r"^[ \t]*#[ \t]*envision:name=(\S+)[ \t]*$", re.MULTILINE)


@dataclass(frozen=True)
class Profile:
    path: Path
    name: str
    checksum: str
    assignments: dict[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True)
class ProfileFailure:
    name: str
    reason: str


@dataclass
class ProfileResult:
    """Outcome of applying (or dry-running) one profile."""

    profile: Profile
    dry_run: bool = False
    confirmation_skipped: bool = False
    applied: list[SetResult | UnsetResult] = field(default_factory=list)
    failures: list[ProfileFailure] = field(default_factory=list)
    snapshot: str | None = None
    warnings: list[str] = field(default_factory=list)
    session_created: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def changed(self) -> int:
        """Assignments that produced a change record."""
        return sum(1 for r in self.applied if r.record is not None)


ConfirmCallback = Callable[[Profile], bool]


def profile_name_from_path(path: Path, extensions: Iterable[str]) -> str:
    filename = path.name
    for ext in sorted(extensions, key=len, reverse=True):
        if filename.endswith(ext) and len(filename) > len(ext):
            return filename[: -len(ext)]
    return filename


class ProfileLoader:
    """Turns a profile path into tracked changes on a session."""

    def __init__(
        self,
        executor: ScriptExecutor,
        extensions: Iterable[str] = DEFAULT_PROFILE_EXTENSIONS,
        reconfirm_unchanged: bool = False,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        critical_variables: Iterable[str] = CRITICAL_VARIABLES,
        cwd: Path | None = None,
    ) -> None:
        self._executor = executor
        self._extensions = tuple(extensions)
        self._reconfirm_unchanged = reconfirm_unchanged
        self._max_snapshots = max_snapshots
        self._critical = tuple(critical_variables)
        self._cwd = cwd

    def resolve(self, path: str | Path) -> Path:
        """Relative paths resolve against the working directory."""
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = (self._cwd or Path.cwd()) / p
        return p

    def validate(self, path: str | Path) -> Path:
        resolved = self.resolve(path)
        if not resolved.is_file():
            raise ProfileNotFoundError(resolved)
        if not any(resolved.name.endswith(ext) for ext in self._extensions):
            raise ProfileInvalidExtensionError(resolved, self._extensions)
        return resolved

    def read(self, path: str | Path, environ: dict[str, str]) -> Profile:
        """Validate, checksum and evaluate a profile. Mutates nothing."""
        resolved = self.validate(path)
        try:
            raw = resolved.read_bytes()
        except OSError as exc:
            raise ProfileParseFailureError(resolved, f"unreadable: {exc}") from exc
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProfileParseFailureError(resolved, f"not valid UTF-8: {exc}") from exc

        checksum = hashlib.sha256(raw).hexdigest()
        marker = NAME_MARKER_RE.search(text)
        name = marker.group(1) if marker else profile_name_from_path(
            resolved, self._extensions,
        )

        assignments = self._executor.run(resolved, environ)
        for var in assignments:
            try:
                validate_variable_name(var)
            except InvalidNameError as exc:
                raise ProfileParseFailureError(resolved, str(exc)) from exc

        logger.info(
            "Read profile %s from %s (%d assignment(s), sha256=%s)",
            name, resolved, len(assignments), checksum[:12],
        )
        return Profile(path=resolved, name=name, checksum=checksum, assignments=assignments)

    def needs_confirmation(self, session: Session, profile: Profile) -> bool:
        if self._reconfirm_unchanged:
            return True
        unchanged = (
            session.profile_path == str(profile.path)
            and session.profile_checksum == profile.checksum
        )
        return not unchanged

    def apply(
        self,
        session: Session,
        env: EnvironmentAccessor,
        path: str | Path,
        *,
        dry_run: bool = False,
        assume_yes: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> ProfileResult:
        """Evaluate ``path`` and record each assignment on ``session``.

        With ``dry_run`` the same computation runs on copies of the session
        and the environment, so the result is identical in shape and the
        originals are untouched.
        """
        profile = self.read(path, env.items())
        result = ProfileResult(profile=profile, dry_run=dry_run)

        if assume_yes or not self.needs_confirmation(session, profile):
            result.confirmation_skipped = not assume_yes
        else:
            if confirm is None or not confirm(profile):
                raise OperationCancelledError("profile loading")

        if dry_run:
            session = session.copy()
            env = env.copy()

        history = SnapshotHistory(session, self._max_snapshots)
        tracker = ChangeTracker(session, env, history, self._critical)
        if profile.assignments:
            snap = history.capture(f"profile {profile.name}")
            result.snapshot = snap.name if snap else None

        source = profile_source(profile.name)
        for var, value in profile.assignments.items():
            try:
                if value is None:
                    item = tracker.record_unset(var, source=source, snapshot=False)
                else:
                    item = tracker.record_set(var, value, source=source, snapshot=False)
            except ReadonlyVariableError as exc:
                logger.warning("Profile %s could not change %s: %s", profile.name, var, exc)
                result.failures.append(ProfileFailure(var, str(exc)))
                continue
            result.applied.append(item)
            result.warnings.extend(item.warnings)

        if result.ok:
            session.active_profile = profile.name
            session.profile_checksum = profile.checksum
            session.profile_path = str(profile.path)

        logger.info(
            "%s profile %s: %d change(s), %d failure(s)",
            "Dry-ran" if dry_run else "Applied",
            profile.name, result.changed, len(result.failures),
        )
        return result
