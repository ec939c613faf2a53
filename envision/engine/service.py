"""Command-level orchestration.

Each public method is one command: load the session record, run the
engine against the injected environment, persist, and return a
structured result. Nothing here writes to a terminal.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from envision.shared.models.session import AutoSnapshot, Session
from envision.shared.services.persistence import InitResult, SessionStore
from envision.shared.services.snapshot import SnapshotHistory

from . import diff
from .config import EnvisionConfig
from .environment import EnvironmentAccessor
from .errors import (
    EXIT_FAILURE,
    EXIT_STORAGE_CORRUPT,
    BaselineMissingError,
    OperationCancelledError,
)
from .executor import BashScriptExecutor, ScriptExecutor
from .models import Category, LoadStatus
from .profiles import ConfirmCallback, ProfileLoader, ProfileResult
from .restore import ClearEngine, ClearPlan, ClearReport
from .tracker import ChangeTracker, SetResult, UnsetResult

logger = logging.getLogger(__name__)

ClearConfirmCallback = Callable[[ClearPlan], bool]


@dataclass
class StatusReport:
    scope: str
    path: Path
    storage_status: LoadStatus
    session: Session | None = None
    summary: diff.DiffSummary | None = None
    error: str | None = None

    @property
    def dirty(self) -> bool:
        return self.summary.dirty if self.summary is not None else False

    @property
    def exit_code(self) -> int:
        if self.storage_status is LoadStatus.CORRUPT:
            return EXIT_STORAGE_CORRUPT
        return EXIT_FAILURE if self.dirty else 0


@dataclass
class DiffReport:
    storage_status: LoadStatus
    path: Path
    entries: list[diff.DiffEntry] = field(default_factory=list)
    summary: diff.DiffSummary | None = None
    unchanged: int = 0
    error: str | None = None


class EnvisionService:
    """Runs envision commands for one scope."""

    def __init__(
        self,
        config: EnvisionConfig,
        store: SessionStore,
        env: EnvironmentAccessor,
        executor: ScriptExecutor | None = None,
        cwd: Path | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._env = env
        self._executor = executor or BashScriptExecutor(
            shell=config.shell, timeout=config.script_timeout,
        )
        self._cwd = cwd

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def env(self) -> EnvironmentAccessor:
        return self._env

    def _scope(self) -> str:
        return self._store.scope.token

    def _load_session(self) -> Session:
        """Load a usable session; mutating commands refuse corrupt storage."""
        session = self._store.load().require(self._scope())
        if session.baseline is None:
            raise BaselineMissingError(session.session_id)
        return session

    def _history(self, session: Session) -> SnapshotHistory:
        return SnapshotHistory(session, self._config.max_auto_snapshots)

    def _tracker(self, session: Session) -> ChangeTracker:
        return ChangeTracker(
            session, self._env, self._history(session),
            self._config.critical_variables,
        )

    # ── Commands ────────────────────────────────────────────

    def init(self, *, force: bool = False, resume: bool = False) -> InitResult:
        return self._store.init(
            self._env.items(),
            force=force,
            resume=resume,
            ignore=self._config.ignored_variables,
        )

    def status(self) -> StatusReport:
        """Session summary. Corrupt storage is reported, not raised."""
        loaded = self._store.load()
        report = StatusReport(
            scope=self._scope(), path=loaded.path, storage_status=loaded.status,
            error=loaded.error,
        )
        if loaded.status is LoadStatus.CORRUPT:
            return report
        session = loaded.require(self._scope())
        report.session = session
        if session.baseline is None:
            report.error = f"session {session.session_id} has no baseline"
            return report
        entries = diff.compute(
            session.baseline, session.changes, self._env.items(),
            ignore=self._config.ignored_variables,
        )
        report.summary = diff.DiffSummary.from_entries(entries)
        return report

    def diff(
        self,
        *,
        tracked: bool = False,
        untracked: bool = False,
        pattern: str | None = None,
        show_all: bool = False,
    ) -> DiffReport:
        loaded = self._store.load()
        report = DiffReport(
            storage_status=loaded.status, path=loaded.path, error=loaded.error,
        )
        if loaded.status is LoadStatus.CORRUPT:
            return report
        session = loaded.require(self._scope())
        if session.baseline is None:
            raise BaselineMissingError(session.session_id)

        category_filter = None
        if tracked:
            category_filter = diff.tracked_only
        elif untracked:
            category_filter = diff.untracked_only
        elif not show_all:
            category_filter = diff.changed_only

        pattern_filter = diff.name_pattern(pattern) if pattern else None
        live = self._env.items()
        ignore = self._config.ignored_variables
        matching = diff.compute(
            session.baseline, session.changes, live,
            predicate=pattern_filter, ignore=ignore,
        )
        report.entries = diff.compute(
            session.baseline, session.changes, live,
            predicate=diff.all_of(pattern_filter, category_filter), ignore=ignore,
        )
        report.summary = diff.DiffSummary.from_entries(matching)
        shown = {e.name for e in report.entries}
        report.unchanged = sum(
            1 for e in matching
            if e.category is Category.ORIGINAL and e.name not in shown
        )
        return report

    def set(self, name: str, value: str) -> SetResult:
        session = self._load_session()
        result = self._tracker(session).record_set(name, value)
        if result.record is not None:
            self._store.save(session)
        return result

    def unset(self, name: str) -> UnsetResult:
        session = self._load_session()
        result = self._tracker(session).record_unset(name)
        if result.record is not None:
            self._store.save(session)
        return result

    def preview_clear(self) -> ClearPlan:
        session = self._load_session()
        return ClearEngine(session, self._env, scope=self._scope()).plan()

    def clear(
        self,
        *,
        force: bool = False,
        confirm: ClearConfirmCallback | None = None,
    ) -> ClearReport:
        """Restore tracked variables; asks ``confirm`` unless ``force``.

        Partial failures are returned in the report; the caller decides
        whether to raise them.
        """
        session = self._load_session()
        engine = ClearEngine(
            session, self._env, self._history(session), scope=self._scope(),
        )
        plan = engine.plan()
        if plan.empty:
            return engine.execute(plan)
        if not force and (confirm is None or not confirm(plan)):
            raise OperationCancelledError("clear")
        report = engine.execute(plan)
        self._store.save(session)
        return report

    def load_profile(
        self,
        path: str | Path,
        *,
        dry_run: bool = False,
        assume_yes: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> ProfileResult:
        """Apply a profile, creating a session when none exists.

        A new session is captured in memory and saved only after the
        profile has been validated, confirmed and applied.
        """
        loaded = self._store.load()
        created = loaded.status is LoadStatus.NOT_FOUND
        if created:
            session = Session.capture(
                self._env.items(), self._store.scope,
                ignore=self._config.ignored_variables,
            )
        else:
            session = self._load_session()

        loader = ProfileLoader(
            self._executor,
            extensions=self._config.profile_extensions,
            reconfirm_unchanged=self._config.reconfirm_unchanged_profiles,
            max_snapshots=self._config.max_auto_snapshots,
            critical_variables=self._config.critical_variables,
            cwd=self._cwd,
        )
        result = loader.apply(
            session, self._env, path,
            dry_run=dry_run, assume_yes=assume_yes, confirm=confirm,
        )
        if dry_run:
            return result

        if created:
            stale_removed = self._store.cleanup_stale()
            if stale_removed:
                result.warnings.append(
                    f"Found {stale_removed} stale session(s) from previous shells (cleaned up)"
                )
            result.session_created = True
            logger.info(
                "Created session %s for profile %s",
                session.session_id, result.profile.name,
            )
        self._store.save(session)
        return result

    def snapshots(self) -> list[AutoSnapshot]:
        session = self._store.load().require(self._scope())
        return self._history(session).list()
