"""Session persistence: load and save the session record for one scope.

Storage layout:
    {data_dir}/sessions/{scope}.json

where {data_dir} defaults to $XDG_DATA_HOME/envision (or
~/.local/share/envision) and {scope} is the shell's scope token, usually
the shell pid.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from envision.engine.errors import (
    AlreadyInitializedError,
    NotInitializedError,
    StorageCorruptError,
    StorageUnavailableError,
)
from envision.engine.models import LoadStatus
from envision.shared.models.session import Session, SessionScope
from envision.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

SESSIONS_DIRNAME = "sessions"


def default_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Resolve the envision data directory from XDG_DATA_HOME or HOME."""
    env = os.environ if environ is None else environ
    xdg = env.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "envision"
    home = env.get("HOME")
    if home:
        return Path(home) / ".local" / "share" / "envision"
    return Path.home() / ".local" / "share" / "envision"


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass
class LoadResult:
    """Outcome of reading the session record; never raised as a crash."""

    status: LoadStatus
    path: Path
    session: Session | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is LoadStatus.OK

    def require(self, scope: str) -> Session:
        """Return the session or raise the matching error."""
        if self.status is LoadStatus.NOT_FOUND:
            raise NotInitializedError(scope)
        if self.status is LoadStatus.CORRUPT or self.session is None:
            raise StorageCorruptError(self.path, self.error or "unknown error")
        return self.session


@dataclass
class InitResult:
    """Result of session initialization."""

    session: Session
    path: Path
    outcome: str  # "created", "reinitialized", "resumed"
    captured: int = 0
    warnings: list[str] = field(default_factory=list)
    stale_removed: int = 0


class SessionStore:
    """Atomic JSON storage for the session record of one scope."""

    def __init__(self, base_dir: Path | str, scope: SessionScope) -> None:
        self._base_dir = Path(base_dir)
        self._dir = self._base_dir / SESSIONS_DIRNAME
        self._scope = scope

    @property
    def scope(self) -> SessionScope:
        return self._scope

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    @property
    def path(self) -> Path:
        return self._dir / f"{self._scope.token}.json"

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> LoadResult:
        """Read the session record, reporting not-found/corrupt/ok."""
        path = self.path
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LoadResult(status=LoadStatus.NOT_FOUND, path=path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Session record %s is unreadable: %s", path, exc)
            return LoadResult(
                status=LoadStatus.CORRUPT, path=path,
                error=f"unreadable: {exc}",
            )

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            session = Session.from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Session record %s is corrupt: %s", path, exc)
            return LoadResult(
                status=LoadStatus.CORRUPT, path=path,
                error=f"{type(exc).__name__}: {exc}",
            )

        logger.debug(
            "Loaded session %s from %s (%d records)",
            session.session_id, path, len(session.changes),
        )
        return LoadResult(status=LoadStatus.OK, path=path, session=session)

    def save(self, session: Session) -> Path:
        """Persist the session atomically."""
        path = self.path
        try:
            atomic_write_text(path, json.dumps(session.to_dict(), indent=2))
        except OSError as exc:
            raise StorageUnavailableError(path, str(exc)) from exc
        logger.debug("Session %s saved to %s", session.session_id, path)
        return path

    def init(
        self,
        environ: Mapping[str, str],
        *,
        force: bool = False,
        resume: bool = False,
        ignore: Iterable[str] = (),
    ) -> InitResult:
        """Capture a baseline for this scope, or resume the existing one."""
        existing = self.load()

        if resume:
            session = existing.require(self._scope.token)
            logger.info("Resumed session %s", session.session_id)
            return InitResult(session=session, path=existing.path, outcome="resumed")

        warnings: list[str] = []
        outcome = "created"
        if existing.status is not LoadStatus.NOT_FOUND:
            if not force:
                raise AlreadyInitializedError(self._scope.token, existing.path)
            warnings.append(
                "Reinitializing session (previous tracking history will be lost)"
            )
            outcome = "reinitialized"
            logger.warning(
                "Discarding %s session record at %s",
                existing.status.value, existing.path,
            )

        stale_removed = self.cleanup_stale()
        if stale_removed:
            warnings.append(
                f"Found {stale_removed} stale session(s) from previous shells (cleaned up)"
            )

        session = Session.capture(environ, self._scope, ignore=ignore)
        path = self.save(session)
        logger.info(
            "Initialized session %s for scope %s (%d variables)",
            session.session_id, self._scope.token, len(session.baseline or {}),
        )
        return InitResult(
            session=session,
            path=path,
            outcome=outcome,
            captured=len(session.baseline or {}),
            warnings=warnings,
            stale_removed=stale_removed,
        )

    def list_stale_sessions(
        self,
        is_alive: Callable[[int], bool] = _process_alive,
    ) -> list[tuple[int, Path]]:
        """Session files named after pids that are no longer running."""
        if not self._dir.exists():
            return []
        stale: list[tuple[int, Path]] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                pid = int(path.stem)
            except ValueError:
                continue
            if path.stem == self._scope.token:
                continue
            if not is_alive(pid):
                stale.append((pid, path))
        return stale

    def cleanup_stale(
        self,
        is_alive: Callable[[int], bool] = _process_alive,
    ) -> int:
        removed = 0
        for pid, path in self.list_stale_sessions(is_alive):
            try:
                path.unlink()
                removed += 1
                logger.info("Removed stale session for pid %d (%s)", pid, path)
            except OSError:
                logger.debug("Failed to remove stale session %s", path, exc_info=True)
        return removed
