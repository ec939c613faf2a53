"""Change tracker: apply set/unset to the environment and log them."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from envision.shared.models.session import ChangeRecord, Session
from envision.shared.services.snapshot import SnapshotHistory

from . import diff
from .environment import EnvironmentAccessor
from .errors import ReadonlyVariableError, VariableNotFoundError
from .models import (
    CRITICAL_VARIABLES,
    MANUAL_SOURCE,
    Category,
    Operation,
    OverwriteKind,
    validate_variable_name,
)

logger = logging.getLogger(__name__)


@dataclass
class SetResult:
    name: str
    value: str
    previous_value: str | None
    overwrite: OverwriteKind | None
    record: ChangeRecord | None = None
    already_set: bool = False
    snapshot: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class UnsetResult:
    name: str
    previous_value: str | None
    removed: OverwriteKind | None
    record: ChangeRecord | None = None
    snapshot: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def was_set(self) -> bool:
        return self.previous_value is not None


class ChangeTracker:
    """Route set/unset through the environment accessor and the change log.

    The live value is read immediately before each mutation, so every
    record captures the true previous value. A failed mutation appends
    nothing.
    """

    def __init__(
        self,
        session: Session,
        env: EnvironmentAccessor,
        snapshots: SnapshotHistory | None = None,
        critical_variables: Iterable[str] = CRITICAL_VARIABLES,
    ) -> None:
        self._session = session
        self._env = env
        self._snapshots = snapshots if snapshots is not None else SnapshotHistory(session)
        self._critical = frozenset(critical_variables)

    @property
    def session(self) -> Session:
        return self._session

    def _provenance(self, name: str, previous: str | None) -> OverwriteKind | None:
        if previous is None:
            return None
        if self._session.latest_record(name) is not None:
            return OverwriteKind.TRACKED
        baseline = self._session.baseline or {}
        if name in baseline and baseline[name] == previous:
            return OverwriteKind.ORIGINAL
        return OverwriteKind.UNTRACKED

    def _critical_warning(self, name: str) -> list[str]:
        if name in self._critical:
            return [f"'{name}' is a system-critical variable"]
        return []

    def _snapshot(self, reason: str) -> str | None:
        snap = self._snapshots.capture(reason)
        return snap.name if snap else None

    def record_set(
        self,
        name: str,
        value: str,
        source: str = MANUAL_SOURCE,
        snapshot: bool = True,
    ) -> SetResult:
        validate_variable_name(name)
        previous = self._env.get(name)
        overwrite = self._provenance(name, previous)
        result = SetResult(
            name=name, value=value, previous_value=previous, overwrite=overwrite,
        )
        result.warnings.extend(self._critical_warning(name))
        if overwrite is OverwriteKind.UNTRACKED and previous != value:
            result.warnings.append(f"Overwriting untracked value of '{name}'")

        if previous == value:
            # Nothing to mutate. Track it unless the log already expects it.
            result.already_set = True
            latest = self._session.latest_record(name)
            if latest is not None and latest.operation is Operation.SET and latest.new_value == value:
                logger.debug("%s already tracked at requested value", name)
                return result
            record = ChangeRecord(
                name=name, operation=Operation.SET,
                previous_value=previous, new_value=value, source=source,
            )
            self._session.changes.append(record)
            result.record = record
            logger.info("Tracked %s (already at requested value, source=%s)", name, source)
            return result

        if self._env.is_readonly(name):
            raise ReadonlyVariableError(name, "set")
        if snapshot:
            result.snapshot = self._snapshot(f"set {name}")
        self._env.set(name, value)
        record = ChangeRecord(
            name=name, operation=Operation.SET,
            previous_value=previous, new_value=value, source=source,
        )
        self._session.changes.append(record)
        result.record = record
        logger.info(
            "Set %s (previous=%s, source=%s)",
            name, overwrite.value if overwrite else "absent", source,
        )
        return result

    def record_unset(
        self,
        name: str,
        source: str = MANUAL_SOURCE,
        snapshot: bool = True,
    ) -> UnsetResult:
        validate_variable_name(name)
        previous = self._env.get(name)
        if previous is None:
            logger.info("Unset of %s skipped: not set", name)
            return UnsetResult(
                name=name, previous_value=None, removed=None,
                warnings=[str(VariableNotFoundError(name))],
            )

        result = UnsetResult(
            name=name,
            previous_value=previous,
            removed=self._provenance(name, previous),
            warnings=self._critical_warning(name),
        )
        if self._env.is_readonly(name):
            raise ReadonlyVariableError(name, "unset")
        if snapshot:
            result.snapshot = self._snapshot(f"unset {name}")
        self._env.unset(name)
        record = ChangeRecord(
            name=name, operation=Operation.UNSET,
            previous_value=previous, source=source,
        )
        self._session.changes.append(record)
        result.record = record
        logger.info("Unset %s (was %s, source=%s)", name, result.removed.value, source)
        return result

    def classify(self, name: str) -> Category:
        return diff.classify(
            name,
            self._session.baseline or {},
            self._session.latest_record(name),
            self._env.get(name),
        )
