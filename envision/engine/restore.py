"""Restore (clear) engine: return every tracked variable to its baseline.

Planning is pure. Execution treats each variable independently: a failing
step is reported and its records stay in the log, every other step still
runs and its records are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from envision.shared.models.session import ChangeRecord, Session
from envision.shared.services.snapshot import SnapshotHistory

from .environment import EnvironmentAccessor
from .errors import (
    BaselineMissingError,
    EnvisionError,
    NotInitializedError,
    PartialClearFailureError,
)

logger = logging.getLogger(__name__)


class ClearAction(str, Enum):
    RESTORE = "restore"
    REMOVE = "remove"
    NONE = "none"


@dataclass(frozen=True)
class ClearStep:
    """What clearing one tracked name will do."""

    name: str
    action: ClearAction
    current: str | None
    target: str | None
    record: ChangeRecord


@dataclass
class ClearPlan:
    steps: list[ClearStep] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.steps

    @property
    def removals(self) -> list[ClearStep]:
        return [s for s in self.steps if s.action is ClearAction.REMOVE]

    @property
    def restorations(self) -> list[ClearStep]:
        return [s for s in self.steps if s.action is ClearAction.RESTORE]

    @property
    def unchanged(self) -> list[ClearStep]:
        return [s for s in self.steps if s.action is ClearAction.NONE]


@dataclass(frozen=True)
class ClearFailure:
    name: str
    action: ClearAction
    reason: str


@dataclass
class ClearReport:
    resolved: list[ClearStep] = field(default_factory=list)
    failures: list[ClearFailure] = field(default_factory=list)
    nothing_to_clear: bool = False
    snapshot: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def removed(self) -> int:
        return sum(1 for s in self.resolved if s.action is ClearAction.REMOVE)

    @property
    def restored(self) -> int:
        return sum(1 for s in self.resolved if s.action is ClearAction.RESTORE)

    @property
    def unresolved(self) -> list[str]:
        return [f.name for f in self.failures]

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialClearFailureError(
                self.unresolved,
                {f.name: f.reason for f in self.failures},
            )


class ClearEngine:
    """Plan and execute a clear for one session."""

    def __init__(
        self,
        session: Session | None,
        env: EnvironmentAccessor,
        snapshots: SnapshotHistory | None = None,
        scope: str = "",
    ) -> None:
        self._session = session
        self._env = env
        self._snapshots = snapshots
        self._scope = scope

    def plan(self) -> ClearPlan:
        """One step per tracked name, based on its latest record."""
        session = self._session
        if session is None:
            raise NotInitializedError(self._scope)
        if session.baseline is None:
            raise BaselineMissingError(session.session_id)

        baseline = session.baseline
        steps: list[ClearStep] = []
        for name, record in sorted(session.latest_records().items()):
            target = baseline.get(name)
            current = self._env.get(name)
            if current == target:
                action = ClearAction.NONE
            elif target is None:
                action = ClearAction.REMOVE
            else:
                action = ClearAction.RESTORE
            steps.append(ClearStep(
                name=name, action=action, current=current,
                target=target, record=record,
            ))
        return ClearPlan(steps=steps)

    def execute(self, plan: ClearPlan | None = None) -> ClearReport:
        session = self._session
        if plan is None:
            plan = self.plan()
        if session is None:
            raise NotInitializedError(self._scope)
        if plan.empty:
            logger.info("Nothing to clear")
            return ClearReport(nothing_to_clear=True)

        report = ClearReport()
        if self._snapshots is not None and (plan.removals or plan.restorations):
            snap = self._snapshots.capture("clear")
            report.snapshot = snap.name if snap else None

        for step in plan.steps:
            try:
                if step.action is ClearAction.REMOVE:
                    self._env.unset(step.name)
                elif step.action is ClearAction.RESTORE:
                    self._env.set(step.name, step.target)
            except (EnvisionError, OSError) as exc:
                logger.warning("Failed to %s %s: %s", step.action.value, step.name, exc)
                report.failures.append(ClearFailure(step.name, step.action, str(exc)))
                continue
            report.resolved.append(step)

        resolved_names = {s.name for s in report.resolved}
        session.changes = [r for r in session.changes if r.name not in resolved_names]
        if report.ok:
            session.active_profile = None
            session.profile_checksum = None
            session.profile_path = None

        logger.info(
            "Clear finished: %d removed, %d restored, %d unchanged, %d failed",
            report.removed, report.restored,
            len(report.resolved) - report.removed - report.restored,
            len(report.failures),
        )
        return report
