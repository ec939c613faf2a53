"""Session state: baseline, change log and auto-snapshot history."""

from __future__ import annotations

import copy
import os
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from envision.engine.models import (
    MANUAL_SOURCE,
    SCOPE_VAR,
    Operation,
    is_managed_variable,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _new_session_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass(frozen=True)
class SessionScope:
    """Identity under which one shell's tracking data is isolated."""

    token: str
    owner_pid: int

    @classmethod
    def from_environment(
        cls,
        environ: Mapping[str, str] | None = None,
        parent_pid: int | None = None,
    ) -> SessionScope:
        """Scope for the invoking shell.

        The envision binary runs as a child of the shell, so the parent pid
        identifies the shell. ``ENVISION_SCOPE`` overrides the token.
        """
        env = os.environ if environ is None else environ
        pid = os.getppid() if parent_pid is None else parent_pid
        token = (env.get(SCOPE_VAR) or "").strip() or str(pid)
        return cls(token=token, owner_pid=pid)


@dataclass
class ChangeRecord:
    """One Set/Unset performed through the tool."""

    name: str
    operation: Operation
    previous_value: str | None
    new_value: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    source: str = MANUAL_SOURCE

    @property
    def target(self) -> str | None:
        """Value the record expects to be live (None means absent)."""
        return self.new_value if self.operation is Operation.SET else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "operation": self.operation.value,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChangeRecord:
        operation = Operation(data["operation"])
        new_value = data.get("new_value")
        if operation is Operation.UNSET:
            new_value = None
        elif not isinstance(new_value, str):
            raise ValueError(f"set record for {data['name']!r} has no new_value")
        return cls(
            name=str(data["name"]),
            operation=operation,
            previous_value=data.get("previous_value"),
            new_value=new_value,
            timestamp=_parse_timestamp(data["timestamp"]),
            source=str(data.get("source") or MANUAL_SOURCE),
        )


@dataclass
class AutoSnapshot:
    """Copy of tracked state taken before a mutating operation."""

    name: str
    sequence: int
    created_at: datetime
    reason: str
    changes: list[ChangeRecord] = field(default_factory=list)
    active_profile: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "reason": self.reason,
            "changes": [c.to_dict() for c in self.changes],
            "active_profile": self.active_profile,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AutoSnapshot:
        return cls(
            name=str(data["name"]),
            sequence=int(data["sequence"]),
            created_at=_parse_timestamp(data["created_at"]),
            reason=str(data.get("reason") or ""),
            changes=[ChangeRecord.from_dict(c) for c in data.get("changes", [])],
            active_profile=data.get("active_profile"),
        )


@dataclass
class Session:
    """Tracking state for one shell session.

    ``baseline`` is write-once: it is stored as a read-only mapping and only
    replaced by creating a new Session. ``baseline`` is None when a record
    was persisted without one, which makes the session unusable for clear.
    """

    session_id: str = field(default_factory=_new_session_id)
    created_at: datetime = field(default_factory=_utcnow)
    owner_pid: int = 0
    scope: str = ""
    baseline: Mapping[str, str] | None = field(default_factory=dict)
    changes: list[ChangeRecord] = field(default_factory=list)
    snapshots: list[AutoSnapshot] = field(default_factory=list)
    snapshot_sequence: int = 0
    active_profile: str | None = None
    profile_checksum: str | None = None
    profile_path: str | None = None

    def __post_init__(self) -> None:
        if self.baseline is not None:
            self.baseline = MappingProxyType(dict(self.baseline))

    @classmethod
    def capture(
        cls,
        environ: Mapping[str, str],
        scope: SessionScope,
        ignore: Iterable[str] = (),
    ) -> Session:
        """Create a session whose baseline is the given live environment."""
        ignored = set(ignore)
        baseline = {
            name: value
            for name, value in environ.items()
            if not is_managed_variable(name) and name not in ignored
        }
        return cls(
            owner_pid=scope.owner_pid,
            scope=scope.token,
            baseline=baseline,
        )

    def latest_records(self) -> dict[str, ChangeRecord]:
        """Most recent record per variable name."""
        latest: dict[str, ChangeRecord] = {}
        for record in self.changes:
            latest[record.name] = record
        return latest

    def latest_record(self, name: str) -> ChangeRecord | None:
        for record in reversed(self.changes):
            if record.name == name:
                return record
        return None

    def copy(self) -> Session:
        """Independent copy, used for dry runs."""
        return Session(
            session_id=self.session_id,
            created_at=self.created_at,
            owner_pid=self.owner_pid,
            scope=self.scope,
            baseline=None if self.baseline is None else dict(self.baseline),
            changes=copy.deepcopy(self.changes),
            snapshots=copy.deepcopy(self.snapshots),
            snapshot_sequence=self.snapshot_sequence,
            active_profile=self.active_profile,
            profile_checksum=self.profile_checksum,
            profile_path=self.profile_path,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": "1",
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "owner_pid": self.owner_pid,
            "scope": self.scope,
            "baseline": None if self.baseline is None else dict(self.baseline),
            "changes": [c.to_dict() for c in self.changes],
            "snapshots": [s.to_dict() for s in self.snapshots],
            "snapshot_sequence": self.snapshot_sequence,
            "active_profile": self.active_profile,
            "profile_checksum": self.profile_checksum,
            "profile_path": self.profile_path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Session:
        """Rebuild a session; raises KeyError/ValueError/TypeError on bad data."""
        baseline = data.get("baseline")
        if baseline is not None:
            if not isinstance(baseline, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in baseline.items()
            ):
                raise ValueError("baseline must map names to string values")
        return cls(
            session_id=str(data["session_id"]),
            created_at=_parse_timestamp(data["created_at"]),
            owner_pid=int(data.get("owner_pid") or 0),
            scope=str(data.get("scope") or ""),
            baseline=baseline,
            changes=[ChangeRecord.from_dict(c) for c in data.get("changes", [])],
            snapshots=[AutoSnapshot.from_dict(s) for s in data.get("snapshots", [])],
            snapshot_sequence=int(data.get("snapshot_sequence") or 0),
            active_profile=data.get("active_profile"),
            profile_checksum=data.get("profile_checksum"),
            profile_path=data.get("profile_path"),
        )
