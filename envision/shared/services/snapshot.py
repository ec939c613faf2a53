"""Auto-snapshot history: copies of tracked state taken before mutations.

Snapshots live inside the session record. The baseline is never a
snapshot and is never pruned.
"""
from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone

from envision.shared.models.session import AutoSnapshot, Session

logger = logging.getLogger(__name__)

DEFAULT_MAX_SNAPSHOTS = 10


def snapshot_name(sequence: int) -> str:
    return f"auto-{sequence:04d}"


class SnapshotHistory:
    """Bounded list of auto-snapshots on one session."""

    def __init__(self, session: Session, max_snapshots: int = DEFAULT_MAX_SNAPSHOTS) -> None:
        self._session = session
        self._max = max(0, max_snapshots)

    @property
    def enabled(self) -> bool:
        return self._max > 0

    @property
    def max_snapshots(self) -> int:
        return self._max

    def capture(self, reason: str) -> AutoSnapshot | None:
        """Record the current change log and active profile, then prune.

        Returns None when auto-snapshots are disabled.
        """
        if not self.enabled:
            return None
        session = self._session
        session.snapshot_sequence += 1
        snap = AutoSnapshot(
            name=snapshot_name(session.snapshot_sequence),
            sequence=session.snapshot_sequence,
            created_at=datetime.now(timezone.utc),
            reason=reason,
            changes=copy.deepcopy(session.changes),
            active_profile=session.active_profile,
        )
        session.snapshots.append(snap)
        logger.debug("Captured snapshot %s (%s)", snap.name, reason)
        self.prune()
        return snap

    def prune(self) -> int:
        """Drop the oldest snapshots beyond the threshold."""
        snapshots = self._session.snapshots
        excess = len(snapshots) - self._max
        if excess <= 0:
            return 0
        snapshots.sort(key=lambda s: s.sequence)
        removed = snapshots[:excess]
        del snapshots[:excess]
        logger.debug(
            "Pruned %d snapshot(s): %s",
            len(removed), ", ".join(s.name for s in removed),
        )
        return len(removed)

    def list(self) -> list[AutoSnapshot]:
        """Newest first."""
        return sorted(self._session.snapshots, key=lambda s: s.sequence, reverse=True)

    def get(self, name: str) -> AutoSnapshot | None:
        for snap in self._session.snapshots:
            if snap.name == name:
                return snap
        return None
