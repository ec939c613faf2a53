from __future__ import annotations

from envision.engine.models import Operation
from envision.shared.models.session import ChangeRecord, Session
from envision.shared.services.snapshot import SnapshotHistory, snapshot_name


def _record(name: str, value: str) -> ChangeRecord:
    return ChangeRecord(name=name, operation=Operation.SET, previous_value=None, new_value=value)


def test_snapshot_names_are_sequential() -> None:
    assert snapshot_name(1) == "auto-0001"
    assert snapshot_name(42) == "auto-0042"


def test_capture_prunes_oldest_beyond_threshold() -> None:
    session = Session(baseline={})
    history = SnapshotHistory(session, max_snapshots=3)

    for i in range(5):
        history.capture(f"set V{i}")

    assert [s.name for s in history.list()] == ["auto-0005", "auto-0004", "auto-0003"]
    assert len(session.snapshots) == 3
    assert session.snapshot_sequence == 5


def test_capture_copies_change_log() -> None:
    session = Session(baseline={})
    session.changes.append(_record("A", "1"))
    session.active_profile = "dev"
    history = SnapshotHistory(session)

    snap = history.capture("set B")
    session.changes.append(_record("B", "2"))
    session.changes[0].new_value = "changed"

    assert [r.name for r in snap.changes] == ["A"]
    assert snap.changes[0].new_value == "1"
    assert snap.active_profile == "dev"
    assert history.get("auto-0001") is snap
    assert history.get("auto-0099") is None


def test_zero_threshold_disables_snapshots() -> None:
    session = Session(baseline={})
    history = SnapshotHistory(session, max_snapshots=0)

    assert history.enabled is False
    assert history.capture("set A") is None
    assert session.snapshots == []
    assert session.snapshot_sequence == 0


def test_sequence_survives_pruning_across_histories() -> None:
    session = Session(baseline={})
    SnapshotHistory(session, max_snapshots=1).capture("first")
    snap = SnapshotHistory(session, max_snapshots=1).capture("second")

    assert snap.name == "auto-0002"
    assert [s.name for s in session.snapshots] == ["auto-0002"]
