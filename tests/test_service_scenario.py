from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import pytest

from envision.engine.config import EnvisionConfig
from envision.engine.environment import InMemoryEnvironment
from envision.engine.errors import (
    BaselineMissingError,
    NotInitializedError,
    OperationCancelledError,
    ProfileInvalidExtensionError,
    ProfileNotFoundError,
    ProfileScriptFailureError,
    StorageCorruptError,
)
from envision.engine.models import Category, LoadStatus, Operation
from envision.engine.service import EnvisionService
from envision.shared.formatters.diff import render_human
from envision.shared.models.session import ChangeRecord, Session, SessionScope
from envision.shared.services.persistence import SessionStore


class FakeExecutor:
    def __init__(self, assignments: dict[str, str | None]) -> None:
        self.assignments = assignments

    def run(self, path: Path, environ: Mapping[str, str]) -> dict[str, str | None]:
        return dict(self.assignments)


class FailingExecutor:
    def run(self, path: Path, environ: Mapping[str, str]) -> dict[str, str | None]:
        raise ProfileScriptFailureError(path, "boom", 3)


def _make_service(
    tmp_path: Path,
    live: dict[str, str] | None = None,
    assignments: dict[str, str | None] | None = None,
    **config_overrides,
) -> EnvisionService:
    config = EnvisionConfig(**config_overrides)
    store = SessionStore(tmp_path / "data", SessionScope(token="test-shell", owner_pid=1))
    env = InMemoryEnvironment(
        {"HOME": "/home/u", "PATH": "/usr/bin"} if live is None else live,
        readonly=config.readonly_variables,
    )
    return EnvisionService(
        config, store, env, executor=FakeExecutor(assignments or {}), cwd=tmp_path,
    )


def test_home_path_scenario(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    init = service.init()
    assert init.captured == 2

    service.set("FOO", "bar")
    record = service.store.load().session.changes[-1]
    assert (record.operation, record.name, record.previous_value, record.new_value) == (
        Operation.SET, "FOO", None, "bar",
    )
    report = service.diff()
    assert render_human(report.entries, report.unchanged).plain.splitlines() == [
        "+ FOO=bar (tracked)",
        "2 unchanged",
    ]

    service.unset("HOME")
    record = service.store.load().session.changes[-1]
    assert (record.operation, record.name, record.previous_value) == (
        Operation.UNSET, "HOME", "/home/u",
    )
    report = service.diff()
    assert "- HOME=/home/u (tracked)" in render_human(report.entries).plain

    plan = service.preview_clear()
    assert {(s.name, s.action.value) for s in plan.steps} == {
        ("FOO", "remove"), ("HOME", "restore"),
    }

    cleared = service.clear(force=True)
    assert cleared.ok
    assert service.env.items() == {"HOME": "/home/u", "PATH": "/usr/bin"}

    again = service.clear()
    assert again.nothing_to_clear is True


def test_status_reports_clean_dirty_and_drift(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    service.init()
    service.set("FOO", "bar")

    status = service.status()
    assert status.storage_status is LoadStatus.OK
    assert status.summary.tracked == 1
    assert status.exit_code == 0

    service.env.set("FOO", "external")
    service.env.set("EXTRA", "1")
    status = service.status()
    assert status.summary.drifted == 1
    assert status.summary.untracked == 1
    assert status.dirty is True
    assert status.exit_code == 1


def test_diff_filters(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    service.init()
    service.set("PYTHONPATH", "/src")
    service.env.set("PYENV_ROOT", "/opt/pyenv")

    assert [e.name for e in service.diff(tracked=True).entries] == ["PYTHONPATH"]
    assert [e.name for e in service.diff(untracked=True).entries] == ["PYENV_ROOT"]
    assert [e.name for e in service.diff(pattern="PY*", untracked=True).entries] == ["PYENV_ROOT"]

    everything = service.diff(show_all=True)
    assert [e.name for e in everything.entries] == ["HOME", "PATH", "PYENV_ROOT", "PYTHONPATH"]
    assert everything.unchanged == 0


def test_commands_require_initialized_session(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    with pytest.raises(NotInitializedError):
        service.status()
    with pytest.raises(NotInitializedError):
        service.set("FOO", "bar")
    with pytest.raises(NotInitializedError):
        service.clear(force=True)
    assert service.env.get("FOO") is None


def test_corrupt_storage_degrades_reads_and_blocks_writes(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    path = service.store.path
    path.parent.mkdir(parents=True)
    path.write_text("{broken", encoding="utf-8")

    status = service.status()
    assert status.storage_status is LoadStatus.CORRUPT
    assert status.exit_code == 3
    assert service.diff().storage_status is LoadStatus.CORRUPT

    with pytest.raises(StorageCorruptError):
        service.set("FOO", "bar")
    with pytest.raises(StorageCorruptError):
        service.unset("HOME")
    with pytest.raises(StorageCorruptError):
        service.clear(force=True)
    with pytest.raises(StorageCorruptError):
        service.load_profile(tmp_path / "dev.profile.sh", assume_yes=True)
    assert service.env.get("HOME") == "/home/u"
    assert path.read_text(encoding="utf-8") == "{broken"


def test_session_without_baseline_cannot_be_mutated(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    service.store.save(Session(session_id="deadbeef", baseline=None))

    with pytest.raises(BaselineMissingError):
        service.set("FOO", "bar")
    with pytest.raises(BaselineMissingError):
        service.preview_clear()


def test_clear_requires_confirmation_unless_forced(tmp_path: Path) -> None:
    service = _make_service(tmp_path)
    service.init()
    service.set("FOO", "bar")

    with pytest.raises(OperationCancelledError):
        service.clear()
    with pytest.raises(OperationCancelledError):
        service.clear(confirm=lambda plan: False)
    assert service.env.get("FOO") == "bar"

    seen = []
    report = service.clear(confirm=lambda plan: seen.append(len(plan.steps)) or True)
    assert seen == [1]
    assert report.removed == 1
    assert service.store.load().session.changes == []


def test_partial_clear_persists_unresolved_records(tmp_path: Path) -> None:
    first = _make_service(tmp_path)
    first.init()
    session = first.store.load().session
    session.changes.append(ChangeRecord(
        name="LOCKED", operation=Operation.SET, previous_value=None, new_value="1",
    ))
    first.store.save(session)

    service = _make_service(
        tmp_path,
        live={"HOME": "/home/u", "PATH": "/usr/bin", "LOCKED": "1"},
        readonly_variables=["LOCKED"],
    )
    service.set("FOO", "bar")

    report = service.clear(force=True)

    assert report.unresolved == ["LOCKED"]
    assert [r.name for r in service.store.load().session.changes] == ["LOCKED"]
    assert service.env.get("FOO") is None
    assert service.env.get("LOCKED") == "1"


def test_load_profile_creates_session_and_tracks_changes(tmp_path: Path) -> None:
    profile = tmp_path / "dev.profile.sh"
    profile.write_text("# envision:name=dev\nexport FOO=bar\n", encoding="utf-8")
    service = _make_service(tmp_path, assignments={"FOO": "bar", "HOME": None})

    result = service.load_profile("dev.profile.sh", assume_yes=True)

    assert result.session_created is True
    assert result.changed == 2
    session = service.store.load().session
    assert dict(session.baseline) == {"HOME": "/home/u", "PATH": "/usr/bin"}
    assert session.active_profile == "dev"
    assert {r.source for r in session.changes} == {"profile:dev"}
    assert service.diff(tracked=True).entries[0].category is Category.TRACKED_SET


def test_profile_dry_run_does_not_create_or_touch_session(tmp_path: Path) -> None:
    profile = tmp_path / "dev.profile.sh"
    profile.write_text("export FOO=bar\n", encoding="utf-8")
    service = _make_service(tmp_path, assignments={"FOO": "bar"})

    result = service.load_profile(profile, dry_run=True, assume_yes=True)

    assert result.changed == 1
    assert not service.store.exists()
    assert service.env.get("FOO") is None


def test_auto_snapshots_are_bounded(tmp_path: Path) -> None:
    service = _make_service(tmp_path, max_auto_snapshots=2)
    service.init()
    for i in range(4):
        service.set("COUNTER", str(i))

    assert [s.name for s in service.snapshots()] == ["auto-0004", "auto-0003"]


def test_rejected_profile_leaves_no_session_behind(tmp_path: Path) -> None:
    (tmp_path / "dev.txt").write_text("export FOO=bar\n", encoding="utf-8")
    (tmp_path / "dev.profile.sh").write_text("export FOO=bar\n", encoding="utf-8")
    service = _make_service(tmp_path, assignments={"FOO": "bar"})

    with pytest.raises(ProfileNotFoundError):
        service.load_profile("missing.profile.sh", assume_yes=True)
    assert service.store.load().status is LoadStatus.NOT_FOUND

    with pytest.raises(ProfileInvalidExtensionError):
        service.load_profile("dev.txt", assume_yes=True)
    assert service.store.load().status is LoadStatus.NOT_FOUND

    with pytest.raises(OperationCancelledError):
        service.load_profile("dev.profile.sh", confirm=lambda profile: False)
    assert service.store.load().status is LoadStatus.NOT_FOUND
    assert service.env.get("FOO") is None

    # A plain init still works afterwards.
    assert service.init().outcome == "created"


def test_failing_profile_script_leaves_no_session_behind(tmp_path: Path) -> None:
    (tmp_path / "dev.profile.sh").write_text("exit 3\n", encoding="utf-8")
    config = EnvisionConfig()
    store = SessionStore(tmp_path / "data", SessionScope(token="test-shell", owner_pid=1))
    env = InMemoryEnvironment({"HOME": "/home/u"})
    service = EnvisionService(config, store, env, executor=FailingExecutor(), cwd=tmp_path)

    with pytest.raises(ProfileScriptFailureError) as exc_info:
        service.load_profile("dev.profile.sh", assume_yes=True)

    assert exc_info.value.exit_code == 3
    assert store.load().status is LoadStatus.NOT_FOUND


def test_profile_created_session_cleans_up_stale_records(tmp_path: Path) -> None:
    (tmp_path / "dev.profile.sh").write_text("export FOO=bar\n", encoding="utf-8")
    service = _make_service(tmp_path, assignments={"FOO": "bar"})
    stale = service.store.sessions_dir / "999999999.json"
    stale.parent.mkdir(parents=True)
    stale.write_text("{}", encoding="utf-8")

    result = service.load_profile("dev.profile.sh", assume_yes=True)

    assert result.session_created is True
    assert not stale.exists()
    assert service.store.load().status is LoadStatus.OK
