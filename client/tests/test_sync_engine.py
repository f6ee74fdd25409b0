"""Tests for the sync reconciler: replay, push, pull and full runs against a mocked API."""

from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from dotevm.errors import AuthExpiredError, ConnectivityError, ConstraintError, NotFoundError, RemoteError
from dotevm.session import Session
from dotevm.store.models import format_timestamp, utcnow
from dotevm.sync.engine import PullAction, SyncReconciler, decide_pull_action
from dotevm.sync.operations import (
    DeletePayload,
    EntityType,
    RenamePayload,
    SyncPayload,
    encode_payload,
)
from dotevm.vcs import VersionControl

T0 = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def online(session) -> Session:
    return session.with_tokens("access", "refresh")


@pytest.fixture
def api() -> MagicMock:
    mock = MagicMock()
    mock.list_project_files.return_value = []
    return mock


@pytest.fixture
def vcs(store, online) -> VersionControl:
    return VersionControl(store, online)


def _remote_file(vcs: VersionControl, content: str, updated_at: datetime, name=".env", versions=None) -> dict:
    sealed = vcs.cipher.encrypt(content)
    return {
        "file_name": name,
        "encrypted_content": sealed.ciphertext,
        "iv": sealed.iv,
        "tag": sealed.tag,
        "created_at": format_timestamp(T0),
        "updated_at": format_timestamp(updated_at),
        "versions": versions
        if versions is not None
        else [
            {
                "version_token": "f" * 40,
                "encrypted_content": sealed.ciphertext,
                "iv": sealed.iv,
                "tag": sealed.tag,
                "commit_message": "remote",
                "author_email": "dev@example.com",
                "is_rollback": False,
                "created_at": format_timestamp(updated_at),
            }
        ],
        "rollbacks": [],
    }


# --- Pull decision table ---


def test_decide_pull_action() -> None:
    older, newer = T0, T0 + timedelta(seconds=1)
    assert decide_pull_action(False, None, newer) == PullAction.WRITE_NEW
    assert decide_pull_action(False, older, newer) == PullAction.RESTORE
    assert decide_pull_action(True, None, newer) == PullAction.ADOPT
    assert decide_pull_action(True, older, newer) == PullAction.OVERWRITE
    assert decide_pull_action(True, newer, older) == PullAction.SKIP
    assert decide_pull_action(True, older, older) == PullAction.SKIP


# --- Push ---


def test_push_sends_file_then_versions_in_order(api, store, online, vcs, project) -> None:
    v1 = vcs.commit(project, ".env", "A=1").unwrap()
    v2 = vcs.commit(project, ".env", "A=2").unwrap()
    report = SyncReconciler(api, store, online).push(project)

    assert (report.files, report.versions, report.rollbacks) == (1, 2, 0)
    api.upsert_env_file.assert_called_once()
    tokens = [c.args[2]["version_token"] for c in api.push_version.call_args_list]
    assert tokens == [v1.version_token, v2.version_token]
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert store.list_unsynced_versions(env_file.id).unwrap() == []

    # a second push only re-upserts the file
    again = SyncReconciler(api, store, online).push(project)
    assert again.versions == 0
    assert api.push_version.call_count == 2


def test_push_rollbacks(api, store, online, vcs, project) -> None:
    first = vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env", "A=2").unwrap()
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    vcs.rollback(env_file, first.version_token, reason="oops").unwrap()

    report = SyncReconciler(api, store, online).push(project)
    assert report.versions == 3
    assert report.rollbacks == 1
    body = api.push_rollback.call_args.args[2]
    assert body["to_version_token"] == first.version_token
    assert body["reason"] == "oops"
    pushed = [c.args[2] for c in api.push_version.call_args_list]
    assert pushed[-1]["is_rollback"] is True


def test_push_failure_on_one_file_does_not_block_others(api, store, online, vcs, project) -> None:
    vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env.prod", "P=1").unwrap()

    def _upsert(project_name, file_name, *args, **kwargs):
        if file_name == ".env":
            raise RemoteError("server error", 500)
        return {}

    api.upsert_env_file.side_effect = _upsert
    report = SyncReconciler(api, store, online).push(project)
    assert list(report.errors) == [".env"]
    assert report.files == 1
    failed = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert len(store.list_unsynced_versions(failed.id).unwrap()) == 1


def test_push_interrupted_leaves_rest_unsynced(api, store, online, vcs, project) -> None:
    vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env", "A=2").unwrap()
    api.push_version.side_effect = [{"created": True}, ConnectivityError("down")]
    with pytest.raises(ConnectivityError):
        SyncReconciler(api, store, online).push(project)
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert len(store.list_unsynced_versions(env_file.id).unwrap()) == 1


# --- Full run: offline queueing and recovery ---


def test_offline_session_queues_one_sync(api, store, session, project) -> None:
    VersionControl(store, session).commit(project, ".env", "A=1").unwrap()
    reconciler = SyncReconciler(api, store, session)
    first = reconciler.run(project)
    second = reconciler.run(project)

    assert first.offline and first.queued and not first.ok
    assert second.queued
    ops = store.list_pending_operations(session.user_id).unwrap()
    assert [op.operation_type for op in ops] == ["SYNC"]
    api.upsert_env_file.assert_not_called()


def test_connectivity_failure_queues_then_next_sync_drains(api, store, online, vcs, project, workdir: Path) -> None:
    vcs.commit(project, ".env", "A=1").unwrap()
    api.upsert_env_file.side_effect = ConnectivityError("down")
    report = SyncReconciler(api, store, online).run(project, workdir)
    assert report.offline and report.queued
    assert len(store.list_pending_operations(online.user_id).unwrap()) == 1

    api.upsert_env_file.side_effect = None
    api.upsert_env_file.return_value = {}
    report = SyncReconciler(api, store, online).run(project, workdir)
    assert report.ok
    assert report.replay.replayed == 1
    assert store.list_pending_operations(online.user_id).unwrap() == []
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert store.list_unsynced_versions(env_file.id).unwrap() == []


def test_auth_expired_is_reported_not_queued(api, store, online, vcs, project) -> None:
    vcs.commit(project, ".env", "A=1").unwrap()
    api.upsert_env_file.side_effect = AuthExpiredError("expired")
    report = SyncReconciler(api, store, online).run(project)
    assert report.auth_required
    assert not report.ok
    assert store.list_pending_operations(online.user_id).unwrap() == []


def test_pull_only_run_does_not_queue_on_connectivity(api, store, online, project) -> None:
    api.list_project_files.side_effect = ConnectivityError("down")
    report = SyncReconciler(api, store, online).run(project, push=False)
    assert report.offline
    assert not report.queued


# --- Replay ---


def _queue(store, user_id: int, payload, project_id=None) -> None:
    op_type = {"rename": "RENAME", "delete": "DELETE", "sync": "SYNC"}[payload.kind]
    store.add_pending_operation(
        user_id, op_type, "PROJECT", encode_payload(payload), project_id=project_id
    ).unwrap()


def test_replay_dispatches_each_payload(api, store, online, project) -> None:
    _queue(store, online.user_id, RenamePayload(entity=EntityType.PROJECT, project_name="a", old_name="a", new_name="b"))
    _queue(store, online.user_id, RenamePayload(entity=EntityType.FILE, project_name="b", old_name=".env", new_name=".env.x"))
    _queue(store, online.user_id, DeletePayload(entity=EntityType.FILE, project_name="b", file_name=".env.x"))
    _queue(store, online.user_id, DeletePayload(entity=EntityType.PROJECT, project_name="old"))
    _queue(store, online.user_id, SyncPayload(project_name=project.name), project_id=project.id)

    report = SyncReconciler(api, store, online).replay_pending()
    assert report.replayed == 5
    assert report.remaining == 0
    api.rename_project.assert_called_once_with("a", "b")
    api.rename_env_file.assert_called_once_with("b", ".env", ".env.x")
    api.delete_env_file.assert_called_once_with("b", ".env.x")
    api.delete_project.assert_called_once_with("old")
    assert store.list_pending_operations(online.user_id).unwrap() == []


def test_replay_stops_at_connectivity_failure(api, store, online) -> None:
    _queue(store, online.user_id, RenamePayload(entity=EntityType.PROJECT, project_name="a", old_name="a", new_name="b"))
    _queue(store, online.user_id, DeletePayload(entity=EntityType.PROJECT, project_name="c"))
    api.rename_project.side_effect = ConnectivityError("down")
    with pytest.raises(ConnectivityError):
        SyncReconciler(api, store, online).replay_pending()
    api.delete_project.assert_not_called()
    assert len(store.list_pending_operations(online.user_id).unwrap()) == 2


def test_replay_keeps_failed_ops_and_continues(api, store, online) -> None:
    _queue(store, online.user_id, RenamePayload(entity=EntityType.PROJECT, project_name="a", old_name="a", new_name="b"))
    _queue(store, online.user_id, DeletePayload(entity=EntityType.PROJECT, project_name="c"))
    api.rename_project.side_effect = ConstraintError("exists")
    report = SyncReconciler(api, store, online).replay_pending()
    assert report.replayed == 1
    assert report.remaining == 1
    remaining = store.list_pending_operations(online.user_id).unwrap()
    assert [op.operation_type for op in remaining] == ["RENAME"]


def test_replay_drops_unreadable_payload(api, store, online) -> None:
    store.add_pending_operation(online.user_id, "SYNC", "PROJECT", "{garbage").unwrap()
    report = SyncReconciler(api, store, online).replay_pending()
    assert report.replayed == 0
    assert store.list_pending_operations(online.user_id).unwrap() == []


def test_replay_sync_for_deleted_project_is_done(api, store, online) -> None:
    _queue(store, online.user_id, SyncPayload(project_name="gone"), project_id=4242)
    report = SyncReconciler(api, store, online).replay_pending()
    assert report.replayed == 1
    api.upsert_env_file.assert_not_called()


# --- Pull ---


def test_pull_writes_new_files(api, store, online, vcs, project, workdir: Path) -> None:
    api.list_project_files.return_value = [_remote_file(vcs, "REMOTE=1\n", T0)]
    report = SyncReconciler(api, store, online).pull(project, workdir)

    assert report.actions == {".env": PullAction.WRITE_NEW}
    assert (workdir / ".env").read_text(encoding="utf-8") == "REMOTE=1\n"
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    versions = store.list_versions(env_file.id).unwrap()
    assert [v.version_token for v in versions] == ["f" * 40]
    assert versions[0].synced_to_server is True
    assert env_file.updated_at == T0


def test_pull_last_writer_wins(api, store, online, vcs, project, workdir: Path) -> None:
    vcs.commit(project, ".env", "LOCAL=1\n").unwrap()
    (workdir / ".env").write_text("LOCAL=1\n", encoding="utf-8")

    api.list_project_files.return_value = [_remote_file(vcs, "OLD=1\n", utcnow() - timedelta(days=1))]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {".env": PullAction.SKIP}
    assert (workdir / ".env").read_text(encoding="utf-8") == "LOCAL=1\n"

    newer = utcnow() + timedelta(days=1)
    api.list_project_files.return_value = [_remote_file(vcs, "NEW=1\n", newer)]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {".env": PullAction.OVERWRITE}
    assert (workdir / ".env").read_text(encoding="utf-8") == "NEW=1\n"
    # history was replaced wholesale by the remote chain
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert [v.version_token for v in store.list_versions(env_file.id).unwrap()] == ["f" * 40]


def test_pull_adopts_untracked_file_without_touching_disk(api, store, online, vcs, project, workdir: Path) -> None:
    (workdir / ".env").write_text("MINE=1\n", encoding="utf-8")
    api.list_project_files.return_value = [_remote_file(vcs, "THEIRS=1\n", T0)]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {".env": PullAction.ADOPT}
    assert (workdir / ".env").read_text(encoding="utf-8") == "MINE=1\n"
    assert store.get_env_file_by_name(project.id, ".env").ok


def test_pull_restores_missing_file_from_newer_local_head(api, store, online, vcs, project, workdir: Path) -> None:
    vcs.commit(project, ".env", "LOCAL=2\n").unwrap()
    api.list_project_files.return_value = [_remote_file(vcs, "REMOTE=1\n", T0)]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {".env": PullAction.RESTORE}
    assert (workdir / ".env").read_text(encoding="utf-8") == "LOCAL=2\n"


def test_pull_restores_missing_file_from_newer_remote(api, store, online, vcs, project, workdir: Path) -> None:
    vcs.commit(project, ".env", "LOCAL=1\n").unwrap()
    api.list_project_files.return_value = [_remote_file(vcs, "REMOTE=2\n", utcnow() + timedelta(days=1))]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {".env": PullAction.RESTORE}
    assert (workdir / ".env").read_text(encoding="utf-8") == "REMOTE=2\n"


def test_pull_tampered_remote_changes_nothing(api, store, online, vcs, project, workdir: Path) -> None:
    remote = _remote_file(vcs, "REMOTE=1\n", T0)
    remote["tag"] = "00" * 16
    api.list_project_files.return_value = [remote]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert ".env" in report.errors
    assert not (workdir / ".env").exists()
    assert not store.get_env_file_by_name(project.id, ".env").ok


def test_pull_refuses_path_names(api, store, online, vcs, project, workdir: Path) -> None:
    api.list_project_files.return_value = [_remote_file(vcs, "X=1\n", T0, name="../.env")]
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert "../.env" in report.errors
    assert not (workdir.parent / ".env").exists()


def test_pull_unknown_remote_project(api, store, online, project, workdir: Path) -> None:
    api.list_project_files.side_effect = NotFoundError("Project not found")
    report = SyncReconciler(api, store, online).pull(project, workdir)
    assert report.actions == {}
    assert report.errors == {}
