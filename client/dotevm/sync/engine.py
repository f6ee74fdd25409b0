"""Sync logic: replay queued operations, push unsynced rows, pull remote state.

One run per project, strictly sequential: the queue is replayed before new
work, each file is pushed before its versions, versions before rollbacks.
Conflicts resolve by last-writer-wins on updated_at; there is no merge.

Robustness principles:
- Only mark a version or rollback as synced after the server acknowledged it.
  An interrupted run leaves unsynced rows for the next one.
- Every remote endpoint is idempotent (upsert or insert-if-absent, delete of
  something absent is success), so re-sending after a partial failure is safe.
- Connectivity failures never abort with an error: the project gets a queued
  SYNC operation instead. Auth failures are reported separately so the caller
  can ask the user to log in.
- A failure on one file is recorded and the other files continue.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotevm.api.client import EvmAPI
from dotevm.errors import (
    AuthExpiredError,
    ConnectivityError,
    EvmError,
    NotFoundError,
    RemoteError,
    ValidationError,
)
from dotevm.session import Session
from dotevm.store.local import LocalStore, RollbackSnapshot, VersionSnapshot
from dotevm.store.models import (
    EnvFile,
    EnvVersion,
    PendingOperation,
    Project,
    RollbackRecord,
    as_utc,
    format_timestamp,
    parse_timestamp,
)
from dotevm.sync.operations import (
    DeletePayload,
    EntityType,
    RenamePayload,
    SyncPayload,
    decode_payload,
    encode_payload,
    entity_type,
    operation_type,
)
from dotevm.vcs import VersionControl

log = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]


class PullAction(str, Enum):
    WRITE_NEW = "write_new"
    RESTORE = "restore"
    ADOPT = "adopt"
    OVERWRITE = "overwrite"
    SKIP = "skip"


def decide_pull_action(
    on_disk: bool,
    local_updated_at: Optional[datetime],
    remote_updated_at: datetime,
) -> PullAction:
    """
    What pulling one remote file does, from where the file exists locally.
    local_updated_at is None when the local store has no row for the file.
    """
    in_db = local_updated_at is not None
    if not on_disk and not in_db:
        return PullAction.WRITE_NEW
    if not on_disk:
        return PullAction.RESTORE
    if not in_db:
        return PullAction.ADOPT
    if as_utc(remote_updated_at) > as_utc(local_updated_at):
        return PullAction.OVERWRITE
    return PullAction.SKIP


@dataclass
class ReplayReport:
    replayed: int = 0
    remaining: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class PushReport:
    files: int = 0
    versions: int = 0
    rollbacks: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class PullReport:
    actions: Dict[str, PullAction] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class SyncReport:
    replay: Optional[ReplayReport] = None
    push: Optional[PushReport] = None
    pull: Optional[PullReport] = None
    offline: bool = False
    queued: bool = False
    auth_required: bool = False

    @property
    def ok(self) -> bool:
        if self.offline or self.auth_required:
            return False
        return not (self.push and self.push.errors) and not (self.pull and self.pull.errors)


def _version_body(version: EnvVersion) -> Dict[str, Any]:
    return {
        "version_token": version.version_token,
        "encrypted_content": version.encrypted_content,
        "iv": version.iv,
        "tag": version.tag,
        "commit_message": version.commit_message,
        "author_email": version.author_email,
        "is_rollback": version.is_rollback,
        "created_at": format_timestamp(version.created_at),
    }


def _rollback_body(record: RollbackRecord) -> Dict[str, Any]:
    return {
        "from_version_token": record.from_version_token,
        "to_version_token": record.to_version_token,
        "reason": record.reason,
        "performed_by": record.performed_by,
        "created_at": format_timestamp(record.created_at),
    }


def _version_snapshots(remote: Dict[str, Any]) -> List[VersionSnapshot]:
    return [
        VersionSnapshot(
            version_token=v["version_token"],
            encrypted_content=v["encrypted_content"],
            iv=v["iv"],
            tag=v["tag"],
            commit_message=v.get("commit_message"),
            author_email=v.get("author_email") or "",
            created_at=parse_timestamp(v["created_at"]),
            is_rollback=bool(v.get("is_rollback", False)),
        )
        for v in remote.get("versions") or []
    ]


def _rollback_snapshots(remote: Dict[str, Any]) -> List[RollbackSnapshot]:
    return [
        RollbackSnapshot(
            from_version_token=r["from_version_token"],
            to_version_token=r["to_version_token"],
            reason=r.get("reason"),
            performed_by=r.get("performed_by") or "",
            created_at=parse_timestamp(r["created_at"]),
        )
        for r in remote.get("rollbacks") or []
    ]


class SyncReconciler:
    """Reconciles one user's local store with the remote store."""

    def __init__(
        self,
        api: EvmAPI,
        store: LocalStore,
        session: Session,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._api = api
        self._store = store
        self._session = session
        self._vcs = VersionControl(store, session)
        self._on_status = on_status

    def _status(self, message: str) -> None:
        log.info(message)
        if self._on_status:
            self._on_status(message)

    # --- Phase 1: Replay pending operations ---

    def replay_pending(self) -> ReplayReport:
        """
        Resend queued operations oldest first. Successful ones are deleted; failed ones stay.
        Stops at the first connectivity or auth failure (re-raised) so queue order holds.
        """
        report = ReplayReport()
        ops = self._store.list_pending_operations(self._session.user_id).unwrap()
        if ops:
            self._status(f"Replaying {len(ops)} pending operation(s)")
        for index, op in enumerate(ops):
            try:
                payload = decode_payload(op.payload)
            except ValidationError as e:
                log.error("Dropping unreadable pending operation %d: %s", op.id, e)
                self._store.remove_pending_operation(op.id).unwrap()
                continue
            try:
                self._apply(op, payload)
            except (ConnectivityError, AuthExpiredError):
                report.remaining = len(ops) - index
                log.warning("Replay stopped at operation %d; %d left in queue", op.id, report.remaining)
                raise
            except EvmError as e:
                log.warning("Pending %s operation %d failed: %s", op.operation_type, op.id, e)
                report.errors.append(f"{op.operation_type}: {e}")
                report.remaining += 1
                continue
            self._store.remove_pending_operation(op.id).unwrap()
            report.replayed += 1
            log.info("Replayed pending %s operation %d", op.operation_type, op.id)
        return report

    def _apply(self, op: PendingOperation, payload) -> None:
        if isinstance(payload, RenamePayload):
            if payload.entity == EntityType.PROJECT:
                self._api.rename_project(payload.old_name, payload.new_name)
            else:
                self._api.rename_env_file(payload.project_name, payload.old_name, payload.new_name)
        elif isinstance(payload, DeletePayload):
            if payload.entity == EntityType.PROJECT:
                self._api.delete_project(payload.project_name)
            else:
                self._api.delete_env_file(payload.project_name, payload.file_name or "")
        elif isinstance(payload, SyncPayload):
            found = (
                self._store.get_project(op.project_id)
                if op.project_id is not None
                else self._store.get_project_by_name(self._session.user_id, payload.project_name)
            )
            if not found.ok:
                if isinstance(found.error, NotFoundError):
                    log.info("Project %s no longer exists locally; nothing to sync", payload.project_name)
                    return
                raise found.error
            pushed = self.push(found.value)
            if pushed.errors:
                raise RemoteError(f"{len(pushed.errors)} file(s) failed to push")
        else:
            raise TypeError(f"Unknown payload type: {type(payload).__name__}")

    # --- Phase 2: Push ---

    def push(self, project: Project) -> PushReport:
        """
        Upsert every file, then its unsynced versions and rollbacks in creation order.
        Raises ConnectivityError / AuthExpiredError; other per-file failures are collected.
        """
        report = PushReport()
        files = self._store.list_env_files(project.id).unwrap()
        self._status(f"Pushing {len(files)} file(s) of {project.name}")
        for env_file in files:
            try:
                self._push_file(project, env_file, report)
            except (ConnectivityError, AuthExpiredError):
                raise
            except EvmError as e:
                log.error("Push of %s failed: %s", env_file.name, e)
                report.errors[env_file.name] = str(e)
        log.info(
            "Push of %s done: files=%d versions=%d rollbacks=%d errors=%d",
            project.name, report.files, report.versions, report.rollbacks, len(report.errors),
        )
        return report

    def _push_file(self, project: Project, env_file: EnvFile, report: PushReport) -> None:
        self._api.upsert_env_file(
            project.name,
            env_file.name,
            env_file.encrypted_content,
            env_file.iv,
            env_file.tag,
            created_at=format_timestamp(env_file.created_at),
            updated_at=format_timestamp(env_file.updated_at),
        )
        for version in self._store.list_unsynced_versions(env_file.id).unwrap():
            self._api.push_version(project.name, env_file.name, _version_body(version))
            self._store.mark_version_synced(version.id).unwrap()
            report.versions += 1
        for record in self._store.list_unsynced_rollbacks(env_file.id).unwrap():
            self._api.push_rollback(project.name, env_file.name, _rollback_body(record))
            self._store.mark_rollback_synced(record.id).unwrap()
            report.rollbacks += 1
        report.files += 1

    # --- Phase 3: Pull ---

    def pull(self, project: Project, directory: Optional[Path] = None) -> PullReport:
        """
        Bring remote files into the store and onto disk (last writer wins on updated_at).
        Pulled files get their whole version chain and rollback history replaced.
        """
        report = PullReport()
        directory = Path(directory or project.directory_path or Path.cwd())
        try:
            remote_files = self._api.list_project_files(project.name)
        except NotFoundError:
            log.info("Project %s does not exist remotely yet", project.name)
            return report
        local = {f.name: f for f in self._store.list_env_files(project.id).unwrap()}
        self._status(f"Pulling {len(remote_files)} remote file(s) of {project.name}")
        for remote in remote_files:
            name = remote.get("file_name") or "?"
            try:
                action = self._pull_file(project, directory, remote, local.get(name))
            except (ConnectivityError, AuthExpiredError):
                raise
            except (EvmError, OSError, KeyError, ValueError) as e:
                log.error("Pull of %s failed: %s", name, e)
                report.errors[name] = str(e)
                continue
            report.actions[name] = action
        return report

    def _pull_file(
        self,
        project: Project,
        directory: Path,
        remote: Dict[str, Any],
        env_file: Optional[EnvFile],
    ) -> PullAction:
        name = remote["file_name"]
        if "/" in name or "\\" in name:
            raise ValidationError(f"Refusing remote file name {name!r}")
        path = directory / name
        remote_updated = parse_timestamp(remote["updated_at"])
        action = decide_pull_action(
            path.exists(), env_file.updated_at if env_file else None, remote_updated
        )
        if action == PullAction.SKIP:
            return action
        if (
            action == PullAction.RESTORE
            and env_file is not None
            and as_utc(env_file.updated_at) >= as_utc(remote_updated)
        ):
            # local history is at least as new: recover the file from the local head
            path.write_text(self._vcs.decrypt_file(env_file), encoding="utf-8")
            log.info("Restored %s from local head", name)
            return action

        # decrypt first so a bad payload changes nothing
        plaintext = self._vcs.cipher.decrypt(remote["encrypted_content"], remote["iv"], remote["tag"])
        self._store.restore_file_history(
            project.id,
            name,
            remote["encrypted_content"],
            remote["iv"],
            remote["tag"],
            updated_at=remote_updated,
            versions=_version_snapshots(remote),
            rollbacks=_rollback_snapshots(remote),
            created_at=parse_timestamp(remote.get("created_at")),
        ).unwrap()
        if action != PullAction.ADOPT:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(plaintext, encoding="utf-8")
        log.info("Pulled %s (%s)", name, action.value)
        return action

    # --- Full run ---

    def queue_sync(self, project: Project) -> None:
        """Queue a SYNC for project unless one is already waiting."""
        payload = SyncPayload(project_name=project.name)
        self._store.add_pending_operation(
            self._session.user_id,
            operation_type(payload).value,
            entity_type(payload).value,
            encode_payload(payload),
            entity_id=project.id,
            project_id=project.id,
            deduplicate=True,
        ).unwrap()

    def run(
        self,
        project: Project,
        directory: Optional[Path] = None,
        push: bool = True,
        pull: bool = True,
    ) -> SyncReport:
        """Replay, push, pull. Never raises for connectivity or auth failures."""
        report = SyncReport()
        if not self._session.is_online:
            log.info("Session is offline; queueing sync for %s", project.name)
            report.offline = True
            report.queued = True
            self.queue_sync(project)
            return report
        try:
            report.replay = self.replay_pending()
            if push:
                report.push = self.push(project)
            if pull:
                report.pull = self.pull(project, directory)
        except ConnectivityError as e:
            log.warning("Sync of %s went offline: %s", project.name, e)
            report.offline = True
            if push:
                self.queue_sync(project)
                report.queued = True
        except AuthExpiredError as e:
            log.warning("Sync of %s needs re-authentication: %s", project.name, e)
            report.auth_required = True
        return report
