"""Project management: init, rename and remove projects and files, locally and remotely."""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from dotevm.api.client import EvmAPI
from dotevm.errors import (
    AuthExpiredError,
    ConnectivityError,
    EvmError,
    NotFoundError,
    Result,
    ValidationError,
)
from dotevm.session import Session
from dotevm.store.local import LocalStore
from dotevm.store.models import EnvFile, Project
from dotevm.sync.operations import (
    DeletePayload,
    EntityType,
    RenamePayload,
    encode_payload,
    entity_type,
    operation_type,
)
from dotevm.workspace import validate_file_name

log = logging.getLogger(__name__)

_PROJECT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")


class RemoteOutcome(str, Enum):
    SYNCED = "synced"
    QUEUED = "queued"
    AUTH_REQUIRED = "auth_required"
    LOCAL_ONLY = "local_only"
    FAILED = "failed"


@dataclass(frozen=True)
class ChangeResult:
    """Outcome of a change applied locally and, where requested, remotely."""

    remote: RemoteOutcome
    detail: str = ""


def validate_project_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Project name cannot be empty")
    if name.startswith("."):
        raise ValidationError("Project name cannot start with '.'")
    if not _PROJECT_NAME_RE.match(name):
        raise ValidationError(
            "Project name may contain letters, digits, '.', '_' and '-' (max 100 characters)"
        )


class ProjectService:
    """Project and file lifecycle for one Session. api is None when working offline."""

    def __init__(self, store: LocalStore, session: Session, api: Optional[EvmAPI] = None) -> None:
        self._store = store
        self._session = session
        self._api = api

    def init_project(
        self,
        name: str,
        directory: Path,
        description: Optional[str] = None,
    ) -> Result[Project]:
        """Create a project bound to directory."""
        try:
            validate_project_name(name)
        except ValidationError as e:
            return Result.failure(e)
        result = self._store.create_project(
            self._session.user_id,
            name,
            directory_path=str(Path(directory).resolve()),
            description=description,
        )
        if result.ok:
            log.info("Initialized project %s in %s", name, directory)
        return result

    def current_project(self, cwd: Path) -> Result[Project]:
        return self._store.get_current_project(self._session.user_id, cwd)

    def list_projects(self) -> Result[list]:
        return self._store.list_projects(self._session.user_id)

    def _remote(self, payload, project_id: Optional[int], entity_id: Optional[int], call) -> ChangeResult:
        """Run a remote call; queue payload when the server cannot be reached."""
        if self._api is None or not self._session.is_online:
            self._queue(payload, project_id, entity_id)
            return ChangeResult(RemoteOutcome.QUEUED, "offline")
        try:
            call()
        except ConnectivityError as e:
            self._queue(payload, project_id, entity_id)
            return ChangeResult(RemoteOutcome.QUEUED, str(e))
        except AuthExpiredError as e:
            self._queue(payload, project_id, entity_id)
            return ChangeResult(RemoteOutcome.AUTH_REQUIRED, str(e))
        except EvmError as e:
            log.warning("Remote change failed: %s", e)
            return ChangeResult(RemoteOutcome.FAILED, str(e))
        return ChangeResult(RemoteOutcome.SYNCED)

    def _tracked_file(self, project: Project, file_name: str) -> Result[EnvFile]:
        found = self._store.get_env_file_by_name(project.id, file_name)
        if not found.ok and isinstance(found.error, NotFoundError):
            return Result.failure(NotFoundError(f"'{file_name}' is not tracked in {project.name}"))
        return found

    def _queue(self, payload, project_id: Optional[int], entity_id: Optional[int]) -> None:
        self._store.add_pending_operation(
            self._session.user_id,
            operation_type(payload).value,
            entity_type(payload).value,
            encode_payload(payload),
            entity_id=entity_id,
            project_id=project_id,
        ).unwrap()

    # --- Rename ---

    def rename_project(self, project: Project, new_name: str) -> Result[ChangeResult]:
        try:
            validate_project_name(new_name)
        except ValidationError as e:
            return Result.failure(e)
        renamed = self._store.rename_project(project.id, new_name)
        if not renamed.ok:
            return Result.failure(renamed.error)
        old_name = project.name
        log.info("Renamed project %s to %s", old_name, new_name)
        payload = RenamePayload(
            entity=EntityType.PROJECT, project_name=old_name, old_name=old_name, new_name=new_name
        )
        return Result.success(
            self._remote(payload, project.id, project.id, lambda: self._api.rename_project(old_name, new_name))
        )

    def rename_file(
        self,
        project: Project,
        old_name: str,
        new_name: str,
        directory: Path,
    ) -> Result[ChangeResult]:
        """Rename on disk first, then in the store; the disk rename is undone if the store refuses."""
        try:
            validate_file_name(new_name)
        except ValidationError as e:
            return Result.failure(e)
        found = self._tracked_file(project, old_name)
        if not found.ok:
            return Result.failure(found.error)
        env_file: EnvFile = found.value
        old_path = Path(directory) / old_name
        new_path = Path(directory) / new_name
        if new_path.exists():
            return Result.failure(ValidationError(f"'{new_name}' already exists on disk"))
        moved = False
        if old_path.exists():
            try:
                old_path.rename(new_path)
                moved = True
            except OSError as e:
                return Result.failure(ValidationError(f"Could not rename {old_path}: {e}"))
        renamed = self._store.rename_env_file(env_file.id, new_name)
        if not renamed.ok:
            if moved:
                new_path.rename(old_path)
            return Result.failure(renamed.error)
        log.info("Renamed %s to %s in %s", old_name, new_name, project.name)
        payload = RenamePayload(
            entity=EntityType.FILE, project_name=project.name, old_name=old_name, new_name=new_name
        )
        return Result.success(
            self._remote(
                payload,
                project.id,
                env_file.id,
                lambda: self._api.rename_env_file(project.name, old_name, new_name),
            )
        )

    # --- Remove ---

    def remove_file(
        self,
        project: Project,
        file_name: str,
        directory: Path,
        remote: bool = False,
        keep_on_disk: bool = False,
    ) -> Result[ChangeResult]:
        """Delete a tracked file and its history. remote=True also deletes it on the server."""
        found = self._tracked_file(project, file_name)
        if not found.ok:
            return Result.failure(found.error)
        deleted = self._store.delete_env_file(found.value.id)
        if not deleted.ok:
            return Result.failure(deleted.error)
        path = Path(directory) / file_name
        if not keep_on_disk and path.exists():
            try:
                path.unlink()
            except OSError as e:
                log.warning("Removed %s from history but could not delete it on disk: %s", file_name, e)
        log.info("Removed %s from %s", file_name, project.name)
        if not remote:
            return Result.success(ChangeResult(RemoteOutcome.LOCAL_ONLY))
        payload = DeletePayload(entity=EntityType.FILE, project_name=project.name, file_name=file_name)
        return Result.success(
            self._remote(
                payload,
                project.id,
                found.value.id,
                lambda: self._api.delete_env_file(project.name, file_name),
            )
        )

    def remove_project(self, project: Project, remote: bool = False) -> Result[ChangeResult]:
        """Delete a project with all files and history. Files on disk are left alone."""
        deleted = self._store.delete_project(project.id)
        if not deleted.ok:
            return Result.failure(deleted.error)
        log.info("Removed project %s (%d file(s))", project.name, deleted.value)
        if not remote:
            return Result.success(ChangeResult(RemoteOutcome.LOCAL_ONLY))
        payload = DeletePayload(entity=EntityType.PROJECT, project_name=project.name)
        return Result.success(
            self._remote(payload, project.id, project.id, lambda: self._api.delete_project(project.name))
        )
