"""
Local store: typed CRUD over the SQLite database.

Every public method returns a Result. Domain failures (NotFoundError,
ConstraintError) are distinguished from infrastructure failures (StoreError).
The store never decrypts; content columns are opaque hex strings.

Deleting a project or file cascades here, inside one transaction: rollback
records, then versions, then files, then the project row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from dotevm.errors import ConstraintError, EvmError, NotFoundError, Result, StoreError, ValidationError
from dotevm.store.db import create_session_factory, create_store_engine, init_schema, session_scope
from dotevm.store.models import (
    EnvFile,
    EnvVersion,
    PendingOperation,
    Project,
    RollbackRecord,
    User,
    utcnow,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class VersionSnapshot:
    """A version as received from the remote store, used by restore_file_history."""

    version_token: str
    encrypted_content: str
    iv: str
    tag: str
    commit_message: Optional[str]
    author_email: str
    created_at: datetime
    is_rollback: bool = False


@dataclass(frozen=True)
class RollbackSnapshot:
    from_version_token: str
    to_version_token: str
    reason: Optional[str]
    performed_by: str
    created_at: datetime


class LocalStore:
    """SQLite-backed store for users, projects, files, versions and the pending queue."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._engine = create_store_engine(db_path)
        self.migrated = init_schema(self._engine)
        self._factory = create_session_factory(self._engine)
        log.debug("Local store at %s (migrated=%s)", db_path, self.migrated)

    def close(self) -> None:
        self._engine.dispose()

    def run(self, action: str, fn: Callable[[Session], T]) -> Result[T]:
        """Run fn inside one transaction and convert failures into a Result."""
        try:
            with session_scope(self._factory) as session:
                return Result.success(fn(session))
        except EvmError as e:
            return Result.failure(e)
        except sa_exc.IntegrityError as e:
            log.debug("%s violated a constraint: %s", action, e.orig)
            return Result.failure(ConstraintError(f"{action}: {e.orig}"))
        except sa_exc.SQLAlchemyError as e:
            log.error("%s failed: %s", action, e)
            return Result.failure(StoreError(f"{action}: {e}"))

    # --- Users ---

    def create_user(
        self,
        email: str,
        password_hash: str,
        encryption_salt: str,
        synced: bool = False,
    ) -> Result[User]:
        def _create(session: Session) -> User:
            if session.scalar(select(User).where(User.email == email)):
                raise ConstraintError(f"User already exists: {email}")
            user = User(
                email=email,
                password_hash=password_hash,
                encryption_salt=encryption_salt,
                synced_to_server=synced,
            )
            session.add(user)
            session.flush()
            return user

        return self.run("create user", _create)

    def get_user_by_email(self, email: str) -> Result[User]:
        def _get(session: Session) -> User:
            user = session.scalar(select(User).where(User.email == email))
            if user is None:
                raise NotFoundError(f"User not found: {email}")
            return user

        return self.run("get user", _get)

    def get_encryption_salt(self, email: str) -> Result[str]:
        """Salt for the user's key derivation."""
        found = self.get_user_by_email(email)
        if not found.ok:
            return Result.failure(found.error)
        if not found.value.encryption_salt:
            return Result.failure(NotFoundError(f"No encryption salt for {email}"))
        return Result.success(found.value.encryption_salt)

    def update_user(self, user_id: int, **fields) -> Result[User]:
        """Update password_hash, last_login, synced_to_server or encryption_salt."""
        allowed = {"password_hash", "last_login", "synced_to_server", "encryption_salt"}
        unknown = set(fields) - allowed
        if unknown:
            return Result.failure(ValidationError(f"Cannot update user fields: {sorted(unknown)}"))

        def _update(session: Session) -> User:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            for key, value in fields.items():
                setattr(user, key, value)
            return user

        return self.run("update user", _update)

    # --- Projects ---

    def create_project(
        self,
        user_id: int,
        name: str,
        directory_path: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Result[Project]:
        def _create(session: Session) -> Project:
            clash = session.scalar(
                select(Project).where(Project.user_id == user_id, Project.name == name)
            )
            if clash:
                raise ConstraintError(f"Project '{name}' already exists")
            project = Project(
                user_id=user_id,
                name=name,
                directory_path=directory_path,
                description=description,
            )
            session.add(project)
            session.flush()
            return project

        return self.run("create project", _create)

    def list_projects(self, user_id: int) -> Result[List[Project]]:
        return self.run(
            "list projects",
            lambda s: list(
                s.scalars(
                    select(Project)
                    .where(Project.user_id == user_id)
                    .order_by(Project.created_at, Project.id)
                )
            ),
        )

    def get_project(self, project_id: int) -> Result[Project]:
        def _get(session: Session) -> Project:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            return project

        return self.run("get project", _get)

    def get_project_by_name(self, user_id: int, name: str) -> Result[Project]:
        def _get(session: Session) -> Project:
            project = session.scalar(
                select(Project).where(Project.user_id == user_id, Project.name == name)
            )
            if project is None:
                raise NotFoundError(f"Project '{name}' not found")
            return project

        return self.run("get project", _get)

    def get_current_project(self, user_id: int, cwd: Path) -> Result[Project]:
        """The project whose directory is cwd, else the user's first project."""
        directory = str(Path(cwd).resolve())

        def _get(session: Session) -> Project:
            project = session.scalar(
                select(Project).where(
                    Project.user_id == user_id, Project.directory_path == directory
                )
            )
            if project is None:
                project = session.scalar(
                    select(Project)
                    .where(Project.user_id == user_id)
                    .order_by(Project.created_at, Project.id)
                    .limit(1)
                )
            if project is None:
                raise NotFoundError("No project found. Run 'evm init' first.")
            return project

        return self.run("get current project", _get)

    def rename_project(self, project_id: int, new_name: str) -> Result[Project]:
        def _rename(session: Session) -> Project:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            clash = session.scalar(
                select(Project).where(
                    Project.user_id == project.user_id,
                    Project.name == new_name,
                    Project.id != project_id,
                )
            )
            if clash:
                raise ConstraintError(f"Project '{new_name}' already exists")
            project.name = new_name
            project.updated_at = utcnow()
            return project

        return self.run("rename project", _rename)

    def delete_project(self, project_id: int) -> Result[int]:
        """Delete the project with all its files and history. Returns number of files removed."""

        def _delete(session: Session) -> int:
            if session.get(Project, project_id) is None:
                raise NotFoundError(f"Project {project_id} not found")
            file_ids = list(session.scalars(select(EnvFile.id).where(EnvFile.project_id == project_id)))
            if file_ids:
                session.execute(delete(RollbackRecord).where(RollbackRecord.env_file_id.in_(file_ids)))
                session.execute(delete(EnvVersion).where(EnvVersion.env_file_id.in_(file_ids)))
                session.execute(delete(EnvFile).where(EnvFile.id.in_(file_ids)))
            session.execute(delete(Project).where(Project.id == project_id))
            return len(file_ids)

        return self.run("delete project", _delete)

    # --- Env files ---

    def list_env_files(self, project_id: int) -> Result[List[EnvFile]]:
        return self.run(
            "list env files",
            lambda s: list(
                s.scalars(select(EnvFile).where(EnvFile.project_id == project_id).order_by(EnvFile.name))
            ),
        )

    def get_env_file(self, env_file_id: int) -> Result[EnvFile]:
        def _get(session: Session) -> EnvFile:
            env_file = session.get(EnvFile, env_file_id)
            if env_file is None:
                raise NotFoundError(f"Env file {env_file_id} not found")
            return env_file

        return self.run("get env file", _get)

    def get_env_file_by_name(self, project_id: int, name: str) -> Result[EnvFile]:
        def _get(session: Session) -> EnvFile:
            env_file = session.scalar(
                select(EnvFile).where(EnvFile.project_id == project_id, EnvFile.name == name)
            )
            if env_file is None:
                raise NotFoundError(f"File '{name}' not found in project")
            return env_file

        return self.run("get env file", _get)

    def rename_env_file(self, env_file_id: int, new_name: str) -> Result[EnvFile]:
        def _rename(session: Session) -> EnvFile:
            env_file = session.get(EnvFile, env_file_id)
            if env_file is None:
                raise NotFoundError(f"Env file {env_file_id} not found")
            clash = session.scalar(
                select(EnvFile).where(
                    EnvFile.project_id == env_file.project_id,
                    EnvFile.name == new_name,
                    EnvFile.id != env_file_id,
                )
            )
            if clash:
                raise ConstraintError(f"File '{new_name}' already exists in project")
            env_file.name = new_name
            env_file.updated_at = utcnow()
            return env_file

        return self.run("rename env file", _rename)

    def delete_env_file(self, env_file_id: int) -> Result[None]:
        def _delete(session: Session) -> None:
            if session.get(EnvFile, env_file_id) is None:
                raise NotFoundError(f"Env file {env_file_id} not found")
            session.execute(delete(RollbackRecord).where(RollbackRecord.env_file_id == env_file_id))
            session.execute(delete(EnvVersion).where(EnvVersion.env_file_id == env_file_id))
            session.execute(delete(EnvFile).where(EnvFile.id == env_file_id))

        return self.run("delete env file", _delete)

    # --- Versions ---

    def list_versions(self, env_file_id: int) -> Result[List[EnvVersion]]:
        """Versions of one file, newest first."""
        return self.run(
            "list versions",
            lambda s: list(
                s.scalars(
                    select(EnvVersion)
                    .where(EnvVersion.env_file_id == env_file_id)
                    .order_by(EnvVersion.created_at.desc(), EnvVersion.id.desc())
                )
            ),
        )

    def get_version_by_token(self, env_file_id: int, token: str) -> Result[EnvVersion]:
        def _get(session: Session) -> EnvVersion:
            version = session.scalar(
                select(EnvVersion).where(
                    EnvVersion.env_file_id == env_file_id, EnvVersion.version_token == token
                )
            )
            if version is None:
                raise NotFoundError(f"Version {token[:7]} not found")
            return version

        return self.run("get version", _get)

    def find_versions_by_prefix(
        self, project_id: int, prefix: str
    ) -> Result[List[Tuple[EnvVersion, EnvFile]]]:
        """All versions in the project whose token starts with prefix."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return self.run(
            "find versions",
            lambda s: [
                (row[0], row[1])
                for row in s.execute(
                    select(EnvVersion, EnvFile)
                    .join(EnvFile, EnvFile.id == EnvVersion.env_file_id)
                    .where(
                        EnvFile.project_id == project_id,
                        EnvVersion.version_token.like(f"{escaped}%", escape="\\"),
                    )
                    .order_by(EnvVersion.created_at.desc(), EnvVersion.id.desc())
                )
            ],
        )

    def project_log(self, project_id: int, limit: Optional[int] = None) -> Result[List[Tuple[EnvVersion, str]]]:
        """Every version of every file in the project, newest first, with its file name."""

        def _log(session: Session) -> List[Tuple[EnvVersion, str]]:
            stmt = (
                select(EnvVersion, EnvFile.name)
                .join(EnvFile, EnvFile.id == EnvVersion.env_file_id)
                .where(EnvFile.project_id == project_id)
                .order_by(EnvVersion.created_at.desc(), EnvVersion.id.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            return [(row[0], row[1]) for row in session.execute(stmt)]

        return self.run("project log", _log)

    def count_versions(self, env_file_id: int) -> Result[int]:
        return self.run(
            "count versions",
            lambda s: s.scalar(
                select(func.count(EnvVersion.id)).where(EnvVersion.env_file_id == env_file_id)
            ),
        )

    def list_unsynced_versions(self, env_file_id: int) -> Result[List[EnvVersion]]:
        """Versions not yet acknowledged by the remote store, oldest first."""
        return self.run(
            "list unsynced versions",
            lambda s: list(
                s.scalars(
                    select(EnvVersion)
                    .where(EnvVersion.env_file_id == env_file_id, EnvVersion.synced_to_server.is_(False))
                    .order_by(EnvVersion.created_at, EnvVersion.id)
                )
            ),
        )

    def mark_version_synced(self, version_id: int) -> Result[None]:
        def _mark(session: Session) -> None:
            version = session.get(EnvVersion, version_id)
            if version is None:
                raise NotFoundError(f"Version {version_id} not found")
            version.synced_to_server = True

        return self.run("mark version synced", _mark)

    # --- Rollback history ---

    def project_rollbacks(self, project_id: int) -> Result[List[Tuple[RollbackRecord, str]]]:
        """Rollback records across the project's files, newest first."""
        return self.run(
            "project rollbacks",
            lambda s: [
                (row[0], row[1])
                for row in s.execute(
                    select(RollbackRecord, EnvFile.name)
                    .join(EnvFile, EnvFile.id == RollbackRecord.env_file_id)
                    .where(EnvFile.project_id == project_id)
                    .order_by(RollbackRecord.created_at.desc(), RollbackRecord.id.desc())
                )
            ],
        )

    def list_unsynced_rollbacks(self, env_file_id: int) -> Result[List[RollbackRecord]]:
        return self.run(
            "list unsynced rollbacks",
            lambda s: list(
                s.scalars(
                    select(RollbackRecord)
                    .where(
                        RollbackRecord.env_file_id == env_file_id,
                        RollbackRecord.synced_to_server.is_(False),
                    )
                    .order_by(RollbackRecord.created_at, RollbackRecord.id)
                )
            ),
        )

    def mark_rollback_synced(self, rollback_id: int) -> Result[None]:
        def _mark(session: Session) -> None:
            record = session.get(RollbackRecord, rollback_id)
            if record is None:
                raise NotFoundError(f"Rollback record {rollback_id} not found")
            record.synced_to_server = True

        return self.run("mark rollback synced", _mark)

    # --- Pending operations ---

    def add_pending_operation(
        self,
        user_id: int,
        operation_type: str,
        entity_type: str,
        payload: str,
        entity_id: Optional[int] = None,
        project_id: Optional[int] = None,
        deduplicate: bool = False,
    ) -> Result[PendingOperation]:
        """
        Queue a remote operation for later replay.
        With deduplicate=True an identical queued operation is returned instead of adding another.
        """

        def _add(session: Session) -> PendingOperation:
            if deduplicate:
                existing = session.scalar(
                    select(PendingOperation).where(
                        PendingOperation.user_id == user_id,
                        PendingOperation.operation_type == operation_type,
                        PendingOperation.payload == payload,
                    )
                )
                if existing is not None:
                    return existing
            op = PendingOperation(
                user_id=user_id,
                operation_type=operation_type,
                entity_type=entity_type,
                entity_id=entity_id,
                project_id=project_id,
                payload=payload,
            )
            session.add(op)
            session.flush()
            log.info("Queued %s operation for later sync", operation_type)
            return op

        return self.run("add pending operation", _add)

    def list_pending_operations(self, user_id: int) -> Result[List[PendingOperation]]:
        """Queued operations, oldest first."""
        return self.run(
            "list pending operations",
            lambda s: list(
                s.scalars(
                    select(PendingOperation)
                    .where(PendingOperation.user_id == user_id)
                    .order_by(PendingOperation.created_at, PendingOperation.id)
                )
            ),
        )

    def remove_pending_operation(self, op_id: int) -> Result[None]:
        def _remove(session: Session) -> None:
            session.execute(delete(PendingOperation).where(PendingOperation.id == op_id))

        return self.run("remove pending operation", _remove)

    # --- Pull restore ---

    def restore_file_history(
        self,
        project_id: int,
        file_name: str,
        encrypted_content: str,
        iv: str,
        tag: str,
        updated_at: datetime,
        versions: Sequence[VersionSnapshot],
        rollbacks: Sequence[RollbackSnapshot],
        created_at: Optional[datetime] = None,
    ) -> Result[EnvFile]:
        """
        Replace a file's content, version chain and rollback history with the given snapshots.
        Versions are linked into a linear chain by creation time; the newest becomes the head.
        Restored rows are marked synced.
        """

        def _restore(session: Session) -> EnvFile:
            env_file = session.scalar(
                select(EnvFile).where(EnvFile.project_id == project_id, EnvFile.name == file_name)
            )
            if env_file is None:
                env_file = EnvFile(
                    project_id=project_id,
                    name=file_name,
                    encrypted_content=encrypted_content,
                    iv=iv,
                    tag=tag,
                    created_at=created_at or updated_at,
                )
                session.add(env_file)
                session.flush()
            else:
                session.execute(delete(RollbackRecord).where(RollbackRecord.env_file_id == env_file.id))
                session.execute(delete(EnvVersion).where(EnvVersion.env_file_id == env_file.id))

            parent_id: Optional[int] = None
            for snap in sorted(versions, key=lambda v: v.created_at):
                version = EnvVersion(
                    env_file_id=env_file.id,
                    version_token=snap.version_token,
                    encrypted_content=snap.encrypted_content,
                    iv=snap.iv,
                    tag=snap.tag,
                    commit_message=snap.commit_message,
                    author_email=snap.author_email,
                    parent_version_id=parent_id,
                    is_rollback=snap.is_rollback,
                    synced_to_server=True,
                    created_at=snap.created_at,
                )
                session.add(version)
                session.flush()
                parent_id = version.id

            for snap in rollbacks:
                session.add(
                    RollbackRecord(
                        env_file_id=env_file.id,
                        from_version_token=snap.from_version_token,
                        to_version_token=snap.to_version_token,
                        reason=snap.reason,
                        performed_by=snap.performed_by,
                        synced_to_server=True,
                        created_at=snap.created_at,
                    )
                )

            env_file.encrypted_content = encrypted_content
            env_file.iv = iv
            env_file.tag = tag
            env_file.current_version_id = parent_id
            env_file.updated_at = updated_at
            return env_file

        return self.run("restore file history", _restore)
