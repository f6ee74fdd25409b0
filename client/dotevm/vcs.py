"""
Version control engine: commit, rollback, log, status and diff.

Each env file moves from "no history" to "has head" on its first commit;
every later commit or rollback creates a child of the current head and makes
it the new head. The file row's content columns and current_version_id are
only updated here (and by the wholesale pull restore in the local store), so
they always mirror the head version.

A rollback never rewrites history. It records (from head, to target) in the
rollback log and appends a new version with the target's content, marked
is_rollback, whose parent is the old head.
"""

import difflib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session as DbSession

from dotevm.crypto.cipher import UserCipher
from dotevm.errors import EvmError, IntegrityError, NotFoundError, Result, ValidationError
from dotevm.session import Session
from dotevm.store.local import LocalStore
from dotevm.store.models import EnvFile, EnvVersion, Project, RollbackRecord, utcnow
from dotevm.workspace import normalize_for_status, read_env_file, scan_env_files, validate_file_name

log = logging.getLogger(__name__)

VERSION_TOKEN_BYTES = 20


def new_version_token() -> str:
    """40 hex characters, as in git commit ids."""
    return secrets.token_hex(VERSION_TOKEN_BYTES)


class FileState(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class FileStatus:
    name: str
    state: FileState


@dataclass(frozen=True)
class FileDiff:
    name: str
    lines: List[str]


@dataclass(frozen=True)
class LogEntry:
    version_token: str
    file_name: str
    commit_message: Optional[str]
    author_email: str
    created_at: datetime
    is_rollback: bool
    synced: bool

    @property
    def short_token(self) -> str:
        return self.version_token[:7]


@dataclass
class RollbackOutcome:
    version: EnvVersion
    record: RollbackRecord
    target: EnvVersion
    disk_written: bool = False


class VersionControl:
    """Version operations for one user's Session."""

    def __init__(self, store: LocalStore, session: Session) -> None:
        self._store = store
        self._session = session
        self._cipher: Optional[UserCipher] = None

    @property
    def cipher(self) -> UserCipher:
        if self._cipher is None:
            salt = self._store.get_encryption_salt(self._session.email).unwrap()
            self._cipher = UserCipher(self._session.email, salt)
        return self._cipher

    def decrypt_file(self, env_file: EnvFile) -> str:
        """Plaintext of the file's head. Raises IntegrityError."""
        return self.cipher.decrypt(env_file.encrypted_content, env_file.iv, env_file.tag)

    def decrypt_version(self, version: EnvVersion) -> str:
        return self.cipher.decrypt(version.encrypted_content, version.iv, version.tag)

    # --- Commit ---

    def commit(
        self,
        project: Project,
        file_name: str,
        plaintext: str,
        message: Optional[str] = None,
        author: Optional[str] = None,
    ) -> Result[EnvVersion]:
        """
        Record plaintext as the new head of file_name, creating the file on first commit.
        Does not touch the file on disk.
        """
        try:
            validate_file_name(file_name)
            sealed = self.cipher.encrypt(plaintext)
        except EvmError as e:
            return Result.failure(e)
        author = author or self._session.email

        def _commit(db: DbSession) -> EnvVersion:
            now = utcnow()
            env_file = db.scalar(
                select(EnvFile).where(EnvFile.project_id == project.id, EnvFile.name == file_name)
            )
            if env_file is None:
                env_file = EnvFile(
                    project_id=project.id,
                    name=file_name,
                    encrypted_content=sealed.ciphertext,
                    iv=sealed.iv,
                    tag=sealed.tag,
                    created_at=now,
                    updated_at=now,
                )
                db.add(env_file)
                db.flush()
            version = EnvVersion(
                env_file_id=env_file.id,
                version_token=new_version_token(),
                encrypted_content=sealed.ciphertext,
                iv=sealed.iv,
                tag=sealed.tag,
                commit_message=message,
                author_email=author,
                parent_version_id=env_file.current_version_id,
                created_at=now,
            )
            db.add(version)
            db.flush()
            env_file.encrypted_content = sealed.ciphertext
            env_file.iv = sealed.iv
            env_file.tag = sealed.tag
            env_file.current_version_id = version.id
            env_file.updated_at = now
            return version

        result = self._store.run("commit", _commit)
        if result.ok:
            log.info("Committed %s as %s", file_name, result.value.short_token)
        return result

    # --- Rollback ---

    def rollback(
        self,
        env_file: EnvFile,
        target_token: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
        directory: Optional[Path] = None,
    ) -> Result[RollbackOutcome]:
        """
        Make the content of target_token the new head of env_file.
        When directory is given the file on disk is rewritten too; a failed write
        is logged and reported in the outcome but does not undo the rollback.
        """
        performed_by = performed_by or self._session.email

        def _rollback(db: DbSession) -> RollbackOutcome:
            current = db.get(EnvFile, env_file.id)
            if current is None:
                raise NotFoundError(f"File '{env_file.name}' not found")
            target = db.scalar(
                select(EnvVersion).where(
                    EnvVersion.env_file_id == current.id,
                    EnvVersion.version_token == target_token,
                )
            )
            if target is None:
                raise NotFoundError(f"Version {target_token[:7]} not found for {current.name}")
            head = db.get(EnvVersion, current.current_version_id) if current.current_version_id else None
            if head is None:
                raise NotFoundError(f"File '{current.name}' has no head version")
            now = utcnow()
            record = RollbackRecord(
                env_file_id=current.id,
                from_version_token=head.version_token,
                to_version_token=target.version_token,
                reason=reason,
                performed_by=performed_by,
                created_at=now,
            )
            version = EnvVersion(
                env_file_id=current.id,
                version_token=new_version_token(),
                encrypted_content=target.encrypted_content,
                iv=target.iv,
                tag=target.tag,
                commit_message=f"Revert to {target.short_token}: {target.commit_message or 'No message'}",
                author_email=performed_by,
                parent_version_id=head.id,
                is_rollback=True,
                created_at=now,
            )
            db.add(record)
            db.add(version)
            db.flush()
            current.encrypted_content = target.encrypted_content
            current.iv = target.iv
            current.tag = target.tag
            current.current_version_id = version.id
            current.updated_at = now
            return RollbackOutcome(version=version, record=record, target=target)

        result = self._store.run("rollback", _rollback)
        if not result.ok:
            return result
        outcome = result.value
        log.info(
            "Rolled back %s from %s to %s",
            env_file.name,
            outcome.record.from_version_token[:7],
            outcome.record.to_version_token[:7],
        )
        if directory is not None:
            path = Path(directory) / env_file.name
            try:
                path.write_text(self.decrypt_version(outcome.target), encoding="utf-8")
                outcome.disk_written = True
            except (IntegrityError, OSError) as e:
                log.warning("Rollback recorded but could not write %s: %s", path, e)
        return result

    def resolve_version(self, project: Project, token_prefix: str) -> Result[Tuple[EnvVersion, EnvFile]]:
        """Find the single version in project whose token starts with token_prefix."""
        prefix = (token_prefix or "").strip().lower()
        if not prefix:
            return Result.failure(ValidationError("Version token cannot be empty"))
        found = self._store.find_versions_by_prefix(project.id, prefix)
        if not found.ok:
            return Result.failure(found.error)
        matches = found.value
        if not matches:
            return Result.failure(NotFoundError(f"No version matching '{token_prefix}'"))
        tokens = {version.version_token for version, _ in matches}
        if len(tokens) > 1:
            return Result.failure(
                ValidationError(
                    f"Ambiguous version '{token_prefix}' matches {len(tokens)} versions; use more characters"
                )
            )
        return Result.success(matches[0])

    # --- History ---

    def log(self, project: Project, limit: Optional[int] = None) -> Result[List[LogEntry]]:
        """Versions of every file in the project, newest first."""
        rows = self._store.project_log(project.id, limit=limit)
        if not rows.ok:
            return Result.failure(rows.error)
        return Result.success(
            [
                LogEntry(
                    version_token=v.version_token,
                    file_name=name,
                    commit_message=v.commit_message,
                    author_email=v.author_email,
                    created_at=v.created_at,
                    is_rollback=v.is_rollback,
                    synced=v.synced_to_server,
                )
                for v, name in rows.value
            ]
        )

    def rollback_history(self, project: Project) -> Result[List[Tuple[RollbackRecord, str]]]:
        return self._store.project_rollbacks(project.id)

    # --- Working tree ---

    def _tracked(self, project: Project) -> Dict[str, EnvFile]:
        return {f.name: f for f in self._store.list_env_files(project.id).unwrap()}

    def status(self, project: Project, directory: Path) -> Result[List[FileStatus]]:
        """Compare disk with each file's head; trailing whitespace does not count as a change."""
        try:
            tracked = self._tracked(project)
            self.cipher  # loads the salt
        except EvmError as e:
            return Result.failure(e)
        on_disk = scan_env_files(Path(directory))
        out: List[FileStatus] = []
        for name in sorted(set(tracked) | set(on_disk)):
            if name not in tracked:
                out.append(FileStatus(name, FileState.NEW))
                continue
            if name not in on_disk:
                out.append(FileStatus(name, FileState.DELETED))
                continue
            try:
                head = self.decrypt_file(tracked[name])
            except IntegrityError as e:
                log.warning("Cannot decrypt %s: %s", name, e)
                out.append(FileStatus(name, FileState.CORRUPT))
                continue
            try:
                disk = read_env_file(on_disk[name])
            except ValidationError as e:
                return Result.failure(e)
            same = normalize_for_status(head) == normalize_for_status(disk)
            out.append(FileStatus(name, FileState.UNCHANGED if same else FileState.MODIFIED))
        return Result.success(out)

    def diff(self, project: Project, directory: Path, file_name: Optional[str] = None) -> Result[List[FileDiff]]:
        """Verbatim line diff of disk against head for every file that differs."""
        try:
            tracked = self._tracked(project)
            self.cipher  # loads the salt
        except EvmError as e:
            return Result.failure(e)
        on_disk = scan_env_files(Path(directory))
        names = [file_name] if file_name else sorted(set(tracked) | set(on_disk))
        if file_name and file_name not in tracked and file_name not in on_disk:
            return Result.failure(NotFoundError(f"File '{file_name}' not found"))
        diffs: List[FileDiff] = []
        for name in names:
            try:
                head = self.decrypt_file(tracked[name]) if name in tracked else ""
            except IntegrityError as e:
                return Result.failure(e)
            try:
                disk = read_env_file(on_disk[name]) if name in on_disk else ""
            except ValidationError as e:
                return Result.failure(e)
            if head == disk:
                continue
            lines = list(
                difflib.unified_diff(
                    head.splitlines(),
                    disk.splitlines(),
                    fromfile=f"a/{name}",
                    tofile=f"b/{name}",
                    lineterm="",
                )
            )
            if not lines:
                # only the final newline differs
                lines = [f"--- a/{name}", f"+++ b/{name}", "\\ No newline at end of file"]
            diffs.append(FileDiff(name, lines))
        return Result.success(diffs)
