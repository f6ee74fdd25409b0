"""Staging area: the per-project set of changed files selected for the next commit."""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from dotevm.config import get_staging_path
from dotevm.errors import IntegrityError, NotFoundError, Result, ValidationError
from dotevm.session import Session
from dotevm.store.local import LocalStore
from dotevm.store.models import Project
from dotevm.vcs import VersionControl
from dotevm.workspace import normalize_for_status, read_env_file

log = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "Updated environment files"


@dataclass(frozen=True)
class StagedFile:
    name: str
    path: str
    content: str
    size: int


@dataclass
class StagingRecord:
    project_id: int
    project_name: str
    user_email: str
    commit_message: str
    files: List[StagedFile] = field(default_factory=list)
    staged_at: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "StagingRecord":
        data = json.loads(raw)
        files = [StagedFile(**f) for f in data.pop("files", [])]
        return cls(files=files, **data)


@dataclass
class CommitSummary:
    committed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.committed)


def parse_selection(selection: str, count: int) -> List[int]:
    """
    Zero-based indexes for a selection of 1-based file numbers.
    Accepts "all", ".", "2", "1,3" and ranges like "2-4".
    """
    text = (selection or "").strip().lower()
    if text in ("all", "."):
        return list(range(count))
    if not text:
        raise ValidationError("Empty selection")
    picked: List[int] = []
    for part in text.split(","):
        part = part.strip()
        try:
            if "-" in part:
                lo, hi = (int(p) for p in part.split("-", 1))
                numbers = list(range(lo, hi + 1))
            else:
                numbers = [int(part)]
        except ValueError:
            raise ValidationError(f"Invalid selection: {part!r}") from None
        for n in numbers:
            if n < 1 or n > count:
                raise ValidationError(f"Selection {n} out of range 1-{count}")
            if n - 1 not in picked:
                picked.append(n - 1)
    return picked


class StagingArea:
    """Stages changed files per project and commits them through the version control engine."""

    def __init__(self, store: LocalStore, session: Session, vcs: Optional[VersionControl] = None) -> None:
        self._store = store
        self._session = session
        self._vcs = vcs or VersionControl(store, session)

    def detect_changes(self, project: Project, files_on_disk: Dict[str, Path]) -> Result[List[StagedFile]]:
        """
        Files whose content differs from their head, plus untracked files.
        Trailing whitespace alone is not a change; files that are not UTF-8 are skipped.
        """
        tracked = self._store.list_env_files(project.id)
        if not tracked.ok:
            return Result.failure(tracked.error)
        by_name = {f.name: f for f in tracked.value}
        changed: List[StagedFile] = []
        for name, path in sorted(files_on_disk.items()):
            try:
                content = read_env_file(path)
            except ValidationError as e:
                log.warning("Skipping unreadable %s: %s", path, e)
                continue
            env_file = by_name.get(name)
            if env_file is not None:
                try:
                    if normalize_for_status(self._vcs.decrypt_file(env_file)) == normalize_for_status(content):
                        continue
                except (IntegrityError, NotFoundError) as e:
                    log.warning("Cannot read head of %s, treating as changed: %s", name, e)
            changed.append(
                StagedFile(name=name, path=str(path), content=content, size=len(content.encode("utf-8")))
            )
        return Result.success(changed)

    def stage(
        self,
        project: Project,
        files: List[StagedFile],
        commit_message: Optional[str] = None,
    ) -> Result[StagingRecord]:
        """Persist the selection for project, replacing any earlier staging record."""
        if not files:
            return Result.failure(ValidationError("No files selected to stage"))
        record = StagingRecord(
            project_id=project.id,
            project_name=project.name,
            user_email=self._session.email,
            commit_message=(commit_message or "").strip() or DEFAULT_COMMIT_MESSAGE,
            files=list(files),
            staged_at=datetime.now(timezone.utc).isoformat(),
        )
        path = get_staging_path(project.id)
        try:
            path.write_text(record.to_json(), encoding="utf-8")
        except OSError as e:
            return Result.failure(ValidationError(f"Could not write staging record: {e}"))
        log.info("Staged %d file(s) for %s", len(files), project.name)
        return Result.success(record)

    def load(self, project: Project) -> Optional[StagingRecord]:
        """The staging record for project, or None if nothing is staged for this user."""
        path = get_staging_path(project.id)
        if not path.exists():
            return None
        try:
            record = StagingRecord.from_json(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, TypeError) as e:
            log.warning("Ignoring unreadable staging record %s: %s", path, e)
            return None
        if record.project_id != project.id or record.user_email != self._session.email:
            return None
        return record

    def clear(self, project: Project) -> None:
        get_staging_path(project.id).unlink(missing_ok=True)

    def commit(self, project: Project) -> Result[CommitSummary]:
        """Commit each staged file, then clear staging. One file failing does not stop the others."""
        record = self.load(project)
        if record is None or not record.files:
            return Result.failure(ValidationError("Nothing staged. Use 'evm add' first."))
        summary = CommitSummary()
        for staged in record.files:
            result = self._vcs.commit(
                project,
                staged.name,
                staged.content,
                message=record.commit_message,
                author=self._session.email,
            )
            if result.ok:
                summary.committed.append(staged.name)
            else:
                log.error("Commit of %s failed: %s", staged.name, result.error)
                summary.failed[staged.name] = str(result.error)
        self.clear(project)
        return Result.success(summary)
