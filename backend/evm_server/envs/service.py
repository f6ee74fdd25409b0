"""
Env service: per-user projects, encrypted files, versions and rollbacks.

Every write is idempotent so clients can resend after a partial failure:
file upserts overwrite, versions and rollbacks are insert-if-absent, deletes
of missing rows report deleted=False, renames that already happened succeed.
Raises NotFoundError when a referenced project or file does not exist and
ConflictError when a rename would clash. Caller must commit the session.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from evm_server.envs.models import EnvFile, EnvVersion, Project, RollbackRecord
from evm_server.envs.schemas import (
    EnvFileRename,
    EnvFileUpsert,
    EnvVersionIn,
    ProjectOut,
    RemoteFileOut,
    RollbackIn,
    RollbackOut,
    VersionOut,
)
from evm_server.errors import ConflictError, NotFoundError

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def get_project(session: AsyncSession, owner: str, name: str) -> Optional[Project]:
    result = await session.execute(
        select(Project).where(Project.owner_email == owner, Project.name == name)
    )
    return result.scalar_one_or_none()


async def get_env_file(session: AsyncSession, project_id: int, name: str) -> Optional[EnvFile]:
    result = await session.execute(
        select(EnvFile).where(EnvFile.project_id == project_id, EnvFile.name == name)
    )
    return result.scalar_one_or_none()


async def _require_file(session: AsyncSession, owner: str, project_name: str, file_name: str) -> EnvFile:
    project = await get_project(session, owner, project_name)
    if project is None:
        raise NotFoundError(f"Project not found: {project_name}")
    env_file = await get_env_file(session, project.id, file_name)
    if env_file is None:
        raise NotFoundError(f"File not found: {project_name}/{file_name}")
    return env_file


async def upsert_env_file(session: AsyncSession, owner: str, body: EnvFileUpsert) -> EnvFile:
    """Create or overwrite the current content of a file, creating the project on first use."""
    now = _utcnow()
    updated_at = _naive_utc(body.updated_at) or now
    project = await get_project(session, owner, body.project_name)
    if project is None:
        project = Project(owner_email=owner, name=body.project_name, created_at=now, updated_at=now)
        session.add(project)
        await session.flush()
        log.info("Created project owner=%s name=%s", owner, body.project_name)
    env_file = await get_env_file(session, project.id, body.file_name)
    if env_file is None:
        env_file = EnvFile(
            project_id=project.id,
            name=body.file_name,
            encrypted_content=body.encrypted_content,
            iv=body.iv,
            tag=body.tag,
            created_at=_naive_utc(body.created_at) or now,
            updated_at=updated_at,
        )
        session.add(env_file)
        log.info("Created file %s/%s owner=%s", body.project_name, body.file_name, owner)
    else:
        env_file.encrypted_content = body.encrypted_content
        env_file.iv = body.iv
        env_file.tag = body.tag
        env_file.updated_at = updated_at
        log.debug("Updated file %s/%s owner=%s", body.project_name, body.file_name, owner)
    project.updated_at = now
    await session.flush()
    return env_file


async def add_version(session: AsyncSession, owner: str, body: EnvVersionIn) -> bool:
    """Insert a version unless the file already has that token. Returns True when inserted."""
    env_file = await _require_file(session, owner, body.project_name, body.file_name)
    existing = await session.execute(
        select(EnvVersion.id).where(
            EnvVersion.env_file_id == env_file.id,
            EnvVersion.version_token == body.version_token,
        )
    )
    if existing.first() is not None:
        log.debug("Version %s already stored; skipping", body.version_token[:7])
        return False
    session.add(
        EnvVersion(
            env_file_id=env_file.id,
            version_token=body.version_token,
            encrypted_content=body.encrypted_content,
            iv=body.iv,
            tag=body.tag,
            commit_message=body.commit_message,
            author_email=body.author_email,
            is_rollback=body.is_rollback,
            created_at=_naive_utc(body.created_at),
        )
    )
    await session.flush()
    log.info("Stored version %s of %s/%s", body.version_token[:7], body.project_name, body.file_name)
    return True


async def add_rollback(session: AsyncSession, owner: str, body: RollbackIn) -> bool:
    """Insert a rollback record unless an identical one exists. Returns True when inserted."""
    env_file = await _require_file(session, owner, body.project_name, body.file_name)
    created_at = _naive_utc(body.created_at)
    existing = await session.execute(
        select(RollbackRecord.id).where(
            RollbackRecord.env_file_id == env_file.id,
            RollbackRecord.from_version_token == body.from_version_token,
            RollbackRecord.to_version_token == body.to_version_token,
            RollbackRecord.created_at == created_at,
        )
    )
    if existing.first() is not None:
        return False
    session.add(
        RollbackRecord(
            env_file_id=env_file.id,
            from_version_token=body.from_version_token,
            to_version_token=body.to_version_token,
            reason=body.reason,
            performed_by=body.performed_by,
            created_at=created_at,
        )
    )
    await session.flush()
    log.info("Stored rollback of %s/%s", body.project_name, body.file_name)
    return True


async def list_projects(session: AsyncSession, owner: str) -> List[ProjectOut]:
    counts = (
        select(EnvFile.project_id, func.count(EnvFile.id).label("n"))
        .group_by(EnvFile.project_id)
        .subquery()
    )
    result = await session.execute(
        select(Project, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.project_id == Project.id)
        .where(Project.owner_email == owner)
        .order_by(Project.name)
    )
    return [
        ProjectOut(
            name=p.name, file_count=n, created_at=p.created_at, updated_at=p.updated_at
        )
        for p, n in result.all()
    ]


async def list_project_files(session: AsyncSession, owner: str, project_name: str) -> List[RemoteFileOut]:
    """Every file of a project with its versions (oldest first) and rollbacks."""
    project = await get_project(session, owner, project_name)
    if project is None:
        raise NotFoundError(f"Project not found: {project_name}")
    files = (
        await session.execute(
            select(EnvFile).where(EnvFile.project_id == project.id).order_by(EnvFile.name)
        )
    ).scalars().all()
    out = []
    for f in files:
        versions = (
            await session.execute(
                select(EnvVersion)
                .where(EnvVersion.env_file_id == f.id)
                .order_by(EnvVersion.created_at, EnvVersion.id)
            )
        ).scalars().all()
        rollbacks = (
            await session.execute(
                select(RollbackRecord)
                .where(RollbackRecord.env_file_id == f.id)
                .order_by(RollbackRecord.created_at, RollbackRecord.id)
            )
        ).scalars().all()
        out.append(
            RemoteFileOut(
                file_name=f.name,
                encrypted_content=f.encrypted_content,
                iv=f.iv,
                tag=f.tag,
                created_at=f.created_at,
                updated_at=f.updated_at,
                versions=[VersionOut.model_validate(v) for v in versions],
                rollbacks=[RollbackOut.model_validate(r) for r in rollbacks],
            )
        )
    log.info("list_project_files owner=%s project=%s count=%d", owner, project_name, len(out))
    return out


async def _delete_file_rows(session: AsyncSession, file_ids: List[int]) -> None:
    if not file_ids:
        return
    await session.execute(delete(EnvVersion).where(EnvVersion.env_file_id.in_(file_ids)))
    await session.execute(delete(RollbackRecord).where(RollbackRecord.env_file_id.in_(file_ids)))
    await session.execute(delete(EnvFile).where(EnvFile.id.in_(file_ids)))


async def delete_project(session: AsyncSession, owner: str, project_name: str) -> Dict[str, object]:
    """Delete a project with all its files and history."""
    project = await get_project(session, owner, project_name)
    if project is None:
        log.debug("delete_project %s: nothing to delete", project_name)
        return {"deleted": False, "files": 0}
    file_ids = list(
        (await session.execute(select(EnvFile.id).where(EnvFile.project_id == project.id))).scalars()
    )
    await _delete_file_rows(session, file_ids)
    await session.delete(project)
    await session.flush()
    log.info("Deleted project owner=%s name=%s files=%d", owner, project_name, len(file_ids))
    return {"deleted": True, "files": len(file_ids)}


async def delete_env_file(session: AsyncSession, owner: str, project_name: str, file_name: str) -> Dict[str, object]:
    """Delete one file with its history."""
    project = await get_project(session, owner, project_name)
    env_file = await get_env_file(session, project.id, file_name) if project else None
    if env_file is None:
        log.debug("delete_env_file %s/%s: nothing to delete", project_name, file_name)
        return {"deleted": False}
    await _delete_file_rows(session, [env_file.id])
    project.updated_at = _utcnow()
    await session.flush()
    log.info("Deleted file %s/%s owner=%s", project_name, file_name, owner)
    return {"deleted": True}


async def rename_project(session: AsyncSession, owner: str, project_name: str, new_name: str) -> Dict[str, object]:
    """Rename a project. Succeeds without change when the rename already happened."""
    if project_name == new_name:
        return {"renamed": False}
    project = await get_project(session, owner, project_name)
    target = await get_project(session, owner, new_name)
    if project is None:
        if target is not None:
            return {"renamed": False}
        raise NotFoundError(f"Project not found: {project_name}")
    if target is not None:
        raise ConflictError(f"Project already exists: {new_name}")
    project.name = new_name
    project.updated_at = _utcnow()
    await session.flush()
    log.info("Renamed project owner=%s %s -> %s", owner, project_name, new_name)
    return {"renamed": True}


async def rename_env_file(session: AsyncSession, owner: str, body: EnvFileRename) -> Dict[str, object]:
    """Rename a file inside a project. Succeeds without change when already renamed."""
    if body.old_file_name == body.new_file_name:
        return {"renamed": False}
    project = await get_project(session, owner, body.project_name)
    if project is None:
        raise NotFoundError(f"Project not found: {body.project_name}")
    env_file = await get_env_file(session, project.id, body.old_file_name)
    target = await get_env_file(session, project.id, body.new_file_name)
    if env_file is None:
        if target is not None:
            return {"renamed": False}
        raise NotFoundError(f"File not found: {body.project_name}/{body.old_file_name}")
    if target is not None:
        raise ConflictError(f"File already exists: {body.new_file_name}")
    env_file.name = body.new_file_name
    project.updated_at = _utcnow()
    await session.flush()
    log.info(
        "Renamed file owner=%s %s/%s -> %s",
        owner, body.project_name, body.old_file_name, body.new_file_name,
    )
    return {"renamed": True}
