"""
Env routes: file upsert, version and rollback push, project listing, rename, delete.

Service NotFoundError and ConflictError become 404 and 409 in main.
"""

import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from evm_server.auth.dependencies import get_current_user
from evm_server.db.session import get_db
from evm_server.envs import service
from evm_server.envs.schemas import (
    EnvFileRename,
    EnvFileUpsert,
    EnvVersionIn,
    FileRef,
    ProjectOut,
    ProjectRef,
    ProjectRename,
    RemoteFileOut,
    RollbackIn,
)
from evm_server.limiter import limiter
from evm_server.users.models import User

router = APIRouter(tags=["envs"])
log = logging.getLogger(__name__)

CurrentUser = Annotated[User, Depends(get_current_user)]
DbSession = Annotated[AsyncSession, Depends(get_db)]

# sync pushes one request per version, so writes get a generous budget
WRITE_LIMIT = "600/minute"
READ_LIMIT = "120/minute"
ADMIN_LIMIT = "60/minute"


@router.post("/env-files")
@limiter.limit(WRITE_LIMIT)
async def upsert_env_file(
    request: Request, body: EnvFileUpsert, current_user: CurrentUser, session: DbSession
) -> dict:
    """Create or replace the current encrypted content of a file."""
    env_file = await service.upsert_env_file(session, current_user.email, body)
    return {"file_name": env_file.name, "updated_at": env_file.updated_at}


@router.post("/env-versions")
@limiter.limit(WRITE_LIMIT)
async def push_version(
    request: Request, body: EnvVersionIn, current_user: CurrentUser, session: DbSession
) -> dict:
    """Store a version; a token the file already has is acknowledged without change."""
    created = await service.add_version(session, current_user.email, body)
    return {"created": created, "version_token": body.version_token}


@router.post("/rollback-history")
@limiter.limit(WRITE_LIMIT)
async def push_rollback(
    request: Request, body: RollbackIn, current_user: CurrentUser, session: DbSession
) -> dict:
    return {"created": await service.add_rollback(session, current_user.email, body)}


@router.get("/projects", response_model=List[ProjectOut])
@limiter.limit(READ_LIMIT)
async def list_projects(request: Request, current_user: CurrentUser, session: DbSession) -> List[ProjectOut]:
    return await service.list_projects(session, current_user.email)


@router.get("/projects/{project_name}/files", response_model=List[RemoteFileOut])
@limiter.limit(READ_LIMIT)
async def list_project_files(
    request: Request, project_name: str, current_user: CurrentUser, session: DbSession
) -> List[RemoteFileOut]:
    """Files of a project with embedded versions and rollbacks, for pull."""
    return await service.list_project_files(session, current_user.email, project_name)


@router.delete("/projects")
@limiter.limit(ADMIN_LIMIT)
async def delete_project(
    request: Request, body: ProjectRef, current_user: CurrentUser, session: DbSession
) -> dict:
    """Delete a project and everything in it. Deleting a missing project is not an error."""
    return await service.delete_project(session, current_user.email, body.project_name)


@router.delete("/env-files")
@limiter.limit(ADMIN_LIMIT)
async def delete_env_file(
    request: Request, body: FileRef, current_user: CurrentUser, session: DbSession
) -> dict:
    return await service.delete_env_file(
        session, current_user.email, body.project_name, body.file_name
    )


@router.put("/projects/rename")
@limiter.limit(ADMIN_LIMIT)
async def rename_project(
    request: Request, body: ProjectRename, current_user: CurrentUser, session: DbSession
) -> dict:
    return await service.rename_project(session, current_user.email, body.project_name, body.new_name)


@router.put("/env-files/rename")
@limiter.limit(ADMIN_LIMIT)
async def rename_env_file(
    request: Request, body: EnvFileRename, current_user: CurrentUser, session: DbSession
) -> dict:
    return await service.rename_env_file(session, current_user.email, body)
