"""Request and response bodies for the env routes."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NAME = Field(min_length=1, max_length=255)


class _FileRef(BaseModel):
    project_name: str = _NAME
    file_name: str = _NAME

    @field_validator("file_name")
    @classmethod
    def _plain_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("file_name must be a plain file name")
        return v


class EnvFileUpsert(_FileRef):
    encrypted_content: str
    iv: str
    tag: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EnvVersionIn(_FileRef):
    version_token: str = Field(min_length=1, max_length=64)
    encrypted_content: str
    iv: str
    tag: str
    commit_message: Optional[str] = None
    author_email: str
    is_rollback: bool = False
    created_at: datetime


class RollbackIn(_FileRef):
    from_version_token: str
    to_version_token: str
    reason: Optional[str] = None
    performed_by: str
    created_at: datetime


class ProjectRef(BaseModel):
    project_name: str = _NAME


class ProjectRename(ProjectRef):
    new_name: str = _NAME


class EnvFileRename(BaseModel):
    project_name: str = _NAME
    old_file_name: str = _NAME
    new_file_name: str = _NAME


class FileRef(_FileRef):
    pass


class VersionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version_token: str
    encrypted_content: str
    iv: str
    tag: str
    commit_message: Optional[str] = None
    author_email: str
    is_rollback: bool
    created_at: datetime


class RollbackOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_version_token: str
    to_version_token: str
    reason: Optional[str] = None
    performed_by: str
    created_at: datetime


class RemoteFileOut(BaseModel):
    """A file with its full history, as pulled by clients."""

    file_name: str
    encrypted_content: str
    iv: str
    tag: str
    created_at: datetime
    updated_at: datetime
    versions: List[VersionOut]
    rollbacks: List[RollbackOut]


class ProjectOut(BaseModel):
    name: str
    file_count: int
    created_at: datetime
    updated_at: datetime
