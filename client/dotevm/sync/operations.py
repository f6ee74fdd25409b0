"""Typed payloads for queued remote operations."""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from dotevm.errors import ValidationError


class OperationType(str, Enum):
    RENAME = "RENAME"
    DELETE = "DELETE"
    SYNC = "SYNC"


class EntityType(str, Enum):
    PROJECT = "PROJECT"
    FILE = "FILE"


class RenamePayload(BaseModel):
    """Rename of a project (old/new project name) or of a file within project_name."""

    kind: Literal["rename"] = "rename"
    entity: EntityType
    project_name: str
    old_name: str
    new_name: str


class DeletePayload(BaseModel):
    """Remote delete of a whole project, or of file_name within it."""

    kind: Literal["delete"] = "delete"
    entity: EntityType
    project_name: str
    file_name: Optional[str] = None


class SyncPayload(BaseModel):
    kind: Literal["sync"] = "sync"
    project_name: str


Payload = Annotated[Union[RenamePayload, DeletePayload, SyncPayload], Field(discriminator="kind")]

_adapter: TypeAdapter = TypeAdapter(Payload)


def operation_type(payload: Union[RenamePayload, DeletePayload, SyncPayload]) -> OperationType:
    if isinstance(payload, RenamePayload):
        return OperationType.RENAME
    if isinstance(payload, DeletePayload):
        return OperationType.DELETE
    if isinstance(payload, SyncPayload):
        return OperationType.SYNC
    raise TypeError(f"Unknown payload type: {type(payload).__name__}")


def entity_type(payload: Union[RenamePayload, DeletePayload, SyncPayload]) -> EntityType:
    if isinstance(payload, SyncPayload):
        return EntityType.PROJECT
    return payload.entity


def encode_payload(payload: Union[RenamePayload, DeletePayload, SyncPayload]) -> str:
    return payload.model_dump_json()


def decode_payload(raw: str) -> Union[RenamePayload, DeletePayload, SyncPayload]:
    """Parse a stored payload. Raises ValidationError when it is not a known shape."""
    try:
        return _adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed pending operation payload: {e}") from e
