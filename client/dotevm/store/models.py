"""Local SQLAlchemy models. Timestamps are naive UTC."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as naive UTC, the form stored in SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalize a naive-UTC or aware datetime to aware UTC for comparisons."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp from the remote store into naive UTC."""
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return as_utc(parsed).replace(tzinfo=None)


def format_timestamp(value: datetime) -> str:
    """ISO 8601 with explicit UTC offset, as sent to the remote store."""
    return as_utc(value).isoformat()


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_salt: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_to_server: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_projects_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    directory_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class EnvFile(Base):
    """A tracked file. Content columns always mirror the head version."""

    __tablename__ = "env_files"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_env_files_project_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    encrypted_content: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    tag: Mapped[str] = mapped_column(String(64), nullable=False)
    current_version_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class EnvVersion(Base):
    """Immutable snapshot. Never updated except for the synced flag."""

    __tablename__ = "env_versions"
    __table_args__ = (
        UniqueConstraint("env_file_id", "version_token", name="uq_env_versions_file_token"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    env_file_id: Mapped[int] = mapped_column(ForeignKey("env_files.id"), nullable=False)
    version_token: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_content: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    tag: Mapped[str] = mapped_column(String(64), nullable=False)
    commit_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author_email: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_version_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_to_server: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def short_token(self) -> str:
        return self.version_token[:7]


class RollbackRecord(Base):
    """Append-only audit entry written by every rollback."""

    __tablename__ = "rollback_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    env_file_id: Mapped[int] = mapped_column(ForeignKey("env_files.id"), nullable=False)
    from_version_token: Mapped[str] = mapped_column(String(64), nullable=False)
    to_version_token: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    synced_to_server: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class PendingOperation(Base):
    """Remote side effect that failed for connectivity reasons, awaiting replay."""

    __tablename__ = "pending_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    project_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
