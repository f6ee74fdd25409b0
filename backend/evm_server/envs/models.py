"""Remote copies of projects, env files, versions and rollback history."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from evm_server.db.session import Base


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("owner_email", "name", name="uq_projects_owner_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_email: Mapped[str] = mapped_column(ForeignKey("users.email"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EnvFile(Base):
    __tablename__ = "env_files"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_env_files_project_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    encrypted_content: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    tag: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EnvVersion(Base):
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
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RollbackRecord(Base):
    __tablename__ = "rollback_history"
    __table_args__ = (
        UniqueConstraint(
            "env_file_id",
            "from_version_token",
            "to_version_token",
            "created_at",
            name="uq_rollback_history_entry",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    env_file_id: Mapped[int] = mapped_column(ForeignKey("env_files.id"), nullable=False)
    from_version_token: Mapped[str] = mapped_column(String(64), nullable=False)
    to_version_token: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
