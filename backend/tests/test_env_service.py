"""Tests for the env service: idempotent upserts, inserts, deletes and renames."""

from datetime import datetime, timedelta, timezone

import pytest

from evm_server.envs import service
from evm_server.envs.schemas import EnvFileRename, EnvFileUpsert, EnvVersionIn, RollbackIn
from evm_server.users.schemas import UserRegister
from evm_server.users.service import create_user

T0 = datetime(2024, 5, 1, 12, 0, 0)


def _file(name=".env", project="api", content="c1", updated_at=None) -> EnvFileUpsert:
    return EnvFileUpsert(
        project_name=project,
        file_name=name,
        encrypted_content=content,
        iv="00" * 12,
        tag="11" * 16,
        updated_at=updated_at,
    )


def _version(token: str, name=".env", created_at=T0) -> EnvVersionIn:
    return EnvVersionIn(
        project_name="api",
        file_name=name,
        version_token=token,
        encrypted_content="c",
        iv="00" * 12,
        tag="11" * 16,
        commit_message="msg",
        author_email="a@example.com",
        created_at=created_at,
    )


async def _register(session_factory, email: str) -> str:
    async with session_factory() as session:
        await create_user(session, UserRegister(email=email, password="s3cret-pass"))
    return email


@pytest.mark.asyncio
async def test_upsert_creates_project_and_overwrites(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file(content="c1"))
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file(content="c2"))
    async with session_factory() as session:
        projects = await service.list_projects(session, owner)
        files = await service.list_project_files(session, owner, "api")
    assert [p.name for p in projects] == ["api"]
    assert projects[0].file_count == 1
    assert len(files) == 1
    assert files[0].encrypted_content == "c2"


@pytest.mark.asyncio
async def test_upsert_keeps_client_updated_at_as_naive_utc(session_factory, email):
    owner = await _register(session_factory, email)
    aware = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    async with session_factory() as session:
        env_file = await service.upsert_env_file(session, owner, _file(updated_at=aware))
    assert env_file.updated_at == T0


@pytest.mark.asyncio
async def test_add_version_is_insert_if_absent(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
        assert await service.add_version(session, owner, _version("a" * 40)) is True
    async with session_factory() as session:
        assert await service.add_version(session, owner, _version("a" * 40)) is False
    async with session_factory() as session:
        files = await service.list_project_files(session, owner, "api")
    assert [v.version_token for v in files[0].versions] == ["a" * 40]


@pytest.mark.asyncio
async def test_versions_listed_oldest_first(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
        await service.add_version(session, owner, _version("b" * 40, created_at=T0 + timedelta(minutes=1)))
        await service.add_version(session, owner, _version("a" * 40, created_at=T0))
    async with session_factory() as session:
        files = await service.list_project_files(session, owner, "api")
    assert [v.version_token[0] for v in files[0].versions] == ["a", "b"]


@pytest.mark.asyncio
async def test_add_version_unknown_file_raises(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        with pytest.raises(LookupError):
            await service.add_version(session, owner, _version("c" * 40))


@pytest.mark.asyncio
async def test_add_rollback_is_insert_if_absent(session_factory, email):
    owner = await _register(session_factory, email)
    body = RollbackIn(
        project_name="api",
        file_name=".env",
        from_version_token="b" * 40,
        to_version_token="a" * 40,
        reason="bad deploy",
        performed_by=owner,
        created_at=T0,
    )
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
        assert await service.add_rollback(session, owner, body) is True
    async with session_factory() as session:
        assert await service.add_rollback(session, owner, body) is False
        files = await service.list_project_files(session, owner, "api")
    assert len(files[0].rollbacks) == 1
    assert files[0].rollbacks[0].reason == "bad deploy"


@pytest.mark.asyncio
async def test_delete_project_cascades_and_is_idempotent(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
        await service.upsert_env_file(session, owner, _file(name=".env.prod"))
        await service.add_version(session, owner, _version("a" * 40))
    async with session_factory() as session:
        assert await service.delete_project(session, owner, "api") == {"deleted": True, "files": 2}
    async with session_factory() as session:
        assert (await service.delete_project(session, owner, "api"))["deleted"] is False
        with pytest.raises(LookupError):
            await service.list_project_files(session, owner, "api")


@pytest.mark.asyncio
async def test_delete_env_file_is_idempotent(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
    async with session_factory() as session:
        assert await service.delete_env_file(session, owner, "api", ".env") == {"deleted": True}
    async with session_factory() as session:
        assert await service.delete_env_file(session, owner, "api", ".env") == {"deleted": False}
        assert await service.delete_env_file(session, owner, "nope", ".env") == {"deleted": False}


@pytest.mark.asyncio
async def test_rename_project_idempotent_and_conflict(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file(project="api"))
        await service.upsert_env_file(session, owner, _file(project="web"))
    async with session_factory() as session:
        assert await service.rename_project(session, owner, "api", "backend") == {"renamed": True}
    async with session_factory() as session:
        # already renamed
        assert await service.rename_project(session, owner, "api", "backend") == {"renamed": False}
        with pytest.raises(ValueError):
            await service.rename_project(session, owner, "backend", "web")
        with pytest.raises(LookupError):
            await service.rename_project(session, owner, "ghost", "spirit")


@pytest.mark.asyncio
async def test_rename_env_file(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file(name=".env"))
        await service.upsert_env_file(session, owner, _file(name=".env.prod"))
    body = EnvFileRename(project_name="api", old_file_name=".env", new_file_name=".env.local")
    async with session_factory() as session:
        assert await service.rename_env_file(session, owner, body) == {"renamed": True}
    async with session_factory() as session:
        assert await service.rename_env_file(session, owner, body) == {"renamed": False}
        clash = EnvFileRename(project_name="api", old_file_name=".env.local", new_file_name=".env.prod")
        with pytest.raises(ValueError):
            await service.rename_env_file(session, owner, clash)
        names = [f.file_name for f in await service.list_project_files(session, owner, "api")]
    assert names == [".env.local", ".env.prod"]


@pytest.mark.asyncio
async def test_projects_are_per_owner(session_factory, email):
    owner = await _register(session_factory, email)
    async with session_factory() as session:
        await service.upsert_env_file(session, owner, _file())
    async with session_factory() as session:
        assert await service.list_projects(session, "someone-else@example.com") == []
        with pytest.raises(LookupError):
            await service.list_project_files(session, "someone-else@example.com", "api")
