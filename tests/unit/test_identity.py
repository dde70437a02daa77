import pytest

from signoff.identity import StaticIdentityResolver
from signoff.roles import Role


@pytest.mark.asyncio
async def test_store_manager_matches_the_store(directory):
    found = await directory.resolve_role("acme", "s1", Role.STORE_MANAGER)
    assert found.user_id == "sm-1"
    assert found.name == "Store One Manager"
    assert await directory.resolve_role("acme", "s2", Role.STORE_MANAGER) is None
    assert await directory.resolve_role("acme", None, Role.STORE_MANAGER) is None


@pytest.mark.asyncio
async def test_company_roles_ignore_store_bound_people(directory):
    found = await directory.resolve_role("acme", "s1", Role.MANAGER)
    assert found.user_id == "mgr-1"
    assert await directory.resolve_role("beta", "s1", Role.MANAGER) is None
    assert await directory.resolve_role("acme", "s1", Role.STAFF) is None


@pytest.mark.asyncio
async def test_directory_from_yaml(tmp_path):
    path = tmp_path / "people.yaml"
    path.write_text(
        """
people:
  - user_id: u1
    company_id: acme
    store_id: s1
    roles: [Store_Manager]
  - user_id: u2
    company_id: acme
    roles: [admin]
"""
    )
    directory = StaticIdentityResolver.from_yaml(path)
    assert (await directory.resolve_role("acme", "s1", Role.STORE_MANAGER)).user_id == "u1"
    # legacy "admin" is the head-office manager
    assert (await directory.resolve_role("acme", "s1", Role.MANAGER)).user_id == "u2"
