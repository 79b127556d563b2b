"""Tests for the role catalogue and built-in role protection."""

import pytest

from sharedmem.common.errors import (
    BuiltinRoleError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sharedmem.events.types import EventKind
from sharedmem.storage.database import ROLE_ADMIN, ROLE_GUEST, ROLE_USER


def test_builtin_roles_are_seeded(roles):
    by_id = {r.id: r for r in roles.list_roles()}
    assert set(by_id) >= {ROLE_ADMIN, ROLE_USER, ROLE_GUEST}
    assert by_id[ROLE_ADMIN].max_memory_mb == 16384
    assert by_id[ROLE_ADMIN].trust_level > by_id[ROLE_USER].trust_level > by_id[ROLE_GUEST].trust_level
    assert by_id[ROLE_GUEST].can_pull_models is False
    assert all(by_id[r].builtin for r in (ROLE_ADMIN, ROLE_USER, ROLE_GUEST))


def test_seeding_twice_is_idempotent(db, roles):
    db.seed_builtin_roles()
    db.seed_builtin_roles()
    assert len(roles.list_roles()) == 3


def test_create_custom_role_publishes_event(roles, bus):
    subscription = bus.subscribe()
    role = roles.create_role("render-farm", 8192, can_pull_models=True, trust_level=2)

    assert role.id.startswith("role-")
    assert role.builtin is False
    assert roles.get_role(role.id).name == "render-farm"
    assert [e.kind for e in subscription.drain()] == [EventKind.ROLE_CREATED]


def test_duplicate_role_name_conflicts(roles):
    roles.create_role("lab", 1024)
    with pytest.raises(ConflictError):
        roles.create_role("lab", 2048)


@pytest.mark.parametrize(
    "name, quota, trust",
    [("", 1024, 1), ("ok", -1, 1), ("ok", 1024, -2)],
)
def test_create_role_validation(roles, name, quota, trust):
    with pytest.raises(ValidationError):
        roles.create_role(name, quota, trust_level=trust)


def test_deleting_builtin_role_fails(roles):
    with pytest.raises(BuiltinRoleError):
        roles.delete_role(ROLE_ADMIN)
    assert roles.get_role(ROLE_ADMIN).name


def test_deleting_custom_role_leaves_other_devices_alone(roles, registry):
    custom = roles.create_role("temp", 2048)
    device = registry.register("10.0.0.5")
    registry.decide(device.id, True, ROLE_USER)

    roles.delete_role(custom.id)

    with pytest.raises(NotFoundError):
        roles.get_role(custom.id)
    assert registry.get_device(device.id).role_id == ROLE_USER


def test_deleting_role_in_use_conflicts(roles, registry):
    custom = roles.create_role("in-use", 2048)
    device = registry.register("10.0.0.5")
    registry.decide(device.id, True, custom.id)

    with pytest.raises(ConflictError):
        roles.delete_role(custom.id)


def test_builtin_role_cannot_be_renamed_but_quota_can_change(roles):
    with pytest.raises(BuiltinRoleError):
        roles.update_role(ROLE_GUEST, name="visitor")
    updated = roles.update_role(ROLE_GUEST, max_memory_mb=2048)
    assert updated.max_memory_mb == 2048


def test_lowering_quota_below_existing_allocation_rejected(roles, registry):
    device = registry.register("10.0.0.5")
    registry.decide(device.id, True, ROLE_USER)
    registry.set_allocation(device.id, 3000)

    with pytest.raises(ConflictError):
        roles.update_role(ROLE_USER, max_memory_mb=2000)
    assert roles.get_role(ROLE_USER).max_memory_mb == 4096


def test_update_unknown_role(roles):
    with pytest.raises(NotFoundError):
        roles.update_role("role-missing", trust_level=2)
