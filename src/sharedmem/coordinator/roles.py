"""Role catalogue: named quota and trust bundles for approved devices."""

import uuid
from dataclasses import asdict, dataclass
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from sharedmem.common.errors import (
    BuiltinRoleError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sharedmem.common.logging import get_logger
from sharedmem.common.timeutil import utc_now
from sharedmem.events.bus import EventBus
from sharedmem.events.types import DomainEvent, EventKind
from sharedmem.storage.database import Database, DeviceRow, RoleRow

log = get_logger(__name__)


@dataclass
class Role:
    """A quota/trust bundle."""
    id: str
    name: str
    max_memory_mb: int
    can_pull_models: bool
    trust_level: int
    builtin: bool
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


def _to_role(row: RoleRow) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        max_memory_mb=row.max_memory_mb,
        can_pull_models=bool(row.can_pull_models),
        trust_level=row.trust_level,
        builtin=bool(row.builtin),
        created_at=row.created_at,
    )


def _validate_fields(
    name: Optional[str],
    max_memory_mb: Optional[int],
    trust_level: Optional[int],
) -> None:
    if name is not None and not name.strip():
        raise ValidationError("Role name must not be empty")
    if max_memory_mb is not None and max_memory_mb < 0:
        raise ValidationError("max_memory_mb must be >= 0")
    if trust_level is not None and trust_level < 0:
        raise ValidationError("trust_level must be >= 0")


class RoleService:
    """CRUD over roles with the built-in and quota invariants enforced."""

    def __init__(self, db: Database, bus: EventBus):
        self.db = db
        self.bus = bus

    def list_roles(self) -> List[Role]:
        with self.db.session() as session:
            rows = session.scalars(
                select(RoleRow).order_by(RoleRow.trust_level.desc(), RoleRow.name)
            ).all()
            return [_to_role(row) for row in rows]

    def get_role(self, role_id: str) -> Role:
        with self.db.session() as session:
            row = session.get(RoleRow, role_id)
            if row is None:
                raise NotFoundError(f"Role '{role_id}' not found")
            return _to_role(row)

    def create_role(
        self,
        name: str,
        max_memory_mb: int,
        can_pull_models: bool = False,
        trust_level: int = 1,
    ) -> Role:
        _validate_fields(name, max_memory_mb, trust_level)
        row = RoleRow(
            id=f"role-{uuid.uuid4().hex[:12]}",
            name=name.strip(),
            max_memory_mb=max_memory_mb,
            can_pull_models=can_pull_models,
            trust_level=trust_level,
            builtin=False,
            created_at=utc_now(),
        )
        try:
            with self.db.session() as session:
                session.add(row)
        except IntegrityError as e:
            raise ConflictError(f"Role name '{name}' already exists") from e

        role = _to_role(row)
        log.info(f"Role created: {role.name} ({role.max_memory_mb}MB, trust {role.trust_level})")
        self.bus.publish(DomainEvent(EventKind.ROLE_CREATED, {"role": role.to_dict()}))
        return role

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        max_memory_mb: Optional[int] = None,
        can_pull_models: Optional[bool] = None,
        trust_level: Optional[int] = None,
    ) -> Role:
        """Update a role in place.

        Lowering the quota below an allocation already granted to a device
        with this role is rejected, so allocated <= quota keeps holding.
        """
        _validate_fields(name, max_memory_mb, trust_level)
        try:
            with self.db.session() as session:
                row = session.get(RoleRow, role_id)
                if row is None:
                    raise NotFoundError(f"Role '{role_id}' not found")
                if row.builtin and name is not None and name.strip() != row.name:
                    raise BuiltinRoleError(f"Built-in role '{row.name}' cannot be renamed")

                if max_memory_mb is not None:
                    largest = session.scalar(
                        select(func.max(DeviceRow.allocated_memory_mb)).where(
                            DeviceRow.role_id == role_id
                        )
                    ) or 0
                    if largest > max_memory_mb:
                        raise ConflictError(
                            f"A device with role '{row.name}' holds {largest}MB, "
                            f"above the requested quota of {max_memory_mb}MB"
                        )
                    row.max_memory_mb = max_memory_mb
                if name is not None:
                    row.name = name.strip()
                if can_pull_models is not None:
                    row.can_pull_models = can_pull_models
                if trust_level is not None:
                    row.trust_level = trust_level
                session.flush()
                role = _to_role(row)
        except IntegrityError as e:
            raise ConflictError(f"Role name '{name}' already exists") from e

        self.bus.publish(DomainEvent(EventKind.ROLE_UPDATED, {"role": role.to_dict()}))
        return role

    def delete_role(self, role_id: str) -> None:
        with self.db.session() as session:
            row = session.get(RoleRow, role_id)
            if row is None:
                raise NotFoundError(f"Role '{role_id}' not found")
            if row.builtin:
                raise BuiltinRoleError(f"Built-in role '{row.name}' cannot be deleted")
            in_use = session.scalar(
                select(func.count()).select_from(DeviceRow).where(DeviceRow.role_id == role_id)
            )
            if in_use:
                raise ConflictError(
                    f"Role '{row.name}' is assigned to {in_use} device(s)"
                )
            session.delete(row)

        log.info(f"Role deleted: {role_id}")
        self.bus.publish(DomainEvent(EventKind.ROLE_DELETED, {"role_id": role_id}))
