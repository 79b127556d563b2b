"""SQLite persistence for devices, roles, allocations and session history.

The storage layer is deliberately thin: it owns the schema and a session
factory, while the registry and scheduler own the queries that enforce
their invariants (atomic insert-or-ignore, conditional status updates).
"""

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from sharedmem.common.logging import get_logger
from sharedmem.common.timeutil import utc_now

log = get_logger(__name__)

Base = declarative_base()

ROLE_ADMIN = "role-admin"
ROLE_USER = "role-user"
ROLE_GUEST = "role-guest"

BUILTIN_ROLES = (
    {"id": ROLE_ADMIN, "name": "admin", "max_memory_mb": 16384,
     "can_pull_models": True, "trust_level": 3},
    {"id": ROLE_USER, "name": "user", "max_memory_mb": 4096,
     "can_pull_models": True, "trust_level": 2},
    {"id": ROLE_GUEST, "name": "guest", "max_memory_mb": 1024,
     "can_pull_models": False, "trust_level": 1},
)


class RoleRow(Base):
    __tablename__ = "roles"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    max_memory_mb = Column(Integer, nullable=False)
    can_pull_models = Column(Boolean, nullable=False, default=False)
    trust_level = Column(Integer, nullable=False, default=1)
    builtin = Column(Boolean, nullable=False, default=False)
    created_at = Column(String(32), nullable=False)


class DeviceRow(Base):
    __tablename__ = "devices"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=False, unique=True)
    hardware_id = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    role_id = Column(String, ForeignKey("roles.id"), nullable=True)
    status = Column(String, nullable=False, default="pending")
    discovery_method = Column(String, nullable=False, default="manual")
    allocated_memory_mb = Column(Integer, nullable=False, default=0)
    rpc_port = Column(Integer, nullable=False, default=8181)
    rpc_status = Column(String, nullable=False, default="offline")
    memory_total_mb = Column(Integer, nullable=False, default=0)
    memory_free_mb = Column(Integer, nullable=False, default=0)
    first_seen = Column(String(32), nullable=False)
    created_at = Column(String(32), nullable=False)
    last_seen = Column(String(32), nullable=False)
    # Observation time of the last applied reachability result
    last_probe_at = Column(String(32), nullable=True)


class AllocationRow(Base):
    __tablename__ = "allocations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(
        String, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    memory_mb = Column(Integer, nullable=False)
    provider = Column(String, nullable=True)
    granted_at = Column(String(32), nullable=False)
    revoked_at = Column(String(32), nullable=True)


class InferenceSessionRow(Base):
    __tablename__ = "inference_sessions"

    id = Column(String, primary_key=True)
    model_path = Column(String, nullable=False)
    status = Column(String, nullable=False)
    device_ids = Column(JSON, nullable=False, default=list)
    layer_assignment = Column(JSON, nullable=False, default=list)
    ctx_size = Column(Integer, nullable=False)
    gpu_layers = Column(Integer, nullable=False)
    warnings = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)
    started_at = Column(String(32), nullable=False)
    stopped_at = Column(String(32), nullable=True)


def _enable_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Engine plus a serialized session factory.

    SQLite allows a single writer, so sessions are handed out under one
    lock. Callers must never make network calls while holding a session.
    """

    def __init__(self, url: str = "sqlite:///./data/shared_memory.db"):
        self.url = url
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        elif url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, **kwargs)
        event.listen(self.engine, "connect", _enable_foreign_keys)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        self._lock = threading.RLock()

    def init_schema(self) -> None:
        """Create tables if missing and seed the built-in roles."""
        Base.metadata.create_all(self.engine)
        self.seed_builtin_roles()
        log.info(f"Database ready at {self.url}")

    def seed_builtin_roles(self) -> None:
        now = utc_now()
        with self.session() as session:
            for role in BUILTIN_ROLES:
                stmt = sqlite_insert(RoleRow).values(
                    builtin=True, created_at=now, **role
                ).on_conflict_do_nothing(index_elements=["id"])
                session.execute(stmt)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session scope: commit on success, rollback on error."""
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def close(self) -> None:
        self.engine.dispose()
