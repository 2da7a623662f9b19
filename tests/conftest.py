"""
Shared test fixtures for pytest.

Provides a real in-memory database and factories for the governance
domain:
- settings: Test environment configuration (aiosqlite in-memory)
- engine / db_session: Real async engine and session with the full schema
- clock: FrozenClock pinned to 2026-01-15 09:00 UTC
- audit: AuditLogger bound to the test session and clock
- make_institution, make_user, make_group, make_child: Row factories
- institution, super_admin, admin, educator, parent: Ready-made rows
- principal_for: Build a Principal from a User row
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from kitagov.auth.principal import Principal
from kitagov.config import Environment, Settings, get_settings
from kitagov.core.audit import AuditFailureMonitor, AuditLogger, failure_monitor
from kitagov.database import Base, _build_engine, build_session_factory
from kitagov.models import Child, Group, Institution, User, UserRole
from kitagov.telemetry import clear_context
from kitagov.testing.clock import FrozenClock


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_failure_monitor():
    """The process-wide audit failure counter must not leak between tests."""
    failure_monitor.reset()
    yield
    failure_monitor.reset()


@pytest.fixture(autouse=True)
def _clear_log_context():
    clear_context()
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Settings, clock & database
# ------------------------------------------------------------------ #

@pytest.fixture
def settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        database_url="sqlite+aiosqlite:///:memory:",
        db_echo_sql=False,
        retention_scheduler_enabled=False,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with the full schema, one per test."""
    engine = _build_engine(settings, for_test=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for a single test.

    Nothing is committed unless the test does it explicitly; the session
    is rolled back on teardown.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def monitor() -> AuditFailureMonitor:
    return AuditFailureMonitor()


@pytest.fixture
def audit(db_session: AsyncSession, clock: FrozenClock, settings: Settings) -> AuditLogger:
    return AuditLogger(db_session, clock=clock, settings=settings)


# ------------------------------------------------------------------ #
# Factories
# ------------------------------------------------------------------ #

@pytest.fixture
def make_institution(db_session: AsyncSession) -> Callable[..., Awaitable[Institution]]:
    async def _make(name: str = "Kita Sonnenschein") -> Institution:
        institution = Institution(name=name, address="Lindenstraße 12, Berlin")
        db_session.add(institution)
        await db_session.flush()
        return institution

    return _make


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    async def _make(
        role: UserRole = UserRole.PARENT,
        institution: Institution | None = None,
        *,
        consent_given: bool = False,
        email: str | None = None,
        name: str | None = None,
    ) -> User:
        user = User(
            email=email or f"{role.lower()}-{uuid.uuid4().hex[:8]}@kita.dev",
            name=name or f"Test {role.title()}",
            role=role,
            institution_id=institution.id if institution else None,
            consent_given=consent_given,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _make


@pytest.fixture
def make_group(db_session: AsyncSession) -> Callable[..., Awaitable[Group]]:
    async def _make(institution: Institution, name: str = "Marienkäfer") -> Group:
        group = Group(institution_id=institution.id, name=name)
        db_session.add(group)
        await db_session.flush()
        return group

    return _make


@pytest.fixture
def make_child(db_session: AsyncSession) -> Callable[..., Awaitable[Child]]:
    async def _make(
        institution: Institution,
        *,
        group: Group | None = None,
        parents: list[User] | None = None,
        manual_consent: bool = False,
        name: str = "Emma Schulz",
    ) -> Child:
        child = Child(
            institution_id=institution.id,
            group_id=group.id if group else None,
            name=name,
            birth_date=date(2021, 4, 12),
            manual_consent_given=manual_consent,
        )
        child.parents = list(parents or [])
        db_session.add(child)
        await db_session.flush()
        return child

    return _make


# ------------------------------------------------------------------ #
# Ready-made rows
# ------------------------------------------------------------------ #

@pytest_asyncio.fixture
async def institution(make_institution) -> Institution:
    return await make_institution()


@pytest_asyncio.fixture
async def other_institution(make_institution) -> Institution:
    return await make_institution("Kita Regenbogen")


@pytest_asyncio.fixture
async def super_admin(make_user) -> User:
    return await make_user(UserRole.SUPER_ADMIN, email="super@kita.dev")


@pytest_asyncio.fixture
async def admin(make_user, institution) -> User:
    return await make_user(UserRole.ADMIN, institution, email="leitung@kita.dev")


@pytest_asyncio.fixture
async def educator(make_user, institution) -> User:
    return await make_user(UserRole.EDUCATOR, institution, email="erzieher@kita.dev")


@pytest_asyncio.fixture
async def parent(make_user, institution) -> User:
    return await make_user(UserRole.PARENT, institution, email="eltern@kita.dev")


@pytest.fixture
def principal_for() -> Callable[[User], Principal]:
    return Principal.from_user
