"""Shared test fixtures for callrouter tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from callrouter.database import Base, import_models
from callrouter.models.schedule import OnCallScheduleEntry
from callrouter.models.site import Site
from callrouter.models.user import User, UserRole
from callrouter.routing.config_store import BusinessHoursWindow, ConfigStore
from callrouter.routing.engine import EscalationEngine
from callrouter.services.telephony import PlaceCallRequest

import_models()

# Monday 2026-10-19 10:00 in Los Angeles (PDT, UTC-7).
MONDAY_MORNING_UTC = datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)

LA_WEEKDAYS = BusinessHoursWindow(
    days=[1, 2, 3, 4, 5],
    start_hour=8,
    end_hour=17,
    timezone="America/Los_Angeles",
)


class FixedClock:
    """Deterministic UTC clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingGateway:
    """Telephony gateway that only remembers what it was asked to ring."""

    def __init__(self) -> None:
        self.requests: list[PlaceCallRequest] = []

    def place_call(self, request: PlaceCallRequest) -> None:
        self.requests.append(request)

    @property
    def rung_user_ids(self) -> list[int]:
        return [request.user_id for request in self.requests]


class Seeder:
    """Inserts users, shifts, sites and config rows in committed transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: FixedClock) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self._phones = 0

    async def user(
        self,
        name: str,
        role: UserRole = UserRole.TECH,
        *,
        phone: str | None = "auto",
        active: bool = True,
        available: bool = True,
    ) -> User:
        if phone == "auto":
            self._phones += 1
            phone = f"+1555010{self._phones:04d}"
        user = User(
            name=name,
            email=f"{name.lower()}@example.com",
            phone=phone,
            role=role.value,
            active=active,
            available=available,
        )
        async with self.session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    async def shift(
        self,
        user: User,
        *,
        primary: bool = False,
        secondary: bool = False,
        pool: bool = False,
        priority: int = 1,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> OnCallScheduleEntry:
        now = self.clock()
        entry = OnCallScheduleEntry(
            user_id=user.id,
            start_time=start or now - timedelta(hours=1),
            end_time=end or now + timedelta(hours=8),
            priority_order=priority,
            is_primary=primary,
            is_secondary=secondary,
            eligible_pool=pool,
        )
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def site(self, name: str, rules: list[str]) -> Site:
        site = Site(name=name, address=f"{name} address", phone_match_rules=rules)
        async with self.session_factory() as session:
            session.add(site)
            await session.commit()
        return site

    async def business_hours(self, window: BusinessHoursWindow = LA_WEEKDAYS) -> None:
        async with self.session_factory() as session:
            await ConfigStore(session).set_business_hours(window)
            await session.commit()

    async def ladder(self, steps: list[str], business_hours: bool = True) -> None:
        async with self.session_factory() as session:
            await ConfigStore(session).set_ladder(business_hours, steps)
            await session.commit()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh file-backed SQLite database per test so several sessions can share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'callrouter.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(MONDAY_MORNING_UTC)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def seed(session_factory, clock):
    return Seeder(session_factory, clock)


@pytest_asyncio.fixture
async def engine(session_factory, gateway, clock):
    routing_engine = EscalationEngine(session_factory, gateway, clock=clock)
    yield routing_engine
    await routing_engine.shutdown()


@pytest_asyncio.fixture
async def staff(seed):
    """A primary and secondary on shift plus one admin and one manager."""
    primary = await seed.user("Pat", UserRole.TECH)
    secondary = await seed.user("Sam", UserRole.TECH)
    admin = await seed.user("Ada", UserRole.ADMIN)
    manager = await seed.user("Max", UserRole.MANAGER)
    await seed.shift(primary, primary=True)
    await seed.shift(secondary, secondary=True)
    await seed.business_hours()
    return {"primary": primary, "secondary": secondary, "admin": admin, "manager": manager}
