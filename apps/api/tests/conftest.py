import sys
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists() and str(src_path) not in sys.path:
        sys.path.insert(0, str(src_path))


_configure_path()

from agrimarket_api.app import create_app  # noqa: E402
from agrimarket_api.db.base import Base  # noqa: E402
from agrimarket_api.db.session import get_session  # noqa: E402
from agrimarket_api.models.order import Order  # noqa: E402
from agrimarket_api.models.user import User  # noqa: E402
from agrimarket_api.observability.loyalty import get_loyalty_store  # noqa: E402
from agrimarket_api.services.loyalty import get_catalog_registry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_loyalty_state():
    get_catalog_registry().reset()
    get_loyalty_store().reset()
    yield
    get_catalog_registry().reset()
    get_loyalty_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on separate connections, for interleaving concurrent writers."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user():
    """Persist a user, optionally with historical orders as ``(status, total)`` pairs."""

    async def _make_user(factory, *, email: str | None = None, orders=()) -> User:
        async with factory() as session:
            user = User(email=email or f"grower-{uuid4().hex[:8]}@example.com")
            session.add(user)
            await session.flush()
            for index, (status, total) in enumerate(orders):
                session.add(
                    Order(
                        order_number=f"HIST-{user.id.hex[:6]}-{index}",
                        user_id=user.id,
                        status=status,
                        total=Decimal(str(total)),
                    )
                )
            await session.commit()
            return user

    return _make_user
