import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from services.entitlements import invalidate_entitlements_cache
from services.rate_limiter import rate_limiter


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit and entitlement state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limiter.clear()
    invalidate_entitlements_cache()
    yield
    rate_limiter.clear()
    invalidate_entitlements_cache()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credits.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session
