import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.credit_account import CreditAccount
from models.user import User
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Throw-away SQLite database with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'trayve.db'}",
        connect_args={"timeout": 30},
    )
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def seed_merchant(session_maker):
    """Insert a merchant with an explicit balance and tier."""

    async def _seed(user_id: str, *, total: int = 5000, used: int = 0, tier: str = "free") -> None:
        async with session_maker() as db:
            db.add(User(id=user_id, email=f"{user_id}@shop.test", subscription_tier=tier))
            db.add(CreditAccount(user_id=user_id, total_credits=total, used_credits=used))
            await db.commit()

    return _seed
