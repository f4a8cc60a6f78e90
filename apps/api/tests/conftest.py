import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import Base, build_engine, get_db, get_session_maker
from main import app
from routers import rate_limit
from services.image_generation import GeneratedImage, ImageGenerator, get_image_generator


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
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


class FakeImageGenerator(ImageGenerator):
    def __init__(self):
        self.calls = []
        self.error = None

    async def generate(self, *, prompt, images):
        self.calls.append({"prompt": prompt, "images": images})
        if self.error is not None:
            raise self.error
        return GeneratedImage(url="data:image/png;base64,aGVsbG8=", prompt=prompt, description="a portrait")


@pytest.fixture
def fake_generator():
    return FakeImageGenerator()


@pytest_asyncio.fixture
async def api_client(session_maker, fake_generator):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_image_generator] = lambda: fake_generator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_maker, None)
    app.dependency_overrides.pop(get_image_generator, None)
