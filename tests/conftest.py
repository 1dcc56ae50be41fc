"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from typing import AsyncGenerator, List
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from core.config import Settings
from core.database import build_session_maker
from models import Base, Granularity, Pipeline, PipelineRun, SeriesKind, TimeSeries


class FakeSleep:
    """Records requested delays instead of sleeping"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine with every table created"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,  # Each session gets its own connection
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        DOWNLOAD_DIR=str(tmp_path / "flat_files"),
        FRED_API_KEY=None,
    )


@pytest.fixture
def make_pipeline(session_factory):
    """Create a series and its pipeline"""

    async def _make(
        symbol: str = "X",
        granularity: Granularity = Granularity.D1,
        kind: SeriesKind = SeriesKind.AGGREGATE,
        chain: str = "fake",
        source: str = "fake",
        active: bool = True
    ) -> Pipeline:
        async with session_factory() as session:
            series = TimeSeries(
                symbol=symbol,
                granularity=granularity,
                source=source,
                source_id=f"{symbol}-ID",
                kind=kind,
                description=f"{symbol} test series",
            )
            session.add(series)
            await session.flush()

            pipeline = Pipeline(time_series_id=series.id, chain=chain, active=active)
            session.add(pipeline)
            await session.commit()
            await session.refresh(pipeline)
            return pipeline

    return _make


@pytest.fixture
def make_run(session_factory):
    """Create a run row directly, bypassing the runner's checks"""

    async def _make(pipeline_id: int, **fields) -> PipelineRun:
        async with session_factory() as session:
            run = PipelineRun(pipeline_id=pipeline_id, **fields)
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    return _make
