from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from panelreview.config import Settings
from panelreview.db.session import build_engine, build_session_maker, init_db
from panelreview.main import create_app
from panelreview.schemas.review import ReviewConfig
from panelreview.services.analysis import AnalysisGateway
from panelreview.services.review_config import ReviewConfigStore
from panelreview.services.review_service import ReviewService
from tests.review_fixtures import FakeRegenerator, FakeVisionProvider


@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'review.db'}",
        anthropic_api_key=None,
        anthropic_auth_token=None,
        vision_max_retries=0,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_maker(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def test_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture()
def vision() -> FakeVisionProvider:
    return FakeVisionProvider()


@pytest.fixture()
def review_config() -> ReviewConfigStore:
    return ReviewConfigStore(
        ReviewConfig(
            mode="hitl",
            max_iterations=3,
            min_acceptance_score=0.7,
            auto_approve_above=0.9,
            pause_for_human_below=0.5,
        )
    )


@pytest.fixture()
def review_service(session_maker, vision: FakeVisionProvider, review_config: ReviewConfigStore) -> ReviewService:
    return ReviewService(session_maker, AnalysisGateway(vision), review_config)


@pytest.fixture()
def regenerator(session_maker) -> FakeRegenerator:
    return FakeRegenerator(session_maker)


@pytest.fixture()
def app(test_settings: Settings, review_service: ReviewService, regenerator: FakeRegenerator):
    return create_app(test_settings, review_service=review_service, panel_regenerator=regenerator)


@pytest_asyncio.fixture(scope="function")
async def async_client(app):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
