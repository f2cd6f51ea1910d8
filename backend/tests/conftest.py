import asyncio
import inspect
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("METRICS_ENABLED", "true")
os.environ.setdefault("PIXEL_MOCK_MODE", "true")
os.environ.setdefault("CREDIT_PROVIDER", "mock")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import anyio
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from glasswallet.domain.credit.providers import CreditReport
from glasswallet.domain.users.service import create_user
from glasswallet.infra.db import Base, get_db_session
from glasswallet.main import app
from glasswallet.settings import settings
from glasswallet.shared.timeutils import utcnow

TEST_API_KEY = "gw_test_key_primary"
TEST_CLIENT_ID = "gw_client_primary"
OTHER_API_KEY = "gw_test_key_other"
OTHER_CLIENT_ID = "gw_client_other"
STARTING_BALANCE = 10_000


class FixedCreditProvider:
    """Bureau double returning a configured score and income for every applicant."""

    name = "fixed"

    def __init__(self, credit_score: int = 750, income_estimate: int | None = 7_500_000, *, fail_with=None) -> None:
        self.credit_score = credit_score
        self.income_estimate = income_estimate
        self.fail_with = fail_with
        self.calls = 0

    async def pull(self, applicant, *, transaction_id: str) -> CreditReport:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return CreditReport(
            credit_score=self.credit_score,
            income_estimate=self.income_estimate,
            report_id=f"FIXED_{transaction_id}",
            pulled_at=utcnow(),
            risk_factors=[],
        )

    async def soft_pull(self, *, ssn: str, zip_code: str) -> int:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return self.credit_score


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        name: getattr(settings, name)
        for name in (
            "app_env",
            "testing",
            "metrics_enabled",
            "metrics_token",
            "credit_pull_cost_cents",
            "prequalify_cost_cents",
            "credit_pull_window_hours",
            "outbox_max_attempts",
            "outbox_base_backoff_seconds",
            "baseline_tagging_enabled",
            "tag_rule_priority_order",
            "pixel_sync_max_leads",
            "pixel_batch_sync_max_leads",
            "pixel_batch_sync_max_batch_size",
            "pixel_batch_sync_pause_seconds",
            "analytics_max_range_days",
        )
    }
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def restore_app_state():
    """Restore app.state after each test to prevent state pollution."""
    services = app.state.services
    original_provider = services.credit_provider
    original_adapters = services.pixel_adapters
    original_transport = services.webhook_transport
    original_metrics = getattr(app.state, "metrics", None)
    original_app_settings = getattr(app.state, "app_settings", None)
    yield
    services.credit_provider = original_provider
    services.pixel_adapters = original_adapters
    services.webhook_transport = original_transport
    app.state.metrics = original_metrics
    app.state.app_settings = original_app_settings


async def _seed_users(session_factory) -> dict:
    async with session_factory() as session:
        primary, _ = await create_user(
            session,
            email="owner@example.com",
            company_name="Primary Lending",
            credit_balance=STARTING_BALANCE,
            api_key=TEST_API_KEY,
            client_id=TEST_CLIENT_ID,
        )
        other, _ = await create_user(
            session,
            email="other@example.com",
            company_name="Other Lending",
            credit_balance=STARTING_BALANCE,
            api_key=OTHER_API_KEY,
            client_id=OTHER_CLIENT_ID,
        )
        await session.commit()
        return {"primary": primary.user_id, "other": other.user_id}


@pytest.fixture(autouse=True)
def clean_database(test_engine, request):
    async def truncate_tables() -> dict:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())
        return await _seed_users(async_sessionmaker(test_engine, expire_on_commit=False))

    request.node.seeded_users = asyncio.run(truncate_tables())
    reset = getattr(app.state.services, "reset_limits", None)
    if reset and inspect.iscoroutinefunction(reset):
        asyncio.run(reset())
    yield


@pytest.fixture()
def user_id(request):
    return request.node.seeded_users["primary"]


@pytest.fixture()
def other_user_id(request):
    return request.node.seeded_users["other"]


@pytest.fixture()
def auth_headers():
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture()
def other_auth_headers():
    return {"X-API-Key": OTHER_API_KEY}


@pytest.fixture()
def credit_provider():
    provider = FixedCreditProvider()
    app.state.services.credit_provider = provider
    return provider


@pytest.fixture()
def client(async_session_maker):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


def run(coro_fn, *args):
    """Run an async callable from a sync test the way the suite does everywhere."""
    return anyio.run(coro_fn, *args)
