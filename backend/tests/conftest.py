"""
Shared pytest fixtures for billing tests.

Each test gets its own SQLite database file (through aiosqlite) with the
full schema, a no-op cache and an in-memory fake of the Stripe API.
"""
import os

os.environ.setdefault("ENV_MODE", "local")
os.environ.setdefault("LOGGING_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from viraloop.services.db import Database
from viraloop.utils.cache import Cache
from viraloop.billing.credits.manager import CreditManager
from viraloop.billing.external.stripe.webhooks import WebhookService
from viraloop.billing.repo import subscriptions, teams
from viraloop.billing.repo.tables import metadata
from viraloop.billing.repo.webhook_events import WebhookLock
from tests.billing.fakes import FakeStripeAPI, price_id


# Register custom markers
def pytest_configure(config):
    config.addinivalue_line("markers", "billing: Credit ledger and subscription reconciliation tests")


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await database.initialize()
    await database.create_schema(metadata)
    yield database
    await database.close()


@pytest.fixture
def cache() -> Cache:
    return Cache()


@pytest.fixture
def credit_manager(db, cache) -> CreditManager:
    return CreditManager(db, cache)


@pytest.fixture
def fake_stripe() -> FakeStripeAPI:
    return FakeStripeAPI()


@pytest.fixture
def webhook_service(db, credit_manager, fake_stripe) -> WebhookService:
    return WebhookService(
        db,
        credit_manager,
        fake_stripe,
        webhook_secret=None,
        allow_unsigned=True,
        lock=WebhookLock(db),
    )


@pytest.fixture
def make_team(db):
    async def _make(credits: int = 0, name: str = "Team", team_id: Optional[str] = None) -> Dict:
        async with db.transaction() as session:
            return await teams.create_team(session, name=name, credits=credits, team_id=team_id)
    return _make


@pytest.fixture
def make_subscription(db):
    async def _make(**fields) -> Dict:
        now = datetime.now(timezone.utc)
        data = {
            'user_id': 'user_1',
            'type': 'subscription',
            'plan': 'Growth (monthly)',
            'stripe_subscription': 'sub_123',
            'stripe_subscription_status': 'active',
            'stripe_price_id': price_id("Growth (monthly)"),
            'subscription_valid_until': now + timedelta(days=20),
            'created_at': now - timedelta(days=40),
        }
        data.update(fields)
        async with db.transaction() as session:
            return await subscriptions.create_subscription(session, data)
    return _make


@pytest.fixture
def get_team(db):
    async def _get(team_id: str) -> Optional[Dict]:
        async with db.session() as session:
            return await teams.get_team(session, team_id)
    return _get


@pytest.fixture
def get_subscription(db):
    async def _get(stripe_subscription_id: str) -> Optional[Dict]:
        async with db.session() as session:
            return await subscriptions.get_latest_by_stripe_id(session, stripe_subscription_id)
    return _get
