import asyncio
import heapq
import os
import random
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path for module resolution
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from app import create_app, db
from config import PaymentSettings
from payment_gateway import SandboxGateway
from payment_service import PaymentService, TransactionIdGenerator
from transaction_store import InMemoryTransactionStore

OPERATOR_KEY = 'test-operator-key'
WEBHOOK_SECRET = 'test-secret-webhook'


class FakeClock:
    """Virtual time: `sleep` parks the caller until `advance` moves past its wake-up time."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 10, 12, 0, 0, tzinfo=timezone.utc)
        self._sleepers = []
        self._seq = 0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        future = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._sleepers, (self.now + timedelta(seconds=seconds), self._seq, future))
        await future

    async def advance(self, seconds):
        target = self.now + timedelta(seconds=seconds)
        await self._settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            wake_at, _, future = heapq.heappop(self._sleepers)
            self.now = max(self.now, wake_at)
            if not future.done():
                future.set_result(None)
            await self._settle()
        self.now = target

    async def _settle(self):
        for _ in range(20):
            await asyncio.sleep(0)


def make_gateway(**overrides):
    options = dict(
        failure_rate=0.0,
        settlement_probability=0.0,
        min_latency=0,
        max_latency=0,
        render_qr_images=False,
        rng=random.Random(1234),
    )
    options.update(overrides)
    return SandboxGateway(**options)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def settings():
    return PaymentSettings()


@pytest.fixture
def service(store, gateway, settings, clock):
    return PaymentService(store, gateway, settings, clock=clock, id_generator=TransactionIdGenerator(clock))


@pytest.fixture
def test_app(tmp_path, monkeypatch):
    # Setup env for testing
    monkeypatch.setenv('SECRET_KEY', 'test-secret')

    settings = PaymentSettings(webhook_secret=WEBHOOK_SECRET, operator_api_key=OPERATOR_KEY)
    app = create_app(
        {
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'payments.db'}",
            'TESTING': True,
            'RATELIMIT_ENABLED': False,
        },
        settings=settings,
        gateway=make_gateway(),
    )

    yield app

    # Cleanup
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(test_app):
    return test_app.test_client()


@pytest.fixture
def auth_headers():
    return {'X-API-KEY': OPERATOR_KEY}
