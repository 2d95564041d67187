from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from database.connection import build_engine, build_session_factory, init_db
from services.catalog_service import ServiceCatalog
from services.ledger_service import Ledger
from services.provider_gateway import ActivationState, ActivationStatus, GrantedNumber, NumberProviderGateway
from services.rental_service import RentalService


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeGateway(NumberProviderGateway):
    """
    In-memory provider. Every call is recorded in ``calls``; errors queued
    with ``fail_next`` are raised by the next calls to that method.
    """

    def __init__(self):
        self.calls = []
        self.statuses = {}
        self._failures = defaultdict(list)
        self._next_id = 1000

    def fail_next(self, method: str, *errors: Exception) -> None:
        self._failures[method].extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def deliver_code(self, activation_id: str, code: str) -> None:
        self.statuses[activation_id] = ActivationStatus.code_received(code)

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if self._failures[method]:
            raise self._failures[method].pop(0)

    async def request_number(self, service_code, country_code="0", operator=None):
        self._record("request_number", service_code, country_code, operator)
        self._next_id += 1
        activation_id = str(self._next_id)
        self.statuses[activation_id] = ActivationStatus(ActivationState.AWAITING_CODE)
        return GrantedNumber(activation_id=activation_id, phone_number=f"+1555{self._next_id:07d}")

    async def poll_status(self, activation_id):
        self._record("poll_status", activation_id)
        return self.statuses.get(activation_id, ActivationStatus(ActivationState.UNKNOWN))

    async def request_additional_code(self, activation_id):
        self._record("request_additional_code", activation_id)
        self.statuses[activation_id] = ActivationStatus(ActivationState.AWAITING_RETRY)

    async def cancel(self, activation_id):
        self._record("cancel", activation_id)
        self.statuses[activation_id] = ActivationStatus(ActivationState.CANCELLED)

    async def confirm_completion(self, activation_id):
        self._record("confirm_completion", activation_id)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)


@pytest.fixture
def catalog(session_factory):
    return ServiceCatalog(session_factory)


@pytest.fixture
def rental_service(session_factory, ledger, catalog, gateway, clock):
    return RentalService(
        session_factory,
        ledger,
        catalog,
        gateway,
        window_seconds=120,
        provider_retry_delay=0,
        clock=clock,
    )


@pytest.fixture
async def whatsapp(catalog):
    return await catalog.upsert("wa", "WhatsApp", Decimal("0.50"))


@pytest.fixture
async def account(ledger):
    return await ledger.open_account("alice", initial_credit=Decimal("1.00"))
