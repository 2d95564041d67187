import pytest
from fakeredis import FakeAsyncRedis

from security.rate_limit import RateLimiter
from services.rental_service import RentalService
from utils.exceptions import RateLimited


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


async def test_requests_within_limit_are_counted(redis_client):
    limiter = RateLimiter(redis_client, limit=3, period=60)

    counts = [await limiter.hit(7) for _ in range(3)]

    assert counts == [1, 2, 3]
    assert 0 < await redis_client.ttl("rate_limit:rental:7") <= 60


async def test_request_over_limit_is_refused(redis_client):
    limiter = RateLimiter(redis_client, limit=2, period=60)
    await limiter.hit(7)
    await limiter.hit(7)

    with pytest.raises(RateLimited):
        await limiter.hit(7)
    # Other subjects have their own window.
    assert await limiter.hit(8) == 1


async def test_rental_requests_are_rate_limited(
        redis_client, session_factory, ledger, catalog, gateway, clock, whatsapp
):
    service = RentalService(
        session_factory, ledger, catalog, gateway,
        provider_retry_delay=0, rate_limiter=RateLimiter(redis_client, limit=1, period=60), clock=clock,
    )
    account = await ledger.open_account("lee", initial_credit=5)
    await service.create_rental(account.id, "wa")

    with pytest.raises(RateLimited):
        await service.create_rental(account.id, "wa")
    assert gateway.count("request_number") == 1
