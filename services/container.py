from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import Settings
from security.rate_limit import RateLimiter
from services.catalog_service import ServiceCatalog
from services.ledger_service import Ledger
from services.payment_service import PaymentSettlement
from services.provider_gateway import NumberProviderGateway
from services.rental_service import RentalService
from workers.rental_worker import TimeoutSupervisor


@dataclass
class Components:
    settings: Settings
    ledger: Ledger
    catalog: ServiceCatalog
    gateway: NumberProviderGateway
    rental_service: RentalService
    supervisor: TimeoutSupervisor
    payments: PaymentSettlement


def build_components(
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: NumberProviderGateway,
        redis_client: Optional[redis.Redis] = None,
) -> Components:
    """Wire the core services together. Nothing here touches the network."""
    ledger = Ledger(session_factory)
    catalog = ServiceCatalog(session_factory)

    rate_limiter = None
    if redis_client is not None:
        rate_limiter = RateLimiter(
            redis_client, limit=settings.RENTAL_RATE_LIMIT, period=settings.RENTAL_RATE_PERIOD
        )

    rental_service = RentalService(
        session_factory,
        ledger,
        catalog,
        gateway,
        window_seconds=settings.RENTAL_WINDOW_SECONDS,
        provider_attempts=settings.PROVIDER_RETRY_ATTEMPTS,
        provider_retry_delay=settings.PROVIDER_RETRY_BASE_DELAY,
        persist_attempts=settings.PERSIST_RETRY_ATTEMPTS,
        refund_unused=settings.REFUND_UNUSED_RENTALS,
        rate_limiter=rate_limiter,
    )
    supervisor = TimeoutSupervisor(rental_service, sweep_interval=settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
    rental_service.scheduler = supervisor

    return Components(
        settings=settings,
        ledger=ledger,
        catalog=catalog,
        gateway=gateway,
        rental_service=rental_service,
        supervisor=supervisor,
        payments=PaymentSettlement(ledger),
    )
