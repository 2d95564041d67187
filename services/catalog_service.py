from decimal import Decimal
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.service import SmsService
from utils.exceptions import NotFound
from utils.logger import app_logger
from utils.money import to_credits


class ServiceCatalog:
    """Read-mostly list of the services numbers can be rented for."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_active(self, code: str) -> SmsService:
        async with self._session_factory() as session:
            query = select(SmsService).where(SmsService.code == code, SmsService.is_active.is_(True))
            service = (await session.execute(query)).scalar_one_or_none()
        if service is None:
            raise NotFound(f"Service '{code}' not found or inactive")
        return service

    async def list_active(self) -> List[SmsService]:
        async with self._session_factory() as session:
            query = select(SmsService).where(SmsService.is_active.is_(True)).order_by(SmsService.name)
            return list((await session.execute(query)).scalars().all())

    async def upsert(self, code: str, name: str, price, is_active: bool = True) -> SmsService:
        """Create a service or update its name, price and active flag."""
        price = to_credits(price)
        async with self._session_factory() as session:
            async with session.begin():
                query = select(SmsService).where(SmsService.code == code)
                service = (await session.execute(query)).scalar_one_or_none()
                if service is None:
                    service = SmsService(code=code, name=name, price=price, is_active=is_active)
                    session.add(service)
                else:
                    service.name = name
                    service.price = price
                    service.is_active = is_active
        return service

    async def update_prices(self, prices: Dict[str, Decimal]) -> int:
        """
        Apply new prices to known services, keyed by provider code.

        Codes the catalog does not know are ignored. Returns how many services changed.
        """
        changed = 0
        async with self._session_factory() as session:
            async with session.begin():
                query = select(SmsService).where(SmsService.code.in_(list(prices)))
                for service in (await session.execute(query)).scalars().all():
                    new_price = to_credits(prices[service.code])
                    if Decimal(str(service.price)) != new_price:
                        app_logger.info(f"Price of '{service.code}' changed: {service.price} -> {new_price}")
                        service.price = new_price
                        changed += 1
        return changed
