import asyncio
from decimal import Decimal, ROUND_UP

from config.constants import PRICE_ROUNDING_STEP
from services.catalog_service import ServiceCatalog
from services.sms_activate_service import SmsActivateService
from utils.exceptions import ProviderError
from utils.logger import app_logger


def calculate_price(provider_cost: Decimal, markup_percentage) -> Decimal:
    """
    Our price for a service: the provider cost plus markup, rounded up to the
    next PRICE_ROUNDING_STEP so we never sell below cost.
    """
    markup_multiplier = 1 + Decimal(str(markup_percentage)) / 100
    final_price = Decimal(provider_cost) * markup_multiplier
    steps = (final_price / PRICE_ROUNDING_STEP).to_integral_value(rounding=ROUND_UP)
    return steps * PRICE_ROUNDING_STEP


async def refresh_service_prices(
        catalog: ServiceCatalog,
        gateway: SmsActivateService,
        markup_percentage,
        country_code: str = "0",
) -> int:
    """
    Re-price every known service from the provider's current costs.

    :return: How many services changed price.
    """
    provider_prices = await gateway.get_prices(country_code)
    if not provider_prices:
        app_logger.warning(f"Provider returned no prices for country {country_code}.")
        return 0

    prices = {code: calculate_price(cost, markup_percentage) for code, cost in provider_prices.items()}
    changed = await catalog.update_prices(prices)
    app_logger.info(f"Pricing refresh done: {changed} service price(s) changed.")
    return changed


async def pricing_worker(
        catalog: ServiceCatalog,
        gateway: SmsActivateService,
        markup_percentage,
        country_code: str = "0",
        interval_seconds: int = 3600,
):
    app_logger.info("Pricing Worker started.")
    while True:
        try:
            await refresh_service_prices(catalog, gateway, markup_percentage, country_code)
        except ProviderError as e:
            app_logger.error(f"Could not fetch provider prices: {e}")
        except Exception as e:
            app_logger.opt(exception=True).critical(f"Critical error in Pricing Worker: {e}")

        await asyncio.sleep(interval_seconds)
