import asyncio
import sys

from aiohttp import web

from config.settings import settings
from database.connection import build_engine, build_session_factory, init_db
from database.redis import build_redis_client
from services.container import build_components
from services.sms_activate_service import SmsActivateService
from utils.exceptions import ProviderError
from utils.logger import app_logger
from webhooks.routes import create_webhook_app
from workers.pricing_worker import pricing_worker
from workers.sms_worker import sms_polling_worker


async def main():
    app_logger.info("Application starting up...")
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    redis_client = build_redis_client(settings.REDIS_HOST, settings.REDIS_PORT)
    gateway = SmsActivateService(
        settings.SMS_ACTIVATE_API_KEY,
        settings.SMS_ACTIVATE_BASE_URL,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )
    components = build_components(settings, session_factory, gateway, redis_client)

    try:
        await init_db(engine)
        await redis_client.ping()
        app_logger.info("Database and Redis initialized successfully.")
    except Exception as e:
        app_logger.opt(exception=True).critical(f"Initialization failed: {e}")
        sys.exit(1)

    try:
        balance = await gateway.get_balance()
        app_logger.info(f"Provider balance: {balance}")
    except ProviderError as e:
        app_logger.warning(f"Could not read the provider balance: {e}")

    await components.supervisor.recover()

    runner = web.AppRunner(create_webhook_app(components))
    await runner.setup()
    site = web.TCPSite(runner, settings.WEBHOOK_HOST, settings.WEBHOOK_PORT)
    await site.start()
    app_logger.info(f"Webhook server started on port {settings.WEBHOOK_PORT}.")

    worker_tasks = [
        asyncio.create_task(components.supervisor.run()),
        asyncio.create_task(
            sms_polling_worker(components.rental_service, settings.SMS_POLLING_INTERVAL_SECONDS)
        ),
        asyncio.create_task(
            pricing_worker(
                components.catalog,
                gateway,
                settings.PRICE_MARKUP_PERCENTAGE,
                settings.PRICING_COUNTRY,
                settings.PRICING_INTERVAL_SECONDS,
            )
        ),
    ]

    try:
        await asyncio.gather(*worker_tasks)
    finally:
        app_logger.warning("Shutdown sequence initiated...")
        for task in worker_tasks:
            task.cancel()
        await asyncio.gather(*worker_tasks, return_exceptions=True)
        await components.supervisor.shutdown()
        await runner.cleanup()
        await redis_client.aclose()
        await engine.dispose()
        app_logger.info("Shutdown complete.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        app_logger.warning("Application was stopped manually.")
