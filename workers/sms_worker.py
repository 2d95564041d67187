import asyncio

from models.rental import RentalStatus
from services.rental_service import RentalService
from utils.exceptions import OtpBackendError
from utils.logger import app_logger


async def poll_once(rental_service: RentalService) -> int:
    """
    Ask the provider about every active rental once.

    A failure on one rental is logged and does not stop the others.

    :return: How many rentals left the active state during this pass.
    """
    active_rentals = await rental_service.active_rentals()
    if not active_rentals:
        app_logger.debug("No active rentals to poll. Sleeping...")
        return 0

    finished = 0
    for rental in active_rentals:
        app_logger.debug(f"Polling provider for rental {rental.id} (activation {rental.activation_id})")
        try:
            updated = await rental_service.sync_with_provider(rental)
        except OtpBackendError as e:
            app_logger.warning(f"Could not poll rental {rental.id}: {e}")
            continue

        if updated.status is not RentalStatus.ACTIVE:
            app_logger.info(f"Rental {rental.id} is now {updated.status.value} after polling.")
            finished += 1
    return finished


async def sms_polling_worker(rental_service: RentalService, interval_seconds: int = 15):
    """
    Fallback for codes the provider did not push to us.
    """
    app_logger.info("SMS Polling Worker started.")
    while True:
        try:
            await poll_once(rental_service)
        except Exception as e:
            app_logger.opt(exception=True).critical(f"Critical error in SMS worker: {e}")

        # Wait before the next polling cycle
        await asyncio.sleep(interval_seconds)
