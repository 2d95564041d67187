import asyncio
from datetime import datetime
from typing import Callable, Dict

from models.rental import Rental
from services.rental_service import RentalService
from utils.exceptions import OtpBackendError
from utils.logger import app_logger
from utils.time_utils import ensure_utc, utc_now


class TimeoutSupervisor:
    """
    Expires rentals that did not receive a code inside their window.

    Every active rental gets an in-memory timer. The deadline itself lives in
    the database, so timers lost on a restart are rebuilt by ``recover`` and a
    periodic ``sweep`` catches anything a timer missed. Expiring a rental
    twice is harmless: ``RentalService.expire_rental`` re-checks state.
    """

    def __init__(
            self,
            rental_service: RentalService,
            sweep_interval: int = 30,
            clock: Callable[[], datetime] = utc_now,
    ):
        self.rental_service = rental_service
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._timers: Dict[int, asyncio.Task] = {}

    @property
    def armed(self) -> int:
        return len(self._timers)

    def is_armed(self, rental_id: int) -> bool:
        return rental_id in self._timers

    def arm(self, rental: Rental) -> None:
        """Start (or restart) the timer for ``rental`` against its current deadline."""
        self.disarm(rental.id)
        task = asyncio.create_task(self._wait_and_expire(rental.id, ensure_utc(rental.deadline_at)))
        self._timers[rental.id] = task
        task.add_done_callback(lambda t, rental_id=rental.id: self._forget(rental_id, t))
        app_logger.debug(f"Timer armed for rental {rental.id} (deadline {rental.deadline_at})")

    def disarm(self, rental_id: int) -> None:
        task = self._timers.pop(rental_id, None)
        # A timer that is itself running the expiry check must not cancel itself.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _forget(self, rental_id: int, task: asyncio.Task) -> None:
        # A re-armed rental already has a newer task under the same id.
        if self._timers.get(rental_id) is task:
            del self._timers[rental_id]

    async def _wait_and_expire(self, rental_id: int, deadline: datetime) -> None:
        delay = (deadline - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        await self.check(rental_id)

    async def check(self, rental_id: int) -> None:
        try:
            rental = await self.rental_service.expire_rental(rental_id)
        except OtpBackendError as e:
            app_logger.error(f"Expiry check for rental {rental_id} failed: {e}")
            return
        except Exception as e:
            # Timer tasks have nobody awaiting them; the next sweep retries.
            app_logger.opt(exception=True).error(f"Unexpected error checking rental {rental_id}: {e}")
            return
        # Still active means the provider was unreachable; the next sweep retries.
        if rental is not None and not rental.status.is_terminal:
            app_logger.debug(f"Rental {rental_id} is still active after its expiry check")

    async def recover(self) -> int:
        """
        Rebuild timers for every active rental after a restart.

        Rentals already past their deadline are checked right away.
        """
        now = self.clock()
        rentals = await self.rental_service.active_rentals()
        for rental in rentals:
            if rental.is_past_deadline(now):
                await self.check(rental.id)
            else:
                self.arm(rental)
        app_logger.info(f"Recovered {len(rentals)} active rental(s) after startup.")
        return len(rentals)

    async def sweep(self) -> int:
        """Check every active rental whose deadline has passed."""
        due = await self.rental_service.active_rentals(due_before=self.clock())
        for rental in due:
            await self.check(rental.id)
        if due:
            app_logger.info(f"Expiry sweep checked {len(due)} overdue rental(s).")
        return len(due)

    async def run(self) -> None:
        app_logger.info("Rental Timeout Supervisor started.")
        while True:
            try:
                await self.sweep()
            except Exception as e:
                app_logger.opt(exception=True).critical(f"Critical error in Rental Timeout Supervisor: {e}")

            await asyncio.sleep(self.sweep_interval)

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        app_logger.info(f"Cancelled {len(tasks)} rental timer(s).")
