from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config.constants import REASON_AUTO_EXPIRED, REASON_PROVIDER_CANCELLED, REASON_USER_CANCELLED
from models.rental import Rental, RentalStatus
from models.service import SmsService
from security.rate_limit import RateLimiter
from services.catalog_service import ServiceCatalog
from services.ledger_service import Ledger
from services.provider_gateway import ActivationState, ActivationStatus, GrantedNumber, NumberProviderGateway
from services.schemas import Page, RentalFilters
from utils.exceptions import (
    ConcurrencyConflict,
    InsufficientCredits,
    InvalidState,
    NotFound,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RentalPersistenceError,
)
from utils.logger import app_logger
from utils.money import as_decimal
from utils.retry import retry_provider_call
from utils.time_utils import ensure_utc, utc_now

# Bucket label format per usage period.
USAGE_PERIODS = {"daily": "%Y-%m-%d", "monthly": "%Y-%m"}
USAGE_MONTHS = 6


@dataclass(frozen=True)
class UsageBucket:
    period: str
    total: int
    delivered: int
    failed: int


class RentalService:
    """
    The rental lifecycle: create, code received, reactivate, cancel, expire.

    Provider calls are made without holding any lock. Local transitions are
    guarded by an optimistic check on ``Rental.version``, so of two writers
    racing to move a rental out of ``active`` exactly one wins; the loser gets
    ``ConcurrencyConflict``.

    ``scheduler`` is set by whoever composes the system (the timeout
    supervisor). It needs ``arm(rental)`` and ``disarm(rental_id)``.
    """

    def __init__(
            self,
            session_factory: async_sessionmaker[AsyncSession],
            ledger: Ledger,
            catalog: ServiceCatalog,
            gateway: NumberProviderGateway,
            *,
            window_seconds: int = 120,
            provider_attempts: int = 3,
            provider_retry_delay: float = 0.5,
            persist_attempts: int = 3,
            refund_unused: bool = True,
            rate_limiter: Optional[RateLimiter] = None,
            clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.ledger = ledger
        self.catalog = catalog
        self.gateway = gateway
        self.window = timedelta(seconds=window_seconds)
        self.provider_attempts = provider_attempts
        self.provider_retry_delay = provider_retry_delay
        self.persist_attempts = persist_attempts
        self.refund_unused = refund_unused
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.scheduler = None

    # --- helpers ---

    async def _call_provider(self, method, *args):
        return await retry_provider_call(
            method, *args, attempts=self.provider_attempts, base_delay=self.provider_retry_delay
        )

    async def _load(self, rental_id: int) -> Rental:
        async with self._session_factory() as session:
            rental = await session.get(Rental, rental_id)
        if rental is None:
            raise NotFound(f"Rental {rental_id} not found")
        return rental

    async def _load_owned(self, account_id: int, rental_id: int) -> Rental:
        rental = await self._load(rental_id)
        # Someone else's rental looks exactly like a missing one.
        if rental.account_id != account_id:
            raise NotFound(f"Rental {rental_id} not found")
        return rental

    async def _load_by_activation(self, activation_id: str) -> Rental:
        async with self._session_factory() as session:
            query = select(Rental).where(Rental.activation_id == activation_id)
            rental = (await session.execute(query)).scalar_one_or_none()
        if rental is None:
            raise NotFound(f"No rental for activation {activation_id}")
        return rental

    def _arm(self, rental: Rental) -> None:
        if self.scheduler is not None:
            self.scheduler.arm(rental)

    def _disarm(self, rental_id: int) -> None:
        if self.scheduler is not None:
            self.scheduler.disarm(rental_id)

    async def _release_activation(self, granted: GrantedNumber, account_id: int, service_code: str) -> None:
        """Best-effort cancellation of a number we could not turn into a rental."""
        try:
            await self._call_provider(self.gateway.cancel, granted.activation_id)
            app_logger.warning(f"Released activation {granted.activation_id} at the provider.")
        except ProviderError as e:
            app_logger.critical(
                f"RECONCILE: activation {granted.activation_id} (number {granted.phone_number}, "
                f"service '{service_code}', account {account_id}) could not be released: {e}"
            )

    # --- create ---

    async def create_rental(
            self,
            account_id: int,
            service_code: str,
            country_code: str = "0",
            operator: Optional[str] = None,
    ) -> Rental:
        """
        Rent a number for ``service_code`` and charge the account for it.

        The provider is asked first; the account is only debited once a number
        was actually granted. The debit and the rental row are committed
        together.
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.hit(account_id)

        service = await self.catalog.get_active(service_code)
        account = await self.ledger.get_account(account_id)
        if not account.is_active:
            raise InvalidState(f"Account {account_id} is disabled")

        price = as_decimal(service.price)
        balance = as_decimal(account.balance)
        if balance < price:
            raise InsufficientCredits(f"Account {account_id} has {balance} credits, {price} required")

        granted = await self._call_provider(self.gateway.request_number, service.code, country_code, operator)

        try:
            rental = await self._persist_new_rental(account_id, service, granted, country_code, operator)
        except InsufficientCredits:
            # The balance was spent by a concurrent request while we waited for the provider.
            app_logger.warning(
                f"Account {account_id} ran out of credits before activation {granted.activation_id} was saved"
            )
            await self._release_activation(granted, account_id, service.code)
            raise

        self._arm(rental)
        return rental

    async def _persist_new_rental(
            self, account_id: int, service: SmsService, granted: GrantedNumber,
            country_code: str, operator: Optional[str],
    ) -> Rental:
        last_error = None
        for attempt in range(1, self.persist_attempts + 1):
            try:
                return await self._insert_rental(account_id, service, granted, country_code, operator)
            except SQLAlchemyError as e:
                last_error = e
                app_logger.error(
                    f"Attempt {attempt}/{self.persist_attempts} to save activation "
                    f"{granted.activation_id} failed: {e!r}"
                )

        app_logger.critical(
            f"RECONCILE: activation {granted.activation_id} (number {granted.phone_number}, "
            f"service '{service.code}', account {account_id}) was granted but never saved. "
            f"No credits were taken."
        )
        await self._release_activation(granted, account_id, service.code)
        raise RentalPersistenceError() from last_error

    async def _insert_rental(
            self, account_id: int, service: SmsService, granted: GrantedNumber,
            country_code: str, operator: Optional[str],
    ) -> Rental:
        now = self.clock()
        price = as_decimal(service.price)
        async with self.ledger.account_lock(account_id):
            async with self._session_factory() as session:
                async with session.begin():
                    debit = await self.ledger.apply_debit(
                        session,
                        account_id,
                        price,
                        description=f"Number for {service.name}",
                        context={
                            "service_code": service.code,
                            "activation_id": granted.activation_id,
                            "phone_number": granted.phone_number,
                        },
                    )
                    rental = Rental(
                        account_id=account_id,
                        service_id=service.id,
                        service_code=service.code,
                        phone_number=granted.phone_number,
                        activation_id=granted.activation_id,
                        country_code=country_code,
                        operator=operator,
                        status=RentalStatus.ACTIVE,
                        cost=price,
                        created_at=now,
                        deadline_at=now + self.window,
                        details={"service_name": service.name, "debit_transaction_ids": [debit.id]},
                    )
                    session.add(rental)
                    await session.flush()
                    debit.details = {**debit.details, "rental_id": rental.id}

        app_logger.info(
            f"Rental {rental.id}: number {rental.phone_number} for '{service.code}' "
            f"charged {price} to account {account_id}"
        )
        return rental

    # --- provider events ---

    async def handle_code_received(self, activation_id: str, code: str, received_at: Optional[datetime] = None) -> Rental:
        """
        Complete the rental that owns ``activation_id``.

        Delivering a code to an already completed rental changes nothing.
        """
        at = received_at or self.clock()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    query = select(Rental).where(Rental.activation_id == activation_id)
                    rental = (await session.execute(query)).scalar_one_or_none()
                    if rental is None:
                        raise NotFound(f"No rental for activation {activation_id}")
                    if rental.status is RentalStatus.COMPLETED:
                        if rental.code != code:
                            app_logger.info(f"Ignoring extra code for completed rental {rental.id}")
                        return rental
                    rental.record_code(code, at)
        except StaleDataError:
            rental = await self._load_by_activation(activation_id)
            if rental.status is RentalStatus.COMPLETED:
                return rental
            raise ConcurrencyConflict(f"Rental for activation {activation_id} changed while saving its code")

        app_logger.info(f"Rental {rental.id} received its code.")
        self._disarm(rental.id)
        await self._confirm_completion(rental)
        return rental

    async def _confirm_completion(self, rental: Rental) -> None:
        # The user already has the code; a failure here only leaves the activation open upstream.
        try:
            await self._call_provider(self.gateway.confirm_completion, rental.activation_id)
        except ProviderError as e:
            app_logger.error(f"Could not confirm completion of activation {rental.activation_id}: {e}")

    async def handle_provider_cancelled(self, activation_id: str) -> Rental:
        """The provider gave up on the activation. Nothing is sent back upstream."""
        snapshot = await self._load_by_activation(activation_id)
        if snapshot.status is not RentalStatus.ACTIVE:
            return snapshot
        rental = await self._close(snapshot, RentalStatus.CANCELLED, REASON_PROVIDER_CANCELLED, self.clock())
        self._disarm(rental.id)
        return rental

    async def handle_provider_update(self, activation_id: str, status: ActivationStatus) -> Optional[Rental]:
        """Apply a status the provider reported, by poll or by callback. Waiting states change nothing."""
        if status.state is ActivationState.CODE_RECEIVED:
            return await self.handle_code_received(activation_id, status.code)
        if status.state is ActivationState.CANCELLED:
            return await self.handle_provider_cancelled(activation_id)
        return None

    async def sync_with_provider(self, rental: Rental) -> Rental:
        """Poll the provider once for an active rental and apply what it reports."""
        if rental.status is not RentalStatus.ACTIVE:
            return rental
        status = await self.gateway.poll_status(rental.activation_id)
        updated = await self.handle_provider_update(rental.activation_id, status)
        return updated or rental

    # --- user operations ---

    async def get_rental_status(self, account_id: int, rental_id: int) -> Rental:
        rental = await self._load_owned(account_id, rental_id)
        try:
            return await self.sync_with_provider(rental)
        except ProviderError as e:
            app_logger.warning(f"Could not refresh rental {rental_id} from the provider: {e}")
            return rental

    async def list_rentals(self, account_id: int, filters: Optional[RentalFilters] = None) -> Page[Rental]:
        filters = filters or RentalFilters()
        conditions = [Rental.account_id == account_id]
        if filters.status:
            conditions.append(Rental.status == filters.status)
        if filters.service_code:
            conditions.append(Rental.service_code == filters.service_code)
        if filters.start:
            conditions.append(Rental.created_at >= filters.start)
        if filters.end:
            conditions.append(Rental.created_at <= filters.end)

        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(Rental.id)).where(*conditions))).scalar_one()
            query = (
                select(Rental)
                .where(*conditions)
                .order_by(Rental.created_at.desc(), Rental.id.desc())
                .offset(filters.offset)
                .limit(filters.per_page)
            )
            items = list((await session.execute(query)).scalars().all())
        return Page(items=items, page=filters.page, per_page=filters.per_page, total=total)

    async def active_rentals(self, due_before: Optional[datetime] = None) -> List[Rental]:
        """Active rentals, optionally only those whose deadline is at or before ``due_before``."""
        query = select(Rental).where(Rental.status == RentalStatus.ACTIVE)
        if due_before is not None:
            query = query.where(Rental.deadline_at <= due_before)
        async with self._session_factory() as session:
            return list((await session.execute(query.order_by(Rental.deadline_at, Rental.id))).scalars().all())

    async def usage_stats(self, account_id: int, period: str = "daily", days: int = 30) -> List[UsageBucket]:
        """
        Rentals per day (last ``days`` days) or per month (last six months).

        Completed rentals count as delivered, cancelled and expired ones as
        failed. Buckets without rentals are left out.
        """
        if period not in USAGE_PERIODS:
            raise ValueError(f"Unknown usage period '{period}', use 'daily' or 'monthly'")

        now = self.clock()
        if period == "daily":
            since = now - timedelta(days=days)
        else:
            year, month_index = divmod(now.year * 12 + now.month - 1 - USAGE_MONTHS, 12)
            since = now.replace(year=year, month=month_index + 1, day=1, hour=0, minute=0, second=0, microsecond=0)

        query = select(Rental.created_at, Rental.status).where(
            Rental.account_id == account_id, Rental.created_at >= since
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()

        label_format = USAGE_PERIODS[period]
        buckets = {}
        for created_at, status in rows:
            counts = buckets.setdefault(ensure_utc(created_at).strftime(label_format), [0, 0, 0])
            counts[0] += 1
            if status is RentalStatus.COMPLETED:
                counts[1] += 1
            elif status in (RentalStatus.CANCELLED, RentalStatus.EXPIRED):
                counts[2] += 1
        return [UsageBucket(label, *counts) for label, counts in sorted(buckets.items())]

    async def reactivate_rental(self, account_id: int, rental_id: int) -> Rental:
        """Ask for another code on an active rental and charge for it again."""
        snapshot = await self._load_owned(account_id, rental_id)
        if snapshot.status is not RentalStatus.ACTIVE:
            raise InvalidState(f"Rental {rental_id} is {snapshot.status.value} and cannot be reactivated")

        cost = as_decimal(snapshot.cost)
        balance = await self.ledger.balance(account_id)
        if balance < cost:
            raise InsufficientCredits(f"Account {account_id} has {balance} credits, {cost} required")

        await self._call_provider(self.gateway.request_additional_code, snapshot.activation_id)

        now = self.clock()
        try:
            async with self.ledger.account_lock(account_id):
                async with self._session_factory() as session:
                    async with session.begin():
                        rental = await session.get(Rental, rental_id, populate_existing=True)
                        if rental.version != snapshot.version:
                            raise ConcurrencyConflict(f"Rental {rental_id} changed during reactivation")
                        rental.reactivate(now, self.window)
                        debit = await self.ledger.apply_debit(
                            session,
                            account_id,
                            cost,
                            description=f"Reactivation of rental {rental.id}",
                            context={
                                "rental_id": rental.id,
                                "activation_id": rental.activation_id,
                                "reactivation": rental.reactivation_count,
                            },
                        )
                        debit_ids = list(rental.details.get("debit_transaction_ids", []))
                        rental.details = {**rental.details, "debit_transaction_ids": debit_ids + [debit.id]}
        except StaleDataError:
            self._log_unbilled_reactivation(snapshot, "rental changed concurrently")
            raise ConcurrencyConflict(f"Rental {rental_id} changed during reactivation")
        except (ConcurrencyConflict, InsufficientCredits) as e:
            self._log_unbilled_reactivation(snapshot, e.message)
            raise

        app_logger.info(f"Rental {rental.id} reactivated ({rental.reactivation_count}), charged {cost}")
        self._arm(rental)
        return rental

    @staticmethod
    def _log_unbilled_reactivation(snapshot: Rental, cause: str) -> None:
        # The provider already handed out another code, but nothing was charged for it.
        app_logger.warning(
            f"RECONCILE: activation {snapshot.activation_id} (rental {snapshot.id}, account "
            f"{snapshot.account_id}) was reactivated at the provider but not charged: {cause}"
        )

    async def cancel_rental(self, account_id: int, rental_id: int, reason: Optional[str] = None) -> Rental:
        """
        Cancel an active rental, provider first.

        If the provider cannot be reached or refuses, the rental stays active
        and the error is raised to the caller.
        """
        snapshot = await self._load_owned(account_id, rental_id)
        if snapshot.status is not RentalStatus.ACTIVE:
            raise InvalidState(f"Rental {rental_id} is already {snapshot.status.value}")

        await self._call_provider(self.gateway.cancel, snapshot.activation_id)
        rental = await self._close(snapshot, RentalStatus.CANCELLED, reason or REASON_USER_CANCELLED, self.clock())
        self._disarm(rental.id)
        return rental

    async def expire_rental(self, rental_id: int) -> Optional[Rental]:
        """
        Deadline check for one rental. Safe to call any number of times.

        Acts only if the rental is still active and past its deadline. A code
        that already reached the provider completes the rental instead.
        """
        try:
            snapshot = await self._load(rental_id)
        except NotFound:
            app_logger.warning(f"Expiry check for unknown rental {rental_id}")
            return None

        now = self.clock()
        if snapshot.status is not RentalStatus.ACTIVE or not snapshot.is_past_deadline(now):
            return snapshot

        status = None
        try:
            status = await self._call_provider(self.gateway.poll_status, snapshot.activation_id)
        except ProviderError as e:
            app_logger.warning(f"Last status check for rental {rental_id} failed: {e}")

        if status is not None and status.state is ActivationState.CODE_RECEIVED:
            return await self.handle_code_received(snapshot.activation_id, status.code)

        if status is None or status.state is not ActivationState.CANCELLED:
            try:
                await self._call_provider(self.gateway.cancel, snapshot.activation_id)
            except ProviderUnavailable as e:
                app_logger.warning(f"Rental {rental_id} stays active until the provider is reachable: {e}")
                return snapshot
            except ProviderRejected as e:
                app_logger.error(
                    f"Provider refused to cancel activation {snapshot.activation_id} ({e.reason}); "
                    f"expiring rental {rental_id} locally"
                )

        try:
            rental = await self._close(snapshot, RentalStatus.EXPIRED, REASON_AUTO_EXPIRED, now)
        except ConcurrencyConflict:
            app_logger.info(f"Rental {rental_id} changed while expiring, leaving it alone")
            return await self._load(rental_id)
        self._disarm(rental_id)
        app_logger.info(f"Rental {rental_id} expired without a code.")
        return rental

    async def _close(self, snapshot: Rental, target: RentalStatus, reason: str, at: datetime) -> Rental:
        """
        Move an active rental to cancelled or expired, refunding it if enabled.

        The status change and the refund are committed together.
        """
        try:
            async with self.ledger.account_lock(snapshot.account_id):
                async with self._session_factory() as session:
                    async with session.begin():
                        rental = await session.get(Rental, snapshot.id, populate_existing=True)
                        if rental.version != snapshot.version:
                            raise ConcurrencyConflict(f"Rental {snapshot.id} changed concurrently")
                        if target is RentalStatus.EXPIRED:
                            rental.expire(reason, at)
                        else:
                            rental.cancel(reason, at)

                        if self.refund_unused:
                            await self.ledger.apply_refund(
                                session,
                                rental.account_id,
                                rental.total_charged,
                                reason=f"Refund for unused rental {rental.id}: {reason}",
                                reference=f"rental:{rental.id}",
                                context={"rental_id": rental.id, "activation_id": rental.activation_id},
                            )
        except StaleDataError:
            raise ConcurrencyConflict(f"Rental {snapshot.id} changed concurrently")

        app_logger.info(f"Rental {rental.id} is now {rental.status.value} ({reason})")
        return rental
