import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import AsyncIterator, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.account import Account
from models.transaction import Transaction, TransactionKind, TransactionStatus
from services.schemas import Page, TransactionFilters
from utils.exceptions import InsufficientCredits, NotFound
from utils.logger import app_logger
from utils.money import as_decimal, to_credits
from utils.time_utils import utc_now

CREDIT_KINDS = (TransactionKind.PURCHASE, TransactionKind.REFUND)


@dataclass(frozen=True)
class ReconciliationReport:
    account_id: int
    stored_balance: Decimal
    computed_balance: Decimal

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.computed_balance


@dataclass(frozen=True)
class CreditStats:
    balance: Decimal
    total_purchased: Decimal
    total_spent: Decimal
    total_refunded: Decimal
    transactions_last_30_days: int


def purchase_key(gateway: str, gateway_reference: str) -> str:
    return f"purchase:{gateway}:{gateway_reference}"


def refund_key(reference: str) -> str:
    return f"refund:{reference}"


@dataclass
class _AccountLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Ledger:
    """
    Owns every change to an account balance.

    A balance change and the Transaction explaining it are always written in
    the same database transaction. Mutations on one account are serialised by
    an in-process lock, plus a row lock where the database supports
    ``SELECT ... FOR UPDATE``.

    The ``apply_*`` methods work inside a session the caller controls, so a
    debit can be committed together with the rental it pays for. Callers using
    them must hold ``account_lock(account_id)`` until the session commits.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        # Only accounts with a holder or a waiter have an entry.
        self._locks: Dict[int, _AccountLock] = {}

    @property
    def locked_accounts(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def account_lock(self, account_id: int) -> AsyncIterator[None]:
        entry = self._locks.get(account_id)
        if entry is None:
            entry = self._locks[account_id] = _AccountLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_id]

    # --- building blocks (caller owns the session) ---

    async def _load_account(self, session: AsyncSession, account_id: int, for_update: bool = False) -> Account:
        account = await session.get(Account, account_id, with_for_update=for_update, populate_existing=True)
        if account is None:
            raise NotFound(f"Account {account_id} not found")
        return account

    async def _find_by_key(self, session: AsyncSession, idempotency_key: str) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.idempotency_key == idempotency_key)
        return (await session.execute(query)).scalar_one_or_none()

    async def apply_credit(
            self,
            session: AsyncSession,
            account_id: int,
            amount,
            kind: TransactionKind = TransactionKind.PURCHASE,
            *,
            description: Optional[str] = None,
            context: Optional[dict] = None,
            gateway: str = "internal",
            external_reference: Optional[str] = None,
            idempotency_key: Optional[str] = None,
    ) -> Transaction:
        if kind not in CREDIT_KINDS:
            raise ValueError(f"{kind.value} is not a credit kind")
        amount = to_credits(amount)

        if idempotency_key:
            existing = await self._find_by_key(session, idempotency_key)
            if existing is not None:
                app_logger.info(f"Credit '{idempotency_key}' was already applied as transaction {existing.id}")
                return existing

        account = await self._load_account(session, account_id, for_update=True)
        account.balance = as_decimal(account.balance) + amount
        transaction = Transaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            gateway=gateway,
            external_reference=external_reference,
            idempotency_key=idempotency_key,
            description=description,
            balance_after=account.balance,
            details=dict(context or {}),
        )
        session.add(transaction)
        await session.flush()
        return transaction

    async def apply_debit(
            self,
            session: AsyncSession,
            account_id: int,
            amount,
            *,
            description: Optional[str] = None,
            context: Optional[dict] = None,
    ) -> Transaction:
        amount = to_credits(amount)
        account = await self._load_account(session, account_id, for_update=True)
        balance = as_decimal(account.balance)
        if balance < amount:
            raise InsufficientCredits(f"Account {account_id} has {balance} credits, {amount} required")

        account.balance = balance - amount
        transaction = Transaction(
            account_id=account_id,
            kind=TransactionKind.RENTAL_DEBIT,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            balance_after=account.balance,
            details=dict(context or {}),
        )
        session.add(transaction)
        await session.flush()
        return transaction

    async def apply_refund(
            self, session: AsyncSession, account_id: int, amount, reason: str, reference: str,
            context: Optional[dict] = None,
    ) -> Transaction:
        details = {"refund_reason": reason, "reference": reference}
        details.update(context or {})
        return await self.apply_credit(
            session,
            account_id,
            amount,
            TransactionKind.REFUND,
            description=reason,
            context=details,
            idempotency_key=refund_key(reference),
        )

    # --- self-contained operations ---

    async def open_account(self, display_name: Optional[str] = None, initial_credit=None) -> Account:
        """Create an account. A non-zero opening credit is recorded as a purchase."""
        async with self._session_factory() as session:
            async with session.begin():
                account = Account(display_name=display_name, balance=Decimal("0"), is_active=True)
                session.add(account)
                await session.flush()
                if initial_credit:
                    await self.apply_credit(
                        session, account.id, initial_credit, description="Opening credit",
                    )
        app_logger.info(f"Opened account {account.id} with balance {account.balance}")
        return account

    async def credit(
            self,
            account_id: int,
            amount,
            context: Optional[dict] = None,
            *,
            kind: TransactionKind = TransactionKind.PURCHASE,
            description: Optional[str] = None,
            gateway: str = "internal",
            external_reference: Optional[str] = None,
            idempotency_key: Optional[str] = None,
    ) -> Transaction:
        amount = to_credits(amount)
        if idempotency_key is None and external_reference and kind is TransactionKind.PURCHASE:
            idempotency_key = purchase_key(gateway, external_reference)

        async with self.account_lock(account_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        transaction = await self.apply_credit(
                            session, account_id, amount, kind,
                            description=description, context=context, gateway=gateway,
                            external_reference=external_reference, idempotency_key=idempotency_key,
                        )
            except IntegrityError:
                # Another process wrote the same idempotency key first.
                if not idempotency_key:
                    raise
                async with self._session_factory() as session:
                    transaction = await self._find_by_key(session, idempotency_key)
                if transaction is None:
                    raise
        app_logger.info(
            f"Credited {amount} to account {account_id} ({kind.value}), transaction {transaction.id}"
        )
        return transaction

    async def debit(self, account_id: int, amount, context: Optional[dict] = None,
                    description: Optional[str] = None) -> Transaction:
        amount = to_credits(amount)
        async with self.account_lock(account_id):
            async with self._session_factory() as session:
                async with session.begin():
                    transaction = await self.apply_debit(
                        session, account_id, amount, description=description, context=context,
                    )
        app_logger.info(f"Debited {amount} from account {account_id}, transaction {transaction.id}")
        return transaction

    async def refund(self, account_id: int, amount, reason: str, reference: str) -> Transaction:
        """
        Give credits back for a failed or unused purchase.

        ``reference`` identifies the failure event (e.g. 'rental:42'). Calling
        this again with the same reference returns the first refund instead of
        crediting twice.
        """
        async with self.account_lock(account_id):
            async with self._session_factory() as session:
                async with session.begin():
                    transaction = await self.apply_refund(session, account_id, amount, reason, reference)
        app_logger.info(f"Refund '{reference}' for account {account_id} is transaction {transaction.id}")
        return transaction

    async def balance(self, account_id: int) -> Decimal:
        async with self._session_factory() as session:
            account = await self._load_account(session, account_id)
            return as_decimal(account.balance)

    async def history(self, account_id: int, filters: Optional[TransactionFilters] = None) -> Page[Transaction]:
        filters = filters or TransactionFilters()
        conditions = [Transaction.account_id == account_id]
        if filters.kinds:
            conditions.append(Transaction.kind.in_(filters.kinds))
        if filters.status:
            conditions.append(Transaction.status == filters.status)
        if filters.start:
            conditions.append(Transaction.created_at >= filters.start)
        if filters.end:
            conditions.append(Transaction.created_at <= filters.end)

        async with self._session_factory() as session:
            await self._load_account(session, account_id)
            total = (await session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            )).scalar_one()
            query = (
                select(Transaction)
                .where(*conditions)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .offset(filters.offset)
                .limit(filters.per_page)
            )
            items = list((await session.execute(query)).scalars().all())
        return Page(items=items, page=filters.page, per_page=filters.per_page, total=total)

    async def _completed_totals(self, session: AsyncSession, account_id: int) -> dict:
        query = (
            select(Transaction.kind, func.sum(Transaction.amount))
            .where(Transaction.account_id == account_id, Transaction.status == TransactionStatus.COMPLETED)
            .group_by(Transaction.kind)
        )
        totals = {kind: as_decimal(0) for kind in TransactionKind}
        for kind, total in (await session.execute(query)).all():
            totals[kind] = as_decimal(total)
        return totals

    async def stats(self, account_id: int) -> CreditStats:
        since = utc_now() - timedelta(days=30)
        async with self._session_factory() as session:
            account = await self._load_account(session, account_id)
            totals = await self._completed_totals(session, account_id)
            recent = (await session.execute(
                select(func.count(Transaction.id))
                .where(Transaction.account_id == account_id, Transaction.created_at >= since)
            )).scalar_one()
        return CreditStats(
            balance=as_decimal(account.balance),
            total_purchased=totals[TransactionKind.PURCHASE],
            total_spent=totals[TransactionKind.RENTAL_DEBIT],
            total_refunded=totals[TransactionKind.REFUND],
            transactions_last_30_days=recent,
        )

    async def reconcile(self, account_id: int) -> ReconciliationReport:
        """Compare the stored balance against the signed sum of completed transactions."""
        async with self._session_factory() as session:
            account = await self._load_account(session, account_id)
            totals = await self._completed_totals(session, account_id)
        computed = sum(total * kind.sign for kind, total in totals.items())
        report = ReconciliationReport(
            account_id=account_id,
            stored_balance=as_decimal(account.balance),
            computed_balance=as_decimal(computed),
        )
        if not report.is_consistent:
            app_logger.critical(
                f"Ledger mismatch on account {account_id}: stored {report.stored_balance}, "
                f"computed {report.computed_balance}"
            )
        return report

    # --- externally settled purchases ---

    async def open_purchase(
            self, account_id: int, amount, gateway: str, gateway_reference: str,
            context: Optional[dict] = None,
    ) -> Transaction:
        """Record a checkout that has not been paid yet. The balance is untouched."""
        amount = to_credits(amount)
        key = purchase_key(gateway, gateway_reference)
        async with self._session_factory() as session:
            async with session.begin():
                await self._load_account(session, account_id)
                existing = await self._find_by_key(session, key)
                if existing is not None:
                    return existing
                transaction = Transaction(
                    account_id=account_id,
                    kind=TransactionKind.PURCHASE,
                    amount=amount,
                    status=TransactionStatus.PENDING,
                    gateway=gateway,
                    external_reference=gateway_reference,
                    idempotency_key=key,
                    description=f"Purchase of {amount} credits via {gateway}",
                    details=dict(context or {}),
                )
                session.add(transaction)
        app_logger.info(f"Opened pending purchase {transaction.id} ({gateway}:{gateway_reference})")
        return transaction

    async def find_purchase(self, gateway: str, gateway_reference: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            return await self._find_by_key(session, purchase_key(gateway, gateway_reference))

    async def settle_purchase(
            self, gateway: str, gateway_reference: str, succeeded: bool, paid_amount=None,
    ) -> Transaction:
        """
        Move a pending purchase to completed (crediting the account) or failed.

        Settling a purchase that is already final returns it unchanged. A paid
        amount that differs from the pending amount fails the purchase and
        flags it as disputed.
        """
        pending = await self.find_purchase(gateway, gateway_reference)
        if pending is None:
            raise NotFound(f"No purchase for {gateway}:{gateway_reference}")

        async with self.account_lock(pending.account_id):
            async with self._session_factory() as session:
                async with session.begin():
                    transaction = await session.get(Transaction, pending.id, populate_existing=True)
                    if transaction.status is not TransactionStatus.PENDING:
                        app_logger.info(
                            f"Purchase {transaction.id} already {transaction.status.value}, ignoring settlement"
                        )
                        return transaction

                    if succeeded and paid_amount is not None and to_credits(paid_amount) != transaction.amount:
                        app_logger.error(
                            f"Purchase {transaction.id} paid {paid_amount} but expected {transaction.amount}"
                        )
                        transaction.settle(False)
                        transaction.details = {**transaction.details, "disputed": True, "paid_amount": str(paid_amount)}
                        return transaction

                    transaction.settle(succeeded)
                    if succeeded:
                        account = await self._load_account(session, transaction.account_id, for_update=True)
                        account.balance = as_decimal(account.balance) + transaction.amount
                        transaction.balance_after = account.balance
        app_logger.info(f"Purchase {transaction.id} settled as {transaction.status.value}")
        return transaction

    async def set_account_active(self, account_id: int, is_active: bool) -> Account:
        async with self._session_factory() as session:
            async with session.begin():
                account = await self._load_account(session, account_id)
                account.is_active = is_active
        return account

    async def get_account(self, account_id: int) -> Account:
        async with self._session_factory() as session:
            return await self._load_account(session, account_id)

