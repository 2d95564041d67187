import enum
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, Enum, ForeignKey, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import BaseModel, enum_values
from utils.exceptions import InvalidState


class TransactionKind(str, enum.Enum):
    PURCHASE = "purchase"
    RENTAL_DEBIT = "rental_debit"
    REFUND = "refund"

    @property
    def sign(self) -> int:
        """+1 for kinds that add credits, -1 for kinds that remove them."""
        return -1 if self is TransactionKind.RENTAL_DEBIT else 1


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Completed transactions are immutable; only pending ones may settle.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELLED: set(),
}


class Transaction(BaseModel):
    """
    One entry in an account's append-only credit history.

    For every account, the balance equals the signed sum of its completed
    transactions.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False, length=20, values_callable=enum_values),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True
    )

    # Which payment gateway produced this entry ('stripe', 'mercadopago', 'internal', ...).
    gateway: Mapped[str] = mapped_column(String(50), default="internal", nullable=False)

    # The gateway's own reference for the payment, if any.
    external_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Makes retried writes for the same event collapse into one row.
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Balance right after this entry was applied. Only set once completed.
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)

    # 'metadata' is reserved on declarative classes, hence the attribute name.
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.kind.sign

    def settle(self, succeeded: bool) -> None:
        target = TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidState(
                f"Transaction {self.id} is {self.status.value} and cannot become {target.value}"
            )
        self.status = target

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, account_id={self.account_id}, kind='{self.kind.value}', "
            f"amount={self.amount}, status='{self.status.value}')>"
        )
