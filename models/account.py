from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import BaseModel


class Account(BaseModel):
    """
    A credit-holding account.

    The balance is only ever changed by the Ledger, together with the
    Transaction that explains the change.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    # Free-form label from the identity system (username, email, ...).
    display_name: Mapped[str] = mapped_column(String(255), nullable=True)

    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 4),
        default=Decimal("0"),
        nullable=False,
        comment="Current credit balance"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, balance={self.balance}, is_active={self.is_active})>"
