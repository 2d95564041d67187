from decimal import Decimal

from sqlalchemy import Boolean, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import BaseModel


class SmsService(BaseModel):
    """
    A service numbers can be rented for (WhatsApp, Telegram, ...).

    Rentals copy ``price`` into their own ``cost`` when they are created, so
    editing a price never touches rentals that are already open.
    """
    __tablename__ = "sms_services"

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # The code the provider expects for this service (e.g. 'wa', 'tg').
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)

    price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, comment="Price per rental")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<SmsService(id={self.id}, code='{self.code}', price={self.price}, is_active={self.is_active})>"
