import enum
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, JSON, Numeric, String, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from models.base import BaseModel, enum_values
from utils.exceptions import InvalidState
from utils.time_utils import ensure_utc


class RentalStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RentalStatus.ACTIVE


ALLOWED_TRANSITIONS = {
    RentalStatus.ACTIVE: {RentalStatus.COMPLETED, RentalStatus.CANCELLED, RentalStatus.EXPIRED},
    RentalStatus.COMPLETED: set(),
    RentalStatus.CANCELLED: set(),
    RentalStatus.EXPIRED: set(),
}


class Rental(BaseModel):
    """
    A number leased from the provider to receive one OTP.

    Status only changes through the transition methods below. Concurrent
    writers are detected through ``version``: a flush against a row that
    another session already moved on raises ``StaleDataError``.
    """
    __tablename__ = "rentals"
    __table_args__ = (
        Index("ix_rentals_status_deadline", "status", "deadline_at"),
    )

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    service_id: Mapped[int] = mapped_column(ForeignKey("sms_services.id"), nullable=False, index=True)

    # Snapshot of the service code, so listing and filtering need no join.
    service_code: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    phone_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    # The provider's identifier for this activation, used for every follow-up call.
    activation_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    country_code: Mapped[str] = mapped_column(String(10), nullable=False, default="0")
    operator: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    status: Mapped[RentalStatus] = mapped_column(
        Enum(RentalStatus, native_enum=False, length=20, values_callable=enum_values),
        default=RentalStatus.ACTIVE,
        nullable=False,
        index=True
    )

    # Price snapshot charged for the rental (and for each reactivation).
    cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    deadline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_code_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reactivation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    end_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def total_charged(self) -> Decimal:
        return self.cost * (1 + self.reactivation_count)

    def is_past_deadline(self, now: datetime) -> bool:
        return ensure_utc(self.deadline_at) <= now

    def _transition(self, target: RentalStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidState(
                f"Rental {self.id} is {self.status.value} and cannot become {target.value}"
            )
        self.status = target

    def record_code(self, code: str, at: datetime) -> None:
        self._transition(RentalStatus.COMPLETED)
        self.code = code
        self.last_code_received_at = at
        self.ended_at = at

    def cancel(self, reason: str, at: datetime) -> None:
        self._transition(RentalStatus.CANCELLED)
        self.end_reason = reason
        self.ended_at = at

    def expire(self, reason: str, at: datetime) -> None:
        self._transition(RentalStatus.EXPIRED)
        self.end_reason = reason
        self.ended_at = at

    def reactivate(self, at: datetime, window: timedelta) -> None:
        if self.status is not RentalStatus.ACTIVE:
            raise InvalidState(f"Rental {self.id} is {self.status.value} and cannot be reactivated")
        self.reactivation_count += 1
        self.deadline_at = at + window

    def __repr__(self) -> str:
        return (
            f"<Rental(id={self.id}, phone_number='{self.phone_number}', "
            f"status='{self.status.value}', activation_id='{self.activation_id}')>"
        )
