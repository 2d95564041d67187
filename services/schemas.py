import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from models.rental import RentalStatus
from models.transaction import TransactionKind, TransactionStatus
from services.provider_gateway import ActivationState, ActivationStatus
from utils.time_utils import ensure_utc

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    per_page: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.total else 0


class _PagedFilters(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    page: int = Field(1, ge=1)
    per_page: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class TransactionFilters(_PagedFilters):
    kinds: Optional[List[TransactionKind]] = None
    status: Optional[TransactionStatus] = None


class RentalFilters(_PagedFilters):
    status: Optional[RentalStatus] = None
    service_code: Optional[str] = None


class PaymentCallback(BaseModel):
    """What the payment gateway tells us once a checkout finished."""
    account_id: int
    amount: Decimal
    gateway_reference: str = Field(..., min_length=1)
    status: str
    gateway: str = "external"

    @property
    def succeeded(self) -> bool:
        return self.status.lower() in ("success", "succeeded", "paid", "approved")


class ProviderCallback(BaseModel):
    """An activation update pushed by the number provider."""
    activation_id: str = Field(..., min_length=1)
    status: str
    code: Optional[str] = None
    text: Optional[str] = None

    def to_activation_status(self) -> ActivationStatus:
        status = self.status.upper()
        if self.code and status in ("STATUS_OK", "OK", "CODE_RECEIVED"):
            return ActivationStatus.code_received(self.code)
        if status in ("STATUS_CANCEL", "CANCEL", "CANCELLED"):
            return ActivationStatus(ActivationState.CANCELLED)
        if status in ("STATUS_WAIT_CODE", "WAIT_CODE"):
            return ActivationStatus(ActivationState.AWAITING_CODE)
        return ActivationStatus(ActivationState.UNKNOWN)
