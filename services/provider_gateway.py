import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class GrantedNumber:
    activation_id: str
    phone_number: str


class ActivationState(str, enum.Enum):
    AWAITING_CODE = "awaiting_code"
    AWAITING_RETRY = "awaiting_retry"
    CODE_RECEIVED = "code_received"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ActivationStatus:
    state: ActivationState
    code: Optional[str] = None

    @classmethod
    def code_received(cls, code: str) -> "ActivationStatus":
        return cls(ActivationState.CODE_RECEIVED, code)


class NumberProviderGateway(ABC):
    """
    Everything the rental lifecycle needs from the number provider.

    Implementations raise ``ProviderUnavailable`` for transient failures and
    ``ProviderRejected`` when the provider refuses a request. They never retry
    on their own: retry policy belongs to the caller.
    """

    @abstractmethod
    async def request_number(
            self, service_code: str, country_code: str = "0", operator: Optional[str] = None
    ) -> GrantedNumber:
        ...

    @abstractmethod
    async def poll_status(self, activation_id: str) -> ActivationStatus:
        ...

    @abstractmethod
    async def request_additional_code(self, activation_id: str) -> None:
        ...

    @abstractmethod
    async def cancel(self, activation_id: str) -> None:
        ...

    @abstractmethod
    async def confirm_completion(self, activation_id: str) -> None:
        ...
