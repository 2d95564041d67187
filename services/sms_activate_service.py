import asyncio
import json
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import aiohttp

from config.constants import (
    PROVIDER_REJECTIONS,
    PROVIDER_TRANSIENT_ERRORS,
    PROVIDER_STATUS_CANCEL,
    PROVIDER_STATUS_COMPLETE,
    PROVIDER_STATUS_REQUEST_ANOTHER,
)
from services.provider_gateway import ActivationState, ActivationStatus, GrantedNumber, NumberProviderGateway
from utils.exceptions import ProviderRejected, ProviderUnavailable
from utils.logger import app_logger

# Expected answer for each setStatus code.
SET_STATUS_ACK = {
    PROVIDER_STATUS_REQUEST_ANOTHER: "ACCESS_RETRY_GET",
    PROVIDER_STATUS_COMPLETE: "ACCESS_ACTIVATION",
    PROVIDER_STATUS_CANCEL: "ACCESS_CANCEL",
}


def raise_for_error(response_text: str) -> None:
    """
    Raise the matching provider error if ``response_text`` is an error code.

    Error answers are bare codes, sometimes with a ':'-separated suffix
    (e.g. 'BANNED:2024-01-01 10:00:00').
    """
    error_code = response_text.split(":", 1)[0].strip()
    if error_code in PROVIDER_REJECTIONS:
        raise ProviderRejected(error_code, PROVIDER_REJECTIONS[error_code])
    if error_code in PROVIDER_TRANSIENT_ERRORS:
        raise ProviderUnavailable(f"Provider reported a transient error: {error_code}")


def parse_number_response(response_text: str) -> GrantedNumber:
    """Parse 'ACCESS_NUMBER:<activation id>:<phone number>'."""
    raise_for_error(response_text)
    parts = response_text.split(":")
    if len(parts) == 3 and parts[0] == "ACCESS_NUMBER" and parts[1] and parts[2]:
        return GrantedNumber(activation_id=parts[1], phone_number=parts[2])
    raise ProviderUnavailable(f"Unexpected getNumber response: {response_text!r}")


def parse_status_response(response_text: str) -> ActivationStatus:
    raise_for_error(response_text)
    status, _, payload = response_text.partition(":")
    if status == "STATUS_WAIT_CODE":
        return ActivationStatus(ActivationState.AWAITING_CODE)
    if status in ("STATUS_WAIT_RETRY", "STATUS_WAIT_RESEND"):
        # WAIT_RETRY carries the previous code, which is not a new one.
        return ActivationStatus(ActivationState.AWAITING_RETRY)
    if status == "STATUS_OK" and payload:
        return ActivationStatus.code_received(payload)
    if status == "STATUS_CANCEL":
        return ActivationStatus(ActivationState.CANCELLED)
    app_logger.warning(f"Unrecognised activation status from provider: {response_text!r}")
    return ActivationStatus(ActivationState.UNKNOWN)


def parse_balance_response(response_text: str) -> Decimal:
    """Parse 'ACCESS_BALANCE:<amount>'."""
    raise_for_error(response_text)
    status, _, amount = response_text.partition(":")
    if status == "ACCESS_BALANCE":
        try:
            return Decimal(amount)
        except InvalidOperation:
            pass
    raise ProviderUnavailable(f"Unexpected getBalance response: {response_text!r}")


class SmsActivateService(NumberProviderGateway):
    """
    Client for providers speaking the SMS-Activate ``handler_api.php`` protocol.

    Every call is a GET with an ``action`` parameter; answers are short text
    codes, except ``getPrices`` which returns JSON.
    """

    def __init__(self, api_key: str, base_url: str, timeout_seconds: int = 30):
        if not api_key:
            app_logger.warning("SMS_ACTIVATE_API_KEY is not set. Provider calls will be rejected.")
        self._api_key = api_key
        self.base_url = base_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _make_request(self, action: str, **params) -> str:
        query = {"api_key": self._api_key, "action": action}
        query.update({key: str(value) for key, value in params.items() if value not in (None, "")})
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(self.base_url, params=query) as response:
                    text_response = (await response.text()).strip()
                    app_logger.debug(f"Provider response for {action} ({response.status}): {text_response!r}")
                    if response.status >= 500:
                        raise ProviderUnavailable(f"Provider returned HTTP {response.status} for {action}")
                    if response.status >= 400:
                        raise ProviderRejected(f"HTTP_{response.status}", f"Provider refused {action}")
                    return text_response
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            app_logger.error(f"Failed provider request {action}: {e!r}")
            raise ProviderUnavailable(f"Provider request {action} failed: {e!r}") from e

    async def request_number(
            self, service_code: str, country_code: str = "0", operator: Optional[str] = None
    ) -> GrantedNumber:
        response_text = await self._make_request(
            "getNumber", service=service_code, country=country_code, operator=operator
        )
        granted = parse_number_response(response_text)
        app_logger.info(
            f"Provider granted number {granted.phone_number} (activation {granted.activation_id}) "
            f"for service '{service_code}'"
        )
        return granted

    async def poll_status(self, activation_id: str) -> ActivationStatus:
        response_text = await self._make_request("getStatus", id=activation_id)
        return parse_status_response(response_text)

    async def _set_status(self, activation_id: str, status: int) -> None:
        response_text = await self._make_request("setStatus", id=activation_id, status=status)
        raise_for_error(response_text)
        expected = SET_STATUS_ACK[status]
        if response_text != expected:
            raise ProviderUnavailable(
                f"Unexpected setStatus({status}) response for activation {activation_id}: {response_text!r}"
            )

    async def request_additional_code(self, activation_id: str) -> None:
        await self._set_status(activation_id, PROVIDER_STATUS_REQUEST_ANOTHER)

    async def cancel(self, activation_id: str) -> None:
        await self._set_status(activation_id, PROVIDER_STATUS_CANCEL)
        app_logger.info(f"Activation {activation_id} cancelled at the provider.")

    async def confirm_completion(self, activation_id: str) -> None:
        await self._set_status(activation_id, PROVIDER_STATUS_COMPLETE)

    async def get_balance(self) -> Decimal:
        """The provider-side account balance, i.e. what we can still spend upstream."""
        response_text = await self._make_request("getBalance")
        return parse_balance_response(response_text)

    async def get_prices(self, country_code: str = "0") -> Dict[str, Decimal]:
        """
        Current provider cost per service code for one country.

        :return: Mapping of service code to cost. Services without stock are skipped.
        """
        response_text = await self._make_request("getPrices", country=country_code)
        try:
            data = json.loads(response_text)
        except json.JSONDecodeError:
            raise_for_error(response_text)
            raise ProviderUnavailable(f"Unexpected getPrices response: {response_text!r}")
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Unexpected getPrices response: {response_text!r}")

        prices = {}
        for service_code, entry in (data.get(str(country_code)) or {}).items():
            try:
                cost = Decimal(str(entry["cost"]))
                in_stock = int(entry.get("count", 0)) > 0
            except (KeyError, TypeError, ValueError, AttributeError, InvalidOperation):
                app_logger.warning(f"Skipping malformed price entry for '{service_code}': {entry!r}")
                continue
            if cost > 0 and in_stock:
                prices[service_code] = cost
        return prices
