import hashlib
import hmac
from typing import Optional

from models.transaction import Transaction
from services.ledger_service import Ledger
from services.schemas import PaymentCallback
from utils.logger import app_logger


def verify_signature(secret: str, body: bytes, signature: Optional[str], digestmod=hashlib.sha512) -> bool:
    """Check an HMAC hex signature of the raw request body."""
    if not secret or not signature:
        return False
    calculated_signature = hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()
    return hmac.compare_digest(signature, calculated_signature)


class PaymentSettlement:
    """
    Turns payment gateway callbacks into ledger purchases.

    Gateways retry callbacks, so every callback is keyed by its gateway
    reference and a repeated one never credits twice.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def handle_callback(self, callback: PaymentCallback) -> Optional[Transaction]:
        """
        Settle a checkout.

        A checkout opened earlier with ``Ledger.open_purchase`` is completed or
        failed. A successful payment we have no record of is credited directly.
        A failed payment we have no record of changes nothing.
        """
        pending = await self.ledger.find_purchase(callback.gateway, callback.gateway_reference)
        if pending is not None:
            return await self.ledger.settle_purchase(
                callback.gateway,
                callback.gateway_reference,
                callback.succeeded,
                paid_amount=callback.amount,
            )

        if not callback.succeeded:
            app_logger.info(
                f"Ignoring failed payment {callback.gateway}:{callback.gateway_reference} with no checkout"
            )
            return None

        transaction = await self.ledger.credit(
            callback.account_id,
            callback.amount,
            {"gateway_status": callback.status},
            description=f"Purchase of {callback.amount} credits via {callback.gateway}",
            gateway=callback.gateway,
            external_reference=callback.gateway_reference,
        )
        app_logger.info(
            f"Payment {callback.gateway}:{callback.gateway_reference} credited to account "
            f"{callback.account_id} as transaction {transaction.id}"
        )
        return transaction
