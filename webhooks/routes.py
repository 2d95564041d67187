import hashlib
import json

from aiohttp import web
from pydantic import ValidationError

from services.container import Components
from services.payment_service import verify_signature
from services.schemas import PaymentCallback, ProviderCallback
from utils.exceptions import OtpBackendError
from utils.logger import app_logger

COMPONENTS_KEY = web.AppKey("components", Components)

ERROR_STATUS = {
    "invalid_amount": 400,
    "not_found": 404,
    "invalid_state": 409,
    "concurrency_conflict": 409,
    "insufficient_credits": 409,
    "rate_limited": 429,
    "provider_unavailable": 503,
    "provider_rejected": 502,
}


def error_response(error: OtpBackendError) -> web.Response:
    return web.json_response(error.to_dict(), status=ERROR_STATUS.get(error.kind, 500))


def _parse(model, body: bytes):
    try:
        return model.model_validate(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        app_logger.warning(f"Rejected malformed {model.__name__}: {e}")
        return None


async def payment_webhook_handler(request: web.Request) -> web.Response:
    components = request.app[COMPONENTS_KEY]
    body = await request.read()
    signature = request.headers.get("x-payment-signature")
    if not verify_signature(components.settings.PAYMENT_WEBHOOK_SECRET, body, signature, hashlib.sha512):
        app_logger.error("Invalid payment callback signature.")
        return web.json_response({"error": "bad_signature", "message": "Invalid signature"}, status=401)

    callback = _parse(PaymentCallback, body)
    if callback is None:
        return web.json_response({"error": "bad_payload", "message": "Malformed payment callback"}, status=400)

    app_logger.info(f"Payment callback {callback.gateway}:{callback.gateway_reference} ({callback.status})")
    try:
        transaction = await components.payments.handle_callback(callback)
    except OtpBackendError as e:
        app_logger.error(f"Payment callback {callback.gateway_reference} failed: {e}")
        return error_response(e)

    if transaction is None:
        return web.json_response({"status": "ignored"})
    return web.json_response({"status": transaction.status.value, "transaction_id": transaction.id})


async def provider_webhook_handler(request: web.Request) -> web.Response:
    components = request.app[COMPONENTS_KEY]
    body = await request.read()
    secret = components.settings.PROVIDER_WEBHOOK_SECRET
    if secret and not verify_signature(secret, body, request.headers.get("x-provider-signature"), hashlib.sha256):
        app_logger.error("Invalid provider callback signature.")
        return web.json_response({"error": "bad_signature", "message": "Invalid signature"}, status=401)

    callback = _parse(ProviderCallback, body)
    if callback is None:
        return web.json_response({"error": "bad_payload", "message": "Malformed provider callback"}, status=400)

    try:
        rental = await components.rental_service.handle_provider_update(
            callback.activation_id, callback.to_activation_status()
        )
    except OtpBackendError as e:
        app_logger.warning(f"Provider callback for activation {callback.activation_id} failed: {e}")
        return error_response(e)

    if rental is None:
        return web.json_response({"status": "ignored"})
    return web.json_response({"rental_id": rental.id, "status": rental.status.value})


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "armed_timers": request.app[COMPONENTS_KEY].supervisor.armed})


def create_webhook_app(components: Components) -> web.Application:
    app = web.Application()
    app[COMPONENTS_KEY] = components
    app.router.add_post("/webhook/payments", payment_webhook_handler)
    app.router.add_post("/webhook/provider", provider_webhook_handler)
    app.router.add_get("/health", health_handler)
    return app
