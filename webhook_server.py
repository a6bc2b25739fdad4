"""HTTP endpoint for payment gateway callbacks.

The gateway POSTs a JSON body signed with HMAC-SHA256 over the raw bytes
(``X-Callback-Signature``) and names the event in ``X-Callback-Event``. The
signature and the event are checked before anything touches the database.
"""

import json
import logging
from typing import Optional

from aiohttp import web

from payment_gateway import PaymentGatewayClient
from reconciler import TransactionReconciler
from sanitizer import clean_merchant_ref

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Callback-Signature"
EVENT_HEADER = "X-Callback-Event"
PAYMENT_EVENT = "payment_status"

GATEWAY_KEY = web.AppKey("gateway", PaymentGatewayClient)
RECONCILER_KEY = web.AppKey("reconciler", TransactionReconciler)


def _reply(status: int, success: bool, message: str) -> web.Response:
    return web.json_response({"success": success, "message": message}, status=status)


async def handle_payment_callback(request: web.Request) -> web.Response:
    gateway = request.app[GATEWAY_KEY]
    reconciler = request.app[RECONCILER_KEY]

    raw_body = await request.read()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not gateway.verify_callback_signature(raw_body, signature):
        logger.warning(f"Rejected payment callback from {request.remote}: invalid signature")
        return _reply(403, False, "Invalid signature")

    event = request.headers.get(EVENT_HEADER)
    if event != PAYMENT_EVENT:
        logger.warning(f"Rejected payment callback with unknown event {event!r}")
        return _reply(400, False, "Unrecognized callback event")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("Rejected payment callback with malformed body")
        return _reply(400, False, "Invalid payload")

    merchant_ref: Optional[str] = None
    if isinstance(payload, dict):
        merchant_ref = clean_merchant_ref(payload.get("merchant_ref"))
    if not merchant_ref:
        return _reply(400, False, "merchant_ref missing")

    logger.info(f"Payment callback for {merchant_ref}: status={payload.get('status')!r}")
    try:
        result = await reconciler.handle_callback(merchant_ref)
    except Exception:
        logger.exception(f"Reconciliation failed for callback {merchant_ref}")
        return _reply(500, False, "Internal error")

    if result.trx is None:
        logger.warning(f"Callback for unknown transaction {merchant_ref}")
        return _reply(200, True, "Trx not found locally")

    if result.status_changed:
        logger.info(f"{merchant_ref}: {result.old_status.value} -> {result.new_status.value}")
        try:
            await reconciler.notify_status_change(result.trx)
        except Exception:
            # A failed Telegram call is still acknowledged to the gateway.
            logger.exception(f"Notifying user about {merchant_ref} failed")

    return _reply(200, True, "OK")


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


def create_app(
    gateway: PaymentGatewayClient,
    reconciler: TransactionReconciler,
    path: str = "/callback/payment",
) -> web.Application:
    """Build the webhook application.

    Args:
        gateway: Client whose API key verifies callback signatures
        reconciler: Reconciler that applies the callback
        path: URL path the gateway posts to

    Returns:
        The aiohttp application, not yet started.
    """
    app = web.Application()
    app[GATEWAY_KEY] = gateway
    app[RECONCILER_KEY] = reconciler
    app.add_routes([
        web.post(path, handle_payment_callback),
        web.get("/health", handle_health),
    ])
    return app


async def start_webhook(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Serve ``app`` on ``host:port`` in the running event loop."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Payment webhook listening on {host}:{port}")
    return runner
