"""
HTTP surface of the checkout core.

- `POST /webhooks/stripe` receives the gateway's asynchronous callbacks. The
  Stripe signature is verified before anything else; the event is then
  reconciled on a worker (ReconcilePaymentWorkflow), where the order store
  lives. This app keeps no order state of its own.
- `/checkouts/{order_ref}/...` relays the payer's browser-side events
  (confirmation, failure, cancel, retry) to the running checkout workflow
  and exposes its status.

Run with:
    python -m storefront_checkout.webhook
"""

import json
import logging
import os
from contextlib import asynccontextmanager

import stripe
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from storefront_checkout.client import CheckoutClient
from storefront_checkout.config import load_config
from storefront_checkout.services.reconciliation import event_from_stripe

logger = logging.getLogger(__name__)


class ClientConfirmation(BaseModel):
    intent_id: str


class ClientFailure(BaseModel):
    intent_id: str
    error_code: str | None = None


def create_app(
    webhook_secret: str | None,
    checkout: CheckoutClient | None = None,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(title="Storefront checkout", lifespan=lifespan)
    app.state.webhook_secret = webhook_secret
    app.state.checkout = checkout

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        if not stripe_signature:
            raise HTTPException(status_code=400, detail="No signature")
        if not request.app.state.webhook_secret:
            raise HTTPException(status_code=503, detail="Webhook secret not configured")

        payload = (await request.body()).decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, stripe_signature, request.app.state.webhook_secret)
            event = json.loads(payload)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Rejected webhook: %s", e)
            raise HTTPException(status_code=400, detail="Invalid webhook") from e

        gateway_event = event_from_stripe(event)
        if gateway_event is None:
            return {"received": True, "handled": False}
        outcome = await request.app.state.checkout.reconcile(gateway_event)
        return {"received": True, "handled": True, "outcome": outcome.value}

    @app.get("/checkouts/{order_ref}")
    async def checkout_status(order_ref: str, request: Request):
        status = await request.app.state.checkout.status(order_ref)
        return status.model_dump(mode="json")

    @app.post("/checkouts/{order_ref}/confirm", status_code=202)
    async def confirm(order_ref: str, body: ClientConfirmation, request: Request):
        if not await request.app.state.checkout.confirm_from_client(order_ref, body.intent_id):
            raise HTTPException(status_code=404, detail="No running checkout")
        return {"accepted": True}

    @app.post("/checkouts/{order_ref}/fail", status_code=202)
    async def fail(order_ref: str, body: ClientFailure, request: Request):
        if not await request.app.state.checkout.report_client_failure(order_ref, body.intent_id, body.error_code):
            raise HTTPException(status_code=404, detail="No running checkout")
        return {"accepted": True}

    @app.post("/checkouts/{order_ref}/cancel", status_code=202)
    async def cancel(order_ref: str, request: Request):
        if not await request.app.state.checkout.cancel(order_ref):
            raise HTTPException(status_code=404, detail="No running checkout")
        return {"accepted": True}

    @app.post("/checkouts/{order_ref}/retry", status_code=202)
    async def retry(order_ref: str, request: Request):
        if not await request.app.state.checkout.retry(order_ref):
            raise HTTPException(status_code=404, detail="No running checkout")
        return {"accepted": True}

    return app


def app_from_config() -> FastAPI:
    config = load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.checkout = await CheckoutClient.connect(config)
        yield

    return create_app(config.stripe_webhook_secret, lifespan=lifespan)


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    uvicorn.run(app_from_config(), host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
