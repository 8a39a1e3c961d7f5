"""
Checkout client — starts checkout workflows and relays payer/gateway events.

`CheckoutClient` is what the storefront backend (and the webhook app) uses to
talk to running checkouts. Gateway callbacks go through `reconcile`, which
hands them to a ReconcilePaymentWorkflow on the worker.

Usage:
    # Start a checkout from a JSON request (CheckoutRequest without config):
    python -m storefront_checkout.client start --request cart.json --wait

    # Inspect / drive a running checkout:
    python -m storefront_checkout.client status --order-ref 3f2a
    python -m storefront_checkout.client confirm --order-ref 3f2a --intent-id pi_123
    python -m storefront_checkout.client cancel --order-ref 3f2a
    python -m storefront_checkout.client retry --order-ref 3f2a
"""

import argparse
import asyncio
import logging
from pathlib import Path

from temporalio.client import Client, WorkflowHandle

# Must match the data_converter used by the worker — see worker.py.
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError

from storefront_checkout.config import CheckoutConfig, load_config
from storefront_checkout.domain.payloads import (
    CheckoutRequest,
    CheckoutResult,
    CheckoutStatus,
    GatewayEvent,
    PaymentEvent,
    PaymentEventSource,
    ReconcileOutcome,
    checkout_workflow_id,
    reconcile_workflow_id,
)
from storefront_checkout.workflows import CheckoutWorkflow, ReconcilePaymentWorkflow

logger = logging.getLogger(__name__)


class CheckoutClient:
    def __init__(self, client: Client, config: CheckoutConfig) -> None:
        self.client = client
        self.config = config

    @classmethod
    async def connect(cls, config: CheckoutConfig) -> "CheckoutClient":
        client = await Client.connect(config.temporal_address, data_converter=pydantic_data_converter)
        return cls(client, config)

    def handle(self, order_ref: str) -> WorkflowHandle:
        return self.client.get_workflow_handle_for(CheckoutWorkflow.run, checkout_workflow_id(order_ref))

    async def start_checkout(self, req: CheckoutRequest) -> WorkflowHandle:
        """Start a checkout with the current pricing, delivery and payment configuration."""
        req = req.model_copy(
            update={"pricing": self.config.pricing, "delivery": self.config.delivery, "payment": self.config.payment}
        )
        logger.info("Starting checkout %s", checkout_workflow_id(req.order_ref))
        return await self.client.start_workflow(
            CheckoutWorkflow.run,
            req,
            id=checkout_workflow_id(req.order_ref),
            task_queue=self.config.task_queue,
        )

    async def status(self, order_ref: str) -> CheckoutStatus:
        return await self.handle(order_ref).query(CheckoutWorkflow.get_status)

    async def result(self, order_ref: str) -> CheckoutResult:
        return await self.handle(order_ref).result()

    async def _signal(self, order_ref: str, signal, arg: PaymentEvent | None = None) -> bool:
        handle = self.handle(order_ref)
        try:
            if arg is None:
                await handle.signal(signal)
            else:
                await handle.signal(signal, arg)
        except RPCError as e:
            logger.warning("Could not signal checkout %s: %s", order_ref, e)
            return False
        return True

    # ── Payer-side events ────────────────────────────────────────

    async def confirm_from_client(self, order_ref: str, intent_id: str) -> bool:
        event = PaymentEvent(intent_id=intent_id, source=PaymentEventSource.CLIENT, status="succeeded")
        return await self._signal(order_ref, CheckoutWorkflow.payment_confirmed, event)

    async def report_client_failure(self, order_ref: str, intent_id: str, error_code: str | None) -> bool:
        event = PaymentEvent(intent_id=intent_id, source=PaymentEventSource.CLIENT, status="failed", error_code=error_code)
        return await self._signal(order_ref, CheckoutWorkflow.payment_failed, event)

    async def cancel(self, order_ref: str) -> bool:
        return await self._signal(order_ref, CheckoutWorkflow.cancel_payment)

    async def retry(self, order_ref: str) -> bool:
        return await self._signal(order_ref, CheckoutWorkflow.retry_payment)

    # ── Gateway callbacks ────────────────────────────────────────

    async def reconcile(self, event: GatewayEvent) -> ReconcileOutcome:
        """Reconcile a verified gateway callback on a worker and wait for the outcome."""
        try:
            return await self.client.execute_workflow(
                ReconcilePaymentWorkflow.run,
                event,
                id=reconcile_workflow_id(event),
                task_queue=self.config.task_queue,
                id_reuse_policy=WorkflowIDReusePolicy.REJECT_DUPLICATE,
            )
        except WorkflowAlreadyStartedError:
            logger.info("Gateway event %s already reconciled", reconcile_workflow_id(event))
            return ReconcileOutcome.DUPLICATE


async def run_client(args: argparse.Namespace) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    checkout = await CheckoutClient.connect(load_config(args.config))

    if args.command == "start":
        req = CheckoutRequest.model_validate_json(Path(args.request).read_text())
        await checkout.start_checkout(req)
        if args.wait:
            result = await checkout.result(req.order_ref)
            print(result.model_dump_json(indent=2))
        else:
            print((await checkout.status(req.order_ref)).model_dump_json(indent=2))
    elif args.command == "status":
        print((await checkout.status(args.order_ref)).model_dump_json(indent=2))
    elif args.command == "confirm":
        await checkout.confirm_from_client(args.order_ref, args.intent_id)
    elif args.command == "cancel":
        await checkout.cancel(args.order_ref)
    elif args.command == "retry":
        await checkout.retry(args.order_ref)


def main() -> None:
    parser = argparse.ArgumentParser(description="Drive storefront checkouts via Temporal")
    parser.add_argument("--config", default=None, help="Path to a JSON checkout configuration")
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a checkout")
    start.add_argument("--request", required=True, help="JSON file with a CheckoutRequest")
    start.add_argument("--wait", action="store_true", help="Block until the checkout finishes")

    for name in ("status", "cancel", "retry"):
        sub = commands.add_parser(name)
        sub.add_argument("--order-ref", required=True)

    confirm = commands.add_parser("confirm", help="Relay a client-side payment confirmation")
    confirm.add_argument("--order-ref", required=True)
    confirm.add_argument("--intent-id", required=True)

    asyncio.run(run_client(parser.parse_args()))


if __name__ == "__main__":
    main()
