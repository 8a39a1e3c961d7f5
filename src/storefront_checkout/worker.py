"""
Temporal worker — polls the "checkout-orders" task queue.

A **worker** is a long-running process that connects to the Temporal server
and polls a **task queue** for work. It registers the CheckoutWorkflow, the
ReconcilePaymentWorkflow and every activity they run.

The worker is the one process that owns the order and coupon stores:
checkouts and gateway-callback reconciliation both read and write them here.

Services (stores, gateway, geocoder, e-mail) are built by ServiceFactory from
the loaded configuration. Without `STRIPE_SECRET_KEY` the simulated gateway
is used.

Run with:
    python -m storefront_checkout.worker
"""

import asyncio
import logging

from temporalio.client import Client

# The same data_converter must be used on both the worker AND the client,
# otherwise Pydantic payloads fail to deserialize.
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.worker import Worker

from storefront_checkout.activities import (
    check_coupon,
    create_order,
    geocode_address,
    reconcile_payment,
    redeem_coupon,
    release_coupon,
    request_payment_intent,
    send_order_confirmation,
    update_payment_status,
    verify_payment_intent,
)
from storefront_checkout.config import load_config
from storefront_checkout.services.factory import ServiceFactory
from storefront_checkout.workflows import CheckoutWorkflow, ReconcilePaymentWorkflow

ACTIVITIES = [
    geocode_address,
    check_coupon,
    create_order,
    redeem_coupon,
    release_coupon,
    request_payment_intent,
    verify_payment_intent,
    update_payment_status,
    send_order_confirmation,
    reconcile_payment,
]


def build_worker(client: Client, task_queue: str) -> Worker:
    return Worker(
        client,
        task_queue=task_queue,
        workflows=[CheckoutWorkflow, ReconcilePaymentWorkflow],
        activities=ACTIVITIES,
    )


async def run_worker() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logger = logging.getLogger(__name__)

    config = load_config()
    ServiceFactory.configure(config=config)

    client = await Client.connect(config.temporal_address, data_converter=pydantic_data_converter)
    logger.info("Connected to Temporal — starting worker on queue %r", config.task_queue)

    # worker.run() blocks until the worker is shut down (e.g., via Ctrl+C).
    await build_worker(client, config.task_queue).run()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
