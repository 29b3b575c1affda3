#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Basic Fiber SDK Usage Example

Demonstrates:
- Creating a state-machine fiber
- Back-to-back transitions without waiting for the read replica
- Waiting for a state, with fail-fast on critical rejections
- Reading event receipts from the latest snapshot

Environment:
    METAGRAPH_ML0_URL, METAGRAPH_DL1_URL, INDEXER_URL, FIBER_SIGNING_KEY
"""

import asyncio
import logging

from fiber_client import ClientConfig, FiberClient, KeyPair, event_receipts_for_fiber

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

ORDER_DEFINITION = {
    "states": {
        "Placed": {"id": {"value": "Placed"}, "isFinal": False},
        "Paid": {"id": {"value": "Paid"}, "isFinal": False},
        "Shipped": {"id": {"value": "Shipped"}, "isFinal": True},
    },
    "initialState": {"value": "Placed"},
    "transitions": [
        {"from": {"value": "Placed"}, "to": {"value": "Paid"}, "eventName": "pay",
         "guard": {">=": [{"var": "event.amount"}, {"var": "state.total"}]},
         "effect": {"merge": [{"var": "state"}, {"paid": True}]}},
        {"from": {"value": "Paid"}, "to": {"value": "Shipped"}, "eventName": "ship",
         "guard": True, "effect": {"merge": [{"var": "state"}, {"carrier": {"var": "event.carrier"}}]}},
    ],
}


async def main():
    key = KeyPair.from_env()
    logger.info(f"Signing as {key.address}")

    async with FiberClient(ClientConfig.from_env(), key=key) as client:
        if not await client.is_healthy():
            logger.warning("Metagraph is not reachable")
            return

        created = await client.create_state_machine(ORDER_DEFINITION, {"total": 25})
        logger.info(f"Created fiber {created.fiber_id}: {created.hash}")

        if not (await client.wait_for_fiber(created.fiber_id)).reached:
            logger.error("Fiber never appeared on chain")
            return

        # Sequence numbers 0 and 1, even before ML0 reflects the first one
        await client.transition(created.fiber_id, "pay", {"amount": 25})
        await client.transition(created.fiber_id, "ship", {"carrier": "ACME"})

        result = await client.wait_for_state(created.fiber_id, "Shipped", timeout=60)
        if result.rejected:
            logger.error(f"Order rejected: {result.reason}")
            return
        if result.timed_out:
            logger.warning(f"Still in {result.value} after {result.attempts} polls")
            return

        state = await client.get_latest_on_chain_state()
        if state is not None:
            for receipt in event_receipts_for_fiber(state, created.fiber_id):
                logger.info(f"Receipt: {receipt['eventName']} success={receipt['success']}")

        logger.info(f"Stats: {client.get_stats()}")


if __name__ == "__main__":
    asyncio.run(main())
