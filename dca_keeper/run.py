from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from typing import List, Optional, Sequence

from .config import Settings, settings
from .core.orders.convex_store import ConvexOrderStore
from .core.orders.executor import SwapExecutor
from .core.orders.models import AssetPair
from .core.orders.notifications import (
    CallbackNotificationSink,
    CompositeNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from .core.orders.price_feed import PriceFeed
from .core.orders.scheduler import DCAScheduler
from .core.orders.store import InMemoryOrderStore, OrderStore
from .db.convex_client import ConvexClient
from .logging_config import setup_logging
from .providers.coingecko import CoingeckoPriceProvider
from .providers.rpc import JsonRpcReceiptProvider
from .providers.swap_signer import HttpSwapSigner

logger = logging.getLogger("dca_keeper")


def build_store(config: Settings) -> OrderStore:
    if config.order_store_backend == "convex":
        client = ConvexClient(
            deployment_url=config.convex_url,
            deploy_key=config.convex_deploy_key,
            timeout=config.store_timeout_seconds,
        )
        return ConvexOrderStore(client)
    logger.warning("Using in-memory order store; orders are lost on restart")
    return InMemoryOrderStore()


def build_sink(config: Settings) -> NotificationSink:
    sinks: List[NotificationSink] = [CallbackNotificationSink()]
    if config.has_webhook:
        sinks.append(
            WebhookNotificationSink(
                url=config.notification_webhook_url,
                secret=config.notification_webhook_secret,
                timeout_s=config.notification_timeout_seconds,
            )
        )
    return CompositeNotificationSink(sinks)


def build_scheduler(config: Settings) -> DCAScheduler:
    if not config.has_swap_signer:
        raise RuntimeError("SWAP_SIGNER_URL is required to execute orders")

    provider = CoingeckoPriceProvider(
        api_key=config.coingecko_api_key,
        base_url=config.coingecko_base_url,
        asset_ids=config.coingecko_asset_ids,
        quote_currencies=config.coingecko_quote_currencies,
        timeout_s=config.price_fetch_timeout_seconds,
    )
    feed = PriceFeed(
        provider,
        ttl_seconds=config.price_cache_ttl_seconds,
        timeout_seconds=config.price_fetch_timeout_seconds,
    )

    receipts = None
    if config.require_confirmation:
        if not config.rpc_url:
            raise RuntimeError("RPC_URL is required when REQUIRE_CONFIRMATION is set")
        receipts = JsonRpcReceiptProvider(rpc_url=config.rpc_url)

    executor = SwapExecutor(
        signer=HttpSwapSigner(
            base_url=config.swap_signer_url,
            api_key=config.swap_signer_api_key,
            timeout_s=config.swap_timeout_seconds,
        ),
        receipts=receipts,
        require_confirmation=config.require_confirmation,
        submission_timeout_seconds=config.swap_timeout_seconds,
        confirmation_timeout_seconds=config.confirmation_timeout_seconds,
        confirmation_poll_seconds=config.confirmation_poll_seconds,
    )

    return DCAScheduler(
        store=build_store(config),
        feed=feed,
        executor=executor,
        sink=build_sink(config),
        pair=AssetPair(config.dca_base_asset.upper(), config.dca_quote_asset.upper()),
        interval_seconds=config.scheduler_interval_seconds,
        max_concurrency=config.scheduler_max_concurrency,
        store_timeout_seconds=config.store_timeout_seconds,
        notification_timeout_seconds=config.notification_timeout_seconds,
    )


async def _serve(config: Settings) -> None:
    scheduler = build_scheduler(config)
    await scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()
    await scheduler.stop()
    await scheduler.store.close()
    if scheduler.sink is not None:
        await scheduler.sink.close()
    logger.info("Final status: %s", json.dumps(scheduler.status()))


async def _once(config: Settings) -> None:
    scheduler = build_scheduler(config)
    try:
        report = await scheduler.run_now()
        print(json.dumps(report.to_dict(), indent=2))
    finally:
        await scheduler.store.close()
        if scheduler.sink is not None:
            await scheduler.sink.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="DCA order keeper")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    if args.once:
        asyncio.run(_once(settings))
    else:
        asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
