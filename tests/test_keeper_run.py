import pytest

from dca_keeper.config import Settings
from dca_keeper.core.orders.convex_store import ConvexOrderStore
from dca_keeper.core.orders.executor import SwapExecutor
from dca_keeper.core.orders.models import AssetPair
from dca_keeper.core.orders.notifications import WebhookNotificationSink
from dca_keeper.core.orders.store import InMemoryOrderStore
from dca_keeper.run import build_scheduler, build_sink, build_store


def make_config(**overrides) -> Settings:
    values = dict(_env_file=None, swap_signer_url="https://signer.test")
    values.update(overrides)
    return Settings(**values)


def test_scheduler_requires_signer():
    with pytest.raises(RuntimeError, match="SWAP_SIGNER_URL"):
        build_scheduler(make_config(swap_signer_url=""))


def test_confirmation_requires_rpc(monkeypatch):
    monkeypatch.delenv("RPC_URL", raising=False)
    monkeypatch.delenv("CROSSFI_RPC_URL", raising=False)
    with pytest.raises(RuntimeError, match="RPC_URL"):
        build_scheduler(make_config(require_confirmation=True, rpc_url=""))


def test_default_wiring():
    scheduler = build_scheduler(make_config(dca_base_asset="xfi", dca_quote_asset="usdt"))

    assert isinstance(scheduler.store, InMemoryOrderStore)
    assert isinstance(scheduler.executor, SwapExecutor)
    assert scheduler.pair == AssetPair("XFI", "USDT")
    # Execution bound leaves room for the whole submission
    assert scheduler.execution_timeout > scheduler.executor.submission_timeout_seconds


def test_convex_backend():
    store = build_store(
        make_config(order_store_backend="convex", convex_url="https://demo.convex.cloud", convex_deploy_key="k")
    )
    assert isinstance(store, ConvexOrderStore)


def test_webhook_sink_added():
    sink = build_sink(make_config(notification_webhook_url="https://hooks.test", notification_webhook_secret="s"))
    assert any(isinstance(s, WebhookNotificationSink) for s in sink.sinks)

    plain = build_sink(make_config(notification_webhook_url=""))
    assert not any(isinstance(s, WebhookNotificationSink) for s in plain.sinks)


def test_confirmed_execution_fits_interval():
    config = make_config(require_confirmation=True, rpc_url="https://rpc.test")
    scheduler = build_scheduler(config)

    assert scheduler.execution_timeout > scheduler.executor.max_duration_seconds
    assert scheduler.execution_timeout < scheduler.interval_seconds
