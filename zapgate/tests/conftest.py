"""Shared pytest fixtures for zapgate tests."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace

import pytest

from zapgate.config import Config
from zapgate.session import ReceiptFilter


def _base_config() -> Config:
    return Config(
        recipient_address="alice@example.com",
        recipient_pubkey=None,
        min_payment_sats=100,
        receipt_timeout_seconds=60,
        receipt_lookback_seconds=60,
        nostr_relays=["wss://relay.damus.io", "wss://nos.lol"],
        nostr_nsec="",
        relay_timeout_seconds=5,
        http_timeout_seconds=10,
        server_host="127.0.0.1",
        server_port=8430,
        app_name="SatSnake",
        session_prefix="satsnake",
        log_level="INFO",
    )


@pytest.fixture()
def make_config() -> Callable[..., Config]:
    """Factory: make_config(**overrides) -> Config."""

    def _make(**overrides) -> Config:
        return replace(_base_config(), **overrides)

    return _make


class FakeSubscription:
    """Records close() calls. Idempotent like the real one."""

    def __init__(self) -> None:
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def close(self) -> None:
        self.close_calls += 1


class FakeSubscriber:
    """In-memory relay: tests push events with deliver()."""

    def __init__(self) -> None:
        self.filters: list[ReceiptFilter] = []
        self.subscriptions: list[FakeSubscription] = []
        self._handler: Callable[[Mapping], object] | None = None

    async def subscribe(self, receipt_filter, handler) -> FakeSubscription:
        self.filters.append(receipt_filter)
        self._handler = handler
        sub = FakeSubscription()
        self.subscriptions.append(sub)
        return sub

    def deliver(self, event: Mapping):
        assert self._handler is not None, "nothing subscribed"
        return self._handler(event)


@pytest.fixture()
def subscriber() -> FakeSubscriber:
    return FakeSubscriber()
