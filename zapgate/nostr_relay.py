"""nostr_sdk adapters: receipt subscriptions, signing and signature checks.

The payment flow only sees plain NIP-01 dicts. This module owns the
conversion from nostr_sdk objects and the per-subscription routing of
events delivered through Client.handle_notifications().
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping

from nostr_sdk import (
    Client,
    Event,
    EventBuilder,
    Filter,
    HandleNotification,
    Keys,
    Kind,
    NostrSigner,
    PublicKey,
    RelayMessage,
    RelayUrl,
    Tag,
    Timestamp,
)

from zapgate.errors import Unreachable
from zapgate.session import (
    EventHandler,
    ReceiptFilter,
    RequestSigner,
    Subscription,
)
from zapgate.zap_request import ZapRequest

log = logging.getLogger(__name__)


# -- Keys, signing, verification -----------------------------------------------


def load_keys(nsec: str) -> Keys:
    """Parse the configured key, or generate an ephemeral one for anonymous zaps."""
    if nsec:
        return Keys.parse(nsec)
    log.info("NOSTR_NSEC not set, signing zap requests with an ephemeral key")
    return Keys.generate()


def make_signer(keys: Keys) -> RequestSigner:
    """Return a callable that signs a ZapRequest into a NIP-01 event dict."""

    def sign(request: ZapRequest) -> dict:
        tags = [Tag.parse(list(tag)) for tag in request.tags]
        event = (
            EventBuilder(Kind(request.kind), request.content)
            .tags(tags)
            .custom_created_at(Timestamp.from_secs(request.created_at))
            .sign_with_keys(keys)
        )
        return json.loads(event.as_json())

    return sign


def verify_event_signature(event: Mapping) -> bool:
    """BIP-340 check of an event's id and sig. False on any parse failure."""
    try:
        return bool(Event.from_json(json.dumps(dict(event))).verify())
    except Exception:
        log.debug("Event %s failed to parse for verification", str(event.get("id", "?"))[:16])
        return False


def event_to_dict(event: Event) -> dict:
    return json.loads(event.as_json())


# -- Client lifecycle ----------------------------------------------------------


async def connect_client(keys: Keys, relays: list[str], timeout: float) -> Client:
    """Create a Client, add relays and connect."""
    client = Client(NostrSigner.keys(keys))
    for relay in relays:
        try:
            await client.add_relay(RelayUrl.parse(relay))
        except Exception:
            log.exception("Skipping relay %s", relay)
    try:
        await asyncio.wait_for(client.connect(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Relay connect did not finish within %ss, continuing", timeout)
    log.info("Connected to %d relay(s)", len(relays))
    return client


# -- Subscriptions -------------------------------------------------------------


class NostrSubscription(Subscription):
    """One relay subscription. close() is idempotent and never raises."""

    def __init__(self, subscriber: NostrRelaySubscriber, subscription_id: str) -> None:
        self._subscriber = subscriber
        self.subscription_id = subscription_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._subscriber._unsubscribe(self.subscription_id)


class NostrRelaySubscriber(HandleNotification):
    """RelaySubscriber over a shared nostr_sdk Client.

    Run client.handle_notifications(subscriber) in a background task so
    that handle() receives events. Relays can deliver the same event more
    than once (several relays, reconnects); duplicates are dropped before
    they reach a handler.
    """

    def __init__(self, client: Client) -> None:
        self._client = client
        self._handlers: dict[str, EventHandler] = {}
        # Receipt ids already forwarded, with the monotonic time first seen.
        self._forwarded: dict[str, float] = {}
        self._receipt_memory_seconds: float = 600.0
        self._lookups_since_sweep: int = 0
        self._sweep_every: int = 50

    @staticmethod
    def build_filter(receipt_filter: ReceiptFilter) -> Filter:
        f = Filter().kinds([Kind(k) for k in receipt_filter.kinds])
        if receipt_filter.authors:
            f = f.authors([PublicKey.parse(a) for a in receipt_filter.authors])
        return f.since(Timestamp.from_secs(max(receipt_filter.since, 0)))

    async def subscribe(
        self, receipt_filter: ReceiptFilter, handler: EventHandler
    ) -> NostrSubscription:
        """Open a relay subscription. Raises Unreachable on relay errors."""
        try:
            output = await self._client.subscribe(self.build_filter(receipt_filter))
        except Exception as exc:
            raise Unreachable(f"Relay subscription failed: {exc}") from exc
        subscription_id = str(output.id)
        self._handlers[subscription_id] = handler
        log.debug(
            "Subscribed %s: kinds=%s authors=%s since=%d",
            subscription_id, receipt_filter.kinds,
            [a[:16] for a in receipt_filter.authors], receipt_filter.since,
        )
        return NostrSubscription(self, subscription_id)

    async def _unsubscribe(self, subscription_id: str) -> None:
        self._handlers.pop(subscription_id, None)
        try:
            await self._client.unsubscribe(subscription_id)
        except Exception:
            # Connection already gone; nothing left to tear down.
            log.debug("Unsubscribe %s failed", subscription_id, exc_info=True)
        else:
            log.debug("Unsubscribed %s", subscription_id)

    async def relay_status(self) -> dict:
        """Connection state of every relay in the client's pool.

        Returns {"connected": bool, "relays": [{"url", "connected"}]};
        "connected" is true when at least one relay is up. An unreadable
        pool reports as disconnected with no relays.
        """
        try:
            pool = await self._client.relays()
            relays = [
                {"url": str(url), "connected": bool(relay.is_connected())}
                for url, relay in pool.items()
            ]
        except Exception:
            log.warning("Could not read relay pool", exc_info=True)
            return {"connected": False, "relays": []}
        return {
            "connected": any(r["connected"] for r in relays),
            "relays": relays,
        }

    # -- Receipt re-delivery --------------------------------------------------

    def _forget_expired(self, now: float) -> None:
        cutoff = now - self._receipt_memory_seconds
        for event_id in [e for e, ts in self._forwarded.items() if ts < cutoff]:
            del self._forwarded[event_id]

    def _already_forwarded(self, event_id_hex: str) -> bool:
        """Record a receipt id; True if it was already forwarded.

        Every connected relay sends its own copy of a zap receipt, and a
        reconnect replays everything since the filter's `since`. Ids are kept
        for `_receipt_memory_seconds`, longer than the receipt timeout plus
        the lookback, and expired ones are swept every `_sweep_every` lookups.
        """
        now = time.monotonic()

        self._lookups_since_sweep += 1
        if self._lookups_since_sweep >= self._sweep_every:
            self._lookups_since_sweep = 0
            self._forget_expired(now)

        if event_id_hex in self._forwarded:
            return True
        self._forwarded[event_id_hex] = now
        return False

    # -- HandleNotification interface ------------------------------------------

    async def handle(self, relay_url: RelayUrl, subscription_id: str, event: Event):
        """Forward an event to its subscription's handler. Skips duplicates."""
        handler = self._handlers.get(str(subscription_id))
        if handler is None:
            return

        event_id_hex = event.id().to_hex()
        if self._already_forwarded(event_id_hex):
            log.debug("Dropping re-delivered receipt %s", event_id_hex[:16])
            return

        try:
            handler(event_to_dict(event))
        except Exception:
            log.exception("Error handling event %s", event_id_hex[:16])

    async def handle_msg(self, relay_url: RelayUrl, msg: RelayMessage):
        """Required by HandleNotification. No-op."""
        pass
