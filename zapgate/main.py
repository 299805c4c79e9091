"""zapgate: main entry point.

Wires the LNURL client, relay subscriber and payment flow together,
starts the HTTP server, and handles graceful shutdown on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from zapgate.config import Config
from zapgate.lnurl import LnurlClient
from zapgate.nostr_relay import (
    NostrRelaySubscriber,
    connect_client,
    load_keys,
    make_signer,
    verify_event_signature,
)
from zapgate.server import PaymentServer
from zapgate.session import PaymentFlow
from zapgate.zap_verify import ZapOutcome

log = logging.getLogger(__name__)


def _log_rejection(outcome: ZapOutcome) -> None:
    log.info("Rejected receipt %s: %s", (outcome.event_id or "?")[:16], outcome.reason)


async def run(config: Config) -> None:
    """Start all services and run until shutdown signal."""
    # -- LNURL client --
    lnurl = LnurlClient(timeout=float(config.http_timeout_seconds))
    await lnurl.start()

    # -- Nostr keys + client --
    keys = load_keys(config.nostr_nsec)
    client = await connect_client(
        keys, config.nostr_relays, float(config.relay_timeout_seconds)
    )
    subscriber = NostrRelaySubscriber(client)

    # -- Payment flow --
    flow = PaymentFlow(
        lnurl=lnurl,
        subscriber=subscriber,
        config=config,
        sign_request=make_signer(keys),
        verify_signature=verify_event_signature,
        on_rejection=_log_rejection,
    )

    # -- HTTP server --
    server = PaymentServer(
        flow,
        host=config.server_host,
        port=config.server_port,
        wait_timeout=float(config.receipt_timeout_seconds + 5),
        relays=subscriber,
    )
    await server.start()

    # -- Shutdown signal handling --
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        log.info("Shutdown signal received")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    notifications = asyncio.create_task(
        client.handle_notifications(subscriber),
        name="nostr_notifications",
    )

    log.info(
        "zapgate running: recipient=%s min=%d sats timeout=%ds",
        config.recipient_address, config.min_payment_sats,
        config.receipt_timeout_seconds,
    )
    log.info("Relays: %s", ", ".join(config.nostr_relays))

    # -- Wait for shutdown --
    await shutdown.wait()
    log.info("Shutting down...")

    # -- Graceful shutdown --
    await flow.close()
    notifications.cancel()
    try:
        await notifications
    except asyncio.CancelledError:
        pass

    await server.stop()
    await lnurl.close()
    await client.disconnect()
    log.info("Shutdown complete")


def main() -> None:
    """Load config, configure logging, run the server."""
    config = Config.load()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
