"""HTTP API for the game front end.

The browser never talks to LNURL providers or relays directly; it asks
this server for an invoice, shows it, and polls (or long-polls) for the
payment outcome. Runs on port 8430 by default.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from aiohttp import web

from zapgate.errors import (
    InvalidAmount,
    MalformedResponse,
    MissingInvoice,
    PaymentAborted,
    PaymentInProgress,
    ProviderError,
    TransportError,
    ZapError,
)
from zapgate.session import PaymentFlow

if TYPE_CHECKING:
    from zapgate.nostr_relay import NostrRelaySubscriber

log = logging.getLogger(__name__)


def _error_status(exc: ZapError) -> int:
    if isinstance(exc, (PaymentInProgress, PaymentAborted)):
        return 409
    if isinstance(exc, InvalidAmount):
        return 400
    if isinstance(exc, (TransportError, ProviderError, MissingInvoice, MalformedResponse)):
        return 502
    return 500


def _error_code(exc: ZapError) -> str:
    """snake_case class name: PaymentInProgress -> payment_in_progress."""
    name = type(exc).__name__
    return "".join("_" + c.lower() if c.isupper() else c for c in name).lstrip("_")


class PaymentServer:
    """Lightweight HTTP server in front of one PaymentFlow.

    Endpoints:
      POST   /payments               start a payment, returns the invoice
      GET    /payments/current       state of the current session
      POST   /payments/current/wait  block until the session is terminal
      DELETE /payments/current       abort and reset to idle
      GET    /health                 liveness, plus relay status when known
      GET    /relays                 per-relay connection state
    """

    def __init__(
        self,
        flow: PaymentFlow,
        host: str = "127.0.0.1",
        port: int = 8430,
        wait_timeout: float = 65.0,
        relays: NostrRelaySubscriber | None = None,
    ) -> None:
        self._flow = flow
        self._relays = relays
        self._host = host
        self._port = port
        self._wait_timeout = wait_timeout
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/payments", self._handle_start)
        app.router.add_get("/payments/current", self._handle_current)
        app.router.add_post("/payments/current/wait", self._handle_wait)
        app.router.add_delete("/payments/current", self._handle_reset)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/relays", self._handle_relays)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("Payment server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop the HTTP server and release resources."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # -- Handlers ----------------------------------------------------------------

    async def _handle_start(self, request: web.Request) -> web.Response:
        """POST /payments

        Body (optional): {"amount_sats": int}
        """
        amount_sats = None
        if request.can_read_body:
            try:
                data = await request.json()
            except Exception:
                return web.json_response({"error": "Invalid JSON"}, status=400)
            if not isinstance(data, dict):
                return web.json_response({"error": "Body must be an object"}, status=400)
            amount_sats = data.get("amount_sats")
            if amount_sats is not None and (
                isinstance(amount_sats, bool) or not isinstance(amount_sats, int)
            ):
                return web.json_response(
                    {"error": "amount_sats must be an integer"}, status=400
                )

        try:
            details = await self._flow.start(amount_sats)
        except ZapError as exc:
            log.warning("Payment start failed: %s", exc.message)
            return web.json_response(
                {"error": exc.message, "code": _error_code(exc)},
                status=_error_status(exc),
            )

        return web.json_response(details.to_dict())

    async def _handle_current(self, request: web.Request) -> web.Response:
        """GET /payments/current"""
        return web.json_response(self._snapshot())

    async def _handle_wait(self, request: web.Request) -> web.Response:
        """POST /payments/current/wait

        Returns 200 with the terminal result, 202 if still pending when the
        wait window closes, 404 if there is no session.
        """
        if self._flow.session is None:
            return web.json_response({"error": "No payment session"}, status=404)
        try:
            await self._flow.wait(timeout=self._wait_timeout)
        except asyncio.TimeoutError:
            return web.json_response(self._snapshot(), status=202)
        return web.json_response(self._snapshot())

    async def _handle_reset(self, request: web.Request) -> web.Response:
        """DELETE /payments/current"""
        session_id = await self._flow.reset()
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        data: dict = {"ok": True}
        if self._relays is not None:
            data["relays"] = await self._relays.relay_status()
        return web.json_response(data)

    async def _handle_relays(self, request: web.Request) -> web.Response:
        """GET /relays

        Returns {"connected": bool, "relays": [{"url", "connected"}]}.
        """
        if self._relays is None:
            return web.json_response({"connected": False, "relays": []})
        return web.json_response(await self._relays.relay_status())

    def _snapshot(self) -> dict:
        session = self._flow.session
        data: dict = {"state": self._flow.state, "session": None}
        if session is not None:
            data["session"] = {
                "session_id": session.session_id,
                "amount_sats": session.amount_sats,
                "invoice": session.invoice,
                "created_at": session.created_at,
            }
            if session.result is not None:
                data["result"] = session.result.to_dict()
        return data
