"""LNURL-pay client: Lightning Address resolution and invoice negotiation.

Two calls, both plain GETs against the recipient's provider:
  - GET https://{domain}/.well-known/lnurlp/{user}  (LUD-16 metadata)
  - GET {callback}?amount=<msats>&nostr=<zap request>&lnurl=<lnurl>  (LUD-06 + NIP-57)

Providers report failures with HTTP 200 and {"status": "ERROR", "reason": ...},
so every 2xx body is checked for that discriminator too.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import httpx

from zapgate.bech32 import encode_lnurl
from zapgate.errors import (
    CallbackUnreachable,
    MalformedAddress,
    MalformedResponse,
    MissingInvoice,
    NotFound,
    ProviderError,
    TransportError,
    Unreachable,
)

log = logging.getLogger(__name__)

PAY_REQUEST_TAG = "payRequest"


def split_address(address: str) -> tuple[str, str]:
    """Split user@domain. Raises MalformedAddress."""
    parts = address.strip().split("@")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedAddress(f"Invalid Lightning Address: {address!r}")
    return parts[0].lower(), parts[1].lower()


def well_known_url(address: str) -> str:
    user, domain = split_address(address)
    return f"https://{domain}/.well-known/lnurlp/{user}"


@dataclass(frozen=True)
class LnurlMetadata:
    """LNURL-pay parameters for one Lightning Address."""

    address: str
    callback_url: str
    min_sendable_msats: int
    max_sendable_msats: int
    tag: str
    allows_nostr: bool = False
    nostr_pubkey: str | None = None
    comment_allowed: int = 0
    lnurl: str = ""

    def accepts(self, amount_msats: int) -> bool:
        return self.min_sendable_msats <= amount_msats <= self.max_sendable_msats

    @classmethod
    def from_response(cls, address: str, url: str, data: object) -> LnurlMetadata:
        """Parse a LUD-16 response body. Raises MalformedResponse."""
        if not isinstance(data, dict):
            raise MalformedResponse(f"LNURL response for {address} is not an object")

        callback = data.get("callback")
        if not callback or not isinstance(callback, str):
            raise MalformedResponse(f"No callback URL in LNURL response for {address}")

        try:
            min_sendable = int(data["minSendable"])
            max_sendable = int(data["maxSendable"])
        except KeyError as exc:
            raise MalformedResponse(
                f"LNURL response for {address} missing {exc.args[0]}"
            ) from None
        except (TypeError, ValueError):
            raise MalformedResponse(
                f"LNURL response for {address} has non-integer sendable bounds"
            ) from None
        if min_sendable > max_sendable:
            raise MalformedResponse(
                f"LNURL response for {address}: minSendable {min_sendable} "
                f"> maxSendable {max_sendable}"
            )

        nostr_pubkey = data.get("nostrPubkey")
        try:
            comment_allowed = int(data.get("commentAllowed") or 0)
        except (TypeError, ValueError):
            comment_allowed = 0

        return cls(
            address=address,
            callback_url=callback,
            min_sendable_msats=min_sendable,
            max_sendable_msats=max_sendable,
            tag=str(data.get("tag", "")),
            allows_nostr=data.get("allowsNostr") is True,
            nostr_pubkey=nostr_pubkey if isinstance(nostr_pubkey, str) and nostr_pubkey else None,
            comment_allowed=comment_allowed,
            lnurl=encode_lnurl(url),
        )


def _provider_error(data: object) -> str | None:
    """Return the provider's reason if the body is an LNURL error response."""
    if isinstance(data, dict) and str(data.get("status", "")).upper() == "ERROR":
        return str(data.get("reason") or "LNURL error")
    return None


class LnurlClient:
    """Persistent httpx client for LNURL-pay providers."""

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the persistent httpx.AsyncClient."""
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            headers={"Accept": "application/json"},
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(
        self,
        url: str | httpx.URL,
        error_cls: type[TransportError],
    ) -> object:
        """GET a URL and parse JSON. Transport failures raise error_cls."""
        if self._client is None:
            raise RuntimeError("LnurlClient not started. Call await client.start() first.")

        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise error_cls(f"Request to {_host(url)} failed: {exc}") from exc

        if resp.status_code == 404 and error_cls is Unreachable:
            raise NotFound(f"HTTP 404 from {_host(url)}", status_code=404)
        if not resp.is_success:
            raise error_cls(
                f"HTTP {resp.status_code} from {_host(url)}",
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MalformedResponse(f"Non-JSON response from {_host(url)}") from None

    # -- Resolver ------------------------------------------------------------

    async def resolve(self, address: str) -> LnurlMetadata:
        """Fetch LNURL-pay metadata for a Lightning Address.

        Raises MalformedAddress, NotFound, Unreachable, MalformedResponse
        or ProviderError. Never writes.
        """
        url = well_known_url(address)
        log.info("Fetching LNURL metadata: %s", url)

        data = await self._get_json(url, Unreachable)
        reason = _provider_error(data)
        if reason is not None:
            raise ProviderError(reason)

        metadata = LnurlMetadata.from_response(address, url, data)
        log.debug(
            "Resolved %s: callback=%s range=[%d, %d] allowsNostr=%s",
            address, metadata.callback_url, metadata.min_sendable_msats,
            metadata.max_sendable_msats, metadata.allows_nostr,
        )
        return metadata

    # -- Negotiator ----------------------------------------------------------

    async def fetch_invoice(
        self,
        metadata: LnurlMetadata,
        zap_request: dict,
        amount_msats: int,
    ) -> str:
        """Request a bolt11 invoice for a zap request from the LNURL callback.

        zap_request is the (normally signed) kind 9734 event as a dict.
        Returns the invoice string unmodified. Raises CallbackUnreachable,
        ProviderError or MissingInvoice.
        """
        params = {
            "amount": str(amount_msats),
            "nostr": json.dumps(zap_request, separators=(",", ":"), ensure_ascii=False),
        }
        if metadata.lnurl:
            params["lnurl"] = metadata.lnurl

        try:
            url = httpx.URL(metadata.callback_url).copy_merge_params(params)
        except httpx.InvalidURL as exc:
            raise CallbackUnreachable(f"Invalid callback URL: {exc}") from exc

        log.info("Requesting invoice from callback (%d msats)", amount_msats)
        data = await self._get_json(url, CallbackUnreachable)

        reason = _provider_error(data)
        if reason is not None:
            raise ProviderError(reason)

        invoice = data.get("pr") if isinstance(data, dict) else None
        if not invoice or not isinstance(invoice, str):
            raise MissingInvoice("No invoice (pr) in callback response")

        log.info("Invoice received")
        return invoice


def _host(url: str | httpx.URL) -> str:
    try:
        return httpx.URL(url).host
    except httpx.InvalidURL:
        return str(url)
