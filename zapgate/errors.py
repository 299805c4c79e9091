"""Exception taxonomy for the zap payment flow.

Receipt rejections and timeouts are not exceptions: they are reported as
ZapOutcome / PaymentResult values (see zap_verify.py and session.py).
"""

from __future__ import annotations


class ZapError(Exception):
    """Base class for every failure surfaced by zapgate."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# -- Configuration -------------------------------------------------------------


class ConfigurationError(ZapError):
    """Static setup is wrong. Not retried."""


class MalformedAddress(ConfigurationError):
    pass


class MalformedResponse(ConfigurationError):
    """The provider answered, but without the fields LNURL-pay requires."""


class ZapsNotSupported(ConfigurationError):
    """The Lightning Address cannot issue NIP-57 zap invoices."""


# -- Transport -----------------------------------------------------------------


class TransportError(ZapError):
    """Endpoint unreachable or non-2xx. The caller may retry the whole flow."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Unreachable(TransportError):
    pass


class NotFound(TransportError):
    pass


class CallbackUnreachable(TransportError):
    pass


# -- Provider ------------------------------------------------------------------


class ProviderError(ZapError):
    """The LNURL provider explicitly returned {"status": "ERROR"}."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MissingInvoice(ZapError):
    """Callback answered 2xx without a `pr` field."""


# -- Protocol invariants -------------------------------------------------------


class ProtocolInvariantViolation(ZapError):
    """Raised before any network call is made."""


class InvalidAmount(ProtocolInvariantViolation):
    def __init__(
        self,
        amount_msats: int,
        min_sendable_msats: int | None = None,
        max_sendable_msats: int | None = None,
    ) -> None:
        if min_sendable_msats is None or max_sendable_msats is None:
            message = f"Invalid amount: {amount_msats} msats"
        else:
            message = (
                f"Amount {amount_msats} msats is outside allowed range "
                f"[{min_sendable_msats}, {max_sendable_msats}]"
            )
        super().__init__(message)
        self.amount_msats = amount_msats
        self.min_sendable_msats = min_sendable_msats
        self.max_sendable_msats = max_sendable_msats


class PaymentInProgress(ProtocolInvariantViolation):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Payment {session_id} already in progress")
        self.session_id = session_id


class PaymentAborted(ZapError):
    """The session was reset while its invoice was being negotiated."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Payment {session_id} was aborted")
        self.session_id = session_id
