"""
The paywall: root secret, balance ledger, payment receiver and transport.

One Paywall is constructed per process. It registers its PaymentReceiver
on the transport at construction time and exposes the two gate modes:

- announce(): advertise price and a fresh PSK challenge, never blocks
- enforce(): debit the ledger for the request price, or reject
"""
import asyncio
import logging
import threading
from typing import Dict, Optional, Tuple

from fastapi import Request

from app.core.config import settings
from app.ilp.gate import (
    PAY_TOKEN_HEADER,
    GateResult,
    Rejected,
    Unpaid,
    bypass_decision,
    challenge_headers,
    evaluate_payment,
)
from app.ilp.ledger import BalanceLedger
from app.ilp.pricing import PriceResolver
from app.ilp.psk import PskParams, generate_params, generate_receiver_secret
from app.ilp.receiver import CreditPolicy, PaymentReceiver
from app.ilp.transport import ConnectorTransport, PaymentTransport

logger = logging.getLogger(__name__)


def get_payment_token(request: Request) -> Optional[str]:
    """Pay-Token header value, or None when absent or blank."""
    token = request.headers.get(PAY_TOKEN_HEADER)
    if token is None or not token.strip():
        return None
    return token.strip()


class Paywall:
    """Gates requests behind micropayments credited to a shared ledger."""

    def __init__(
        self,
        transport: PaymentTransport,
        ledger: Optional[BalanceLedger] = None,
        receiver_secret: Optional[bytes] = None,
        credit_policy: CreditPolicy = CreditPolicy.AFTER_FULFILL
    ):
        self.transport = transport
        self.ledger = ledger if ledger is not None else BalanceLedger()
        self._receiver_secret = receiver_secret or generate_receiver_secret()
        self.receiver = PaymentReceiver(self.ledger, credit_policy=credit_policy)
        self._connect_lock = asyncio.Lock()

        self.transport.listen(self._receiver_secret, self.receiver)

    async def ensure_connected(self) -> None:
        """
        Connect the transport once; later calls are no-ops.

        Raises:
            TransportNotConnected: If connecting fails
        """
        if self.transport.is_connected():
            return
        async with self._connect_lock:
            if not self.transport.is_connected():
                logger.info("Payment transport not connected, connecting")
                await self.transport.connect()

    def challenge(self) -> PskParams:
        """Fresh destination/shared secret pair for the next payment."""
        return generate_params(self.transport.get_account(), self._receiver_secret)

    async def announce(self, request: Request, price: PriceResolver) -> Dict[str, str]:
        """
        Discovery headers for a payer: price, challenge and token balance.

        The ledger is only read, never modified.
        """
        amount = await price.resolve(request)
        await self.ensure_connected()

        token = get_payment_token(request)
        balance = self.ledger.peek(token) if token else None
        return challenge_headers(amount, self.challenge(), balance)

    async def enforce(
        self,
        request: Request,
        price: PriceResolver,
        optional: bool = False
    ) -> Tuple[GateResult, Dict[str, str]]:
        """
        Run the enforce gate for one request.

        Returns:
            Tuple of (result, headers). Headers are empty for zero-priced
            requests and carry Pay and Pay-Balance otherwise.

        Raises:
            TransportNotConnected: If the transport cannot be connected
        """
        await self.ensure_connected()

        amount = await price.resolve(request)
        token = get_payment_token(request)

        if amount == 0:
            return (Unpaid(bypass_decision(token)), {})

        params = self.challenge()
        result = await evaluate_payment(self.ledger, token, amount, optional=optional)

        if isinstance(result, Rejected):
            balance = result.balance
        else:
            balance = result.decision.balance

        return (result, challenge_headers(amount, params, balance))


# Global paywall instance
_paywall: Optional[Paywall] = None
_paywall_lock = threading.Lock()


def create_paywall() -> Paywall:
    """Build a Paywall from settings."""
    transport = ConnectorTransport(
        connector_url=settings.ILP_CONNECTOR_URL,
        account=settings.ILP_ACCOUNT,
        timeout=settings.ILP_CONNECTOR_TIMEOUT
    )
    ledger = BalanceLedger(ttl_seconds=settings.ILP_BALANCE_TTL_SECONDS)
    return Paywall(
        transport=transport,
        ledger=ledger,
        credit_policy=CreditPolicy(settings.ILP_CREDIT_POLICY)
    )


def get_paywall() -> Paywall:
    """
    Get the global paywall instance.

    Returns:
        The singleton Paywall
    """
    global _paywall

    if _paywall is None:
        with _paywall_lock:
            if _paywall is None:
                _paywall = create_paywall()

    return _paywall


def reset_paywall() -> None:
    """Drop the global paywall (useful for testing)."""
    global _paywall
    with _paywall_lock:
        _paywall = None
