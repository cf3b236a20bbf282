"""
Payment transport contract and the HTTP connector implementation.

The paywall only relies on a small contract from its transport:
connect()/is_connected()/get_account(), a PSK listener registration that
delivers IncomingPayment objects, and an RPC entry point used by the
/__ilp_rpc passthrough.

ConnectorTransport speaks to an HTTP connector with `requests`. The
connector pushes prepared transfers through the RPC passthrough
(method=send_transfer); the transport checks that the transfer is locked
to a condition this receiver can fulfill, then hands it to the listener.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException
from starlette.concurrency import run_in_threadpool

from app.ilp.errors import (
    FulfillmentFailure,
    InvalidPayment,
    ProtocolViolation,
    TransportNotConnected,
)
from app.ilp.psk import (
    base64url,
    base64url_decode,
    condition_for,
    derive_shared_secret,
    fulfillment_for,
    get_receiver_id,
    parse_destination,
    PskParams,
)

logger = logging.getLogger(__name__)


@dataclass
class IncomingPayment:
    """A prepared transfer waiting to be fulfilled by the receiver."""
    amount: Decimal
    data: bytes
    fulfill: Callable[[], Awaitable[None]]
    transfer_id: Optional[str] = None
    destination: Optional[str] = None
    fulfillment: Optional[str] = None


# Listeners return False when the payment was not credited
PaymentListener = Callable[[IncomingPayment], Awaitable[Optional[bool]]]


def serialize_packet(destination: str, amount: Decimal, data: bytes) -> bytes:
    """Bytes the PSK fulfillment of a transfer is computed over."""
    return b"\n".join([destination.encode("utf-8"), str(amount).encode("ascii"), data])


def build_transfer(
    params: PskParams,
    amount: Any,
    data: bytes,
    transfer_id: str
) -> Dict[str, Any]:
    """
    Build the send_transfer payload a payer would submit for ``params``.

    Args:
        params: Challenge advertised by the receiver (Pay header)
        amount: Amount to send
        data: Correlation data (the raw payment token)
        transfer_id: Identifier used to fulfill or reject the transfer

    Returns:
        JSON-serializable transfer payload
    """
    amount = Decimal(str(amount))
    shared_secret = base64url_decode(params.shared_secret)
    packet = serialize_packet(params.destination_account, amount, data)
    fulfillment = fulfillment_for(shared_secret, packet)

    return {
        "id": transfer_id,
        "amount": str(amount),
        "ilp": {
            "account": params.destination_account,
            "data": base64url(data),
        },
        "executionCondition": base64url(condition_for(fulfillment)),
    }


class PaymentTransport(ABC):
    """Collaborator contract the paywall needs from a payment transport."""

    def __init__(self):
        self._receiver_secret: Optional[bytes] = None
        self._listener: Optional[PaymentListener] = None

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection (must be idempotent)."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has completed."""

    @abstractmethod
    def get_account(self) -> str:
        """ILP address of this receiver."""

    @abstractmethod
    async def handle_rpc(self, method: str, payload: Any, prefix: Optional[str] = None) -> Any:
        """Handle an inbound RPC call forwarded by the passthrough."""

    def listen(self, receiver_secret: bytes, listener: PaymentListener) -> None:
        """Register the PSK receiver: decode payments with ``receiver_secret``."""
        self._receiver_secret = receiver_secret
        self._listener = listener

    async def emit_payment(self, payment: IncomingPayment) -> bool:
        """
        Deliver an incoming payment to the registered listener.

        Returns:
            False if the listener did not credit the payment
        """
        if self._listener is None:
            raise InvalidPayment("No payment listener registered")
        return await self._listener(payment) is not False


class ConnectorTransport(PaymentTransport):
    """
    Transport backed by an HTTP connector.

    With no connector URL the transport runs standalone: it uses the
    configured account address and fulfillments are only returned in the
    RPC response to the sender.
    """

    def __init__(
        self,
        connector_url: Optional[str] = None,
        account: Optional[str] = None,
        timeout: int = 10
    ):
        super().__init__()
        self._connector_url = str(connector_url) if connector_url else None
        self._configured_account = account
        self._account: Optional[str] = None
        self._timeout = timeout
        self._received = Decimal("0")

    @property
    def connector_url(self) -> Optional[str]:
        return self._connector_url

    def _url(self, path: str) -> str:
        return urljoin(self._connector_url.rstrip("/") + "/", path)

    def _fetch_account(self) -> str:
        """
        Ask the connector which ILP address it assigned to us.

        Raises:
            RequestException: If the HTTP request fails
            ValueError: If the response does not contain an account
        """
        api_url = self._url("account")
        response = requests.get(api_url, timeout=self._timeout)
        response.raise_for_status()

        data = response.json()
        if not isinstance(data, dict) or not data.get("account"):
            raise ValueError(f"Connector response missing 'account': {data}")
        return data["account"]

    def _post_fulfillment(self, transfer_id: str, fulfillment: str) -> None:
        api_url = self._url("fulfill")
        response = requests.post(
            api_url,
            json={"id": transfer_id, "fulfillment": fulfillment},
            timeout=self._timeout
        )
        response.raise_for_status()

    def _post_rejection(self, transfer_id: str, reason: str) -> None:
        api_url = self._url("reject")
        response = requests.post(
            api_url,
            json={"id": transfer_id, "reason": reason},
            timeout=self._timeout
        )
        response.raise_for_status()

    async def connect(self) -> None:
        if self._account is not None:
            return

        if self._connector_url is None:
            if not self._configured_account:
                raise TransportNotConnected("No connector URL or account configured")
            self._account = self._configured_account
            logger.info(f"Transport running standalone as {self._account}")
            return

        try:
            self._account = await run_in_threadpool(self._fetch_account)
        except (RequestException, ValueError) as e:
            logger.error(f"Failed to connect to connector ({self._connector_url}): {e}")
            raise TransportNotConnected(f"Could not connect to connector: {e}") from e

        logger.info(f"Connected to connector {self._connector_url} as {self._account}")

    def is_connected(self) -> bool:
        return self._account is not None

    def get_account(self) -> str:
        if self._account is None:
            raise TransportNotConnected("Transport is not connected")
        return self._account

    async def handle_rpc(self, method: str, payload: Any, prefix: Optional[str] = None) -> Any:
        """
        Answer an RPC call from the connector.

        get_balance reports the total amount of transfers settled through
        this transport since start-up.
        """
        await self.connect()
        if prefix and not self.get_account().startswith(prefix):
            raise ValueError(f"RPC prefix {prefix} does not match account {self.get_account()}")

        if method == "send_transfer":
            return await self.handle_transfer(payload)

        if method == "get_info":
            return {"account": self.get_account(), "connected": self.is_connected()}

        if method == "get_balance":
            return {"account": self.get_account(), "balance": str(self._received)}

        raise ValueError(f"Unknown RPC method: {method}")

    def _verify_transfer(self, transfer: Any) -> IncomingPayment:
        """
        Check a prepared transfer and turn it into an IncomingPayment.

        Raises:
            InvalidPayment: If the transfer is malformed, not addressed to
                this receiver, or locked to a condition we cannot fulfill
        """
        if self._receiver_secret is None:
            raise InvalidPayment("No PSK receiver registered")

        try:
            transfer_id = str(transfer["id"])
            amount = Decimal(str(transfer["amount"]))
            destination = transfer["ilp"]["account"]
            data = base64url_decode(transfer["ilp"]["data"])
            condition = base64url_decode(transfer["executionCondition"])
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise InvalidPayment(f"Malformed transfer: {e}") from e

        if not amount.is_finite() or amount <= 0:
            raise InvalidPayment(f"Invalid transfer amount: {transfer['amount']}")

        try:
            receiver_id, nonce = parse_destination(destination, self.get_account())
        except ValueError as e:
            raise InvalidPayment(str(e)) from e

        if receiver_id != get_receiver_id(self._receiver_secret):
            raise InvalidPayment(f"Transfer not addressed to this receiver: {destination}")

        shared_secret = derive_shared_secret(self._receiver_secret, nonce)
        fulfillment = fulfillment_for(
            shared_secret,
            serialize_packet(destination, amount, data)
        )
        if condition_for(fulfillment) != condition:
            raise InvalidPayment("Execution condition does not match PSK fulfillment")

        encoded = base64url(fulfillment)

        async def fulfill() -> None:
            if self._connector_url is None:
                return
            try:
                await run_in_threadpool(self._post_fulfillment, transfer_id, encoded)
            except RequestException as e:
                raise FulfillmentFailure(f"Connector refused fulfillment of {transfer_id}: {e}") from e

        payment = IncomingPayment(
            amount=amount,
            data=data,
            fulfill=fulfill,
            transfer_id=transfer_id,
            destination=destination,
            fulfillment=encoded,
        )
        return payment

    async def handle_transfer(self, transfer: Any) -> Dict[str, Any]:
        """
        Process a prepared transfer pushed by the connector.

        Returns:
            Dict with the transfer id and the fulfillment

        Raises:
            InvalidPayment: If the transfer was rejected
        """
        await self.connect()
        payment = self._verify_transfer(transfer)

        try:
            credited = await self.emit_payment(payment)
        except ProtocolViolation as e:
            logger.warning(f"Rejecting transfer {payment.transfer_id}: {e}")
            await self._reject(payment.transfer_id, str(e))
            raise InvalidPayment(str(e)) from e

        if not credited:
            reason = f"Transfer {payment.transfer_id} could not be settled"
            logger.warning(f"Rejecting transfer {payment.transfer_id}: payment was not credited")
            await self._reject(payment.transfer_id, reason)
            raise InvalidPayment(reason)

        self._received += payment.amount
        return {"id": payment.transfer_id, "fulfillment": payment.fulfillment}

    async def _reject(self, transfer_id: str, reason: str) -> None:
        if self._connector_url is None:
            return
        try:
            await run_in_threadpool(self._post_rejection, transfer_id, reason)
        except RequestException as e:
            logger.error(f"Failed to reject transfer {transfer_id}: {e}")
