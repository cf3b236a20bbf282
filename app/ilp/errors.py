"""
Error taxonomy for the ILP paywall.

Gate evaluation never raises for a rejected request; it returns a
``Rejected`` result and the middleware turns that into a 402. The
exceptions here cover the transport and receiver side, plus the
``PaymentRequired`` family used to describe rejections.
"""
from decimal import Decimal
from typing import Optional


class IlpError(Exception):
    """Base class for all paywall errors."""


class ProtocolViolation(IlpError):
    """An incoming payment does not follow the PSK conventions."""


class InvalidTokenLength(ProtocolViolation):
    """Correlation data of an incoming payment is not exactly 16 bytes."""

    def __init__(self, length: int):
        self.length = length
        super().__init__(f"Invalid token length: expected 16 bytes, got {length}")


class InvalidPayment(IlpError):
    """A transfer cannot be accepted (wrong receiver, bad condition, ...)."""


class PaymentRequired(IlpError):
    """A request cannot be served until the token is topped up."""

    def __init__(
        self,
        message: str,
        token: Optional[str] = None,
        price: Decimal = Decimal(0),
        balance: Decimal = Decimal(0),
    ):
        super().__init__(message)
        self.message = message
        self.token = token
        self.price = price
        self.balance = balance


class MissingToken(PaymentRequired):
    """No Pay-Token header was supplied on a paid route."""

    def __init__(self, price: Decimal):
        super().__init__("No valid payment token provided", price=price)


class InsufficientFunds(PaymentRequired):
    """The token balance does not cover the price."""

    def __init__(self, token: str, price: Decimal, balance: Decimal):
        if balance <= 0:
            message = (
                f"Your Payment Token {token} has no funds available. "
                f"It needs at least {price}"
            )
        else:
            message = (
                f"Your Payment Token {token} does not have sufficient funds available "
                f"(has: {balance}. It needs at least: {price})"
            )
        super().__init__(message, token=token, price=price, balance=balance)


class FulfillmentFailure(IlpError):
    """The transport could not fulfill (accept) a prepared payment."""


class TransportNotConnected(IlpError):
    """The payment transport is not connected and reconnecting failed."""
