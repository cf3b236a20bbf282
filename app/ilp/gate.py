"""
Request gate decisions.

``evaluate_payment`` is the single decision point for paid routes. It
debits the ledger and returns one of three results:

- Paid: the price was debited, request proceeds
- Unpaid: optional payment not covered, request proceeds unpaid
- Rejected: required payment missing or not covered

Nothing here raises for a rejected request and nothing here knows about
HTTP status codes; the middleware translates results into responses.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Union

from app.ilp.errors import InsufficientFunds, MissingToken, PaymentRequired
from app.ilp.ledger import BalanceLedger, ZERO
from app.ilp.psk import PskParams

logger = logging.getLogger(__name__)

PAY_HEADER = "Pay"
PAY_BALANCE_HEADER = "Pay-Balance"
PAY_TOKEN_HEADER = "Pay-Token"


class GateMode(Enum):
    """How a route uses the paywall."""
    ANNOUNCE = "announce"
    ENFORCE = "enforce"


class RejectReason(Enum):
    MISSING_TOKEN = "missing_token"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass(frozen=True)
class GateDecision:
    """Payment outcome attached to ``request.state.payment``."""
    token: Optional[str]
    balance: Decimal
    paid: bool
    price: Decimal

    def to_dict(self) -> Dict[str, object]:
        return {
            "token": self.token,
            "balance": format_amount(self.balance),
            "paid": self.paid,
            "price": format_amount(self.price),
        }


@dataclass(frozen=True)
class Paid:
    decision: GateDecision


@dataclass(frozen=True)
class Unpaid:
    decision: GateDecision


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    error: PaymentRequired

    @property
    def balance(self) -> Decimal:
        return self.error.balance


GateResult = Union[Paid, Unpaid, Rejected]


def format_amount(amount: Decimal) -> str:
    """Plain decimal string (never scientific notation)."""
    return format(amount, "f")


def format_pay_header(price: Decimal, params: PskParams) -> str:
    """Value of the Pay header: "<price> <destination> <shared secret>"."""
    return f"{format_amount(price)} {params.destination_account} {params.shared_secret}"


def challenge_headers(
    price: Decimal,
    params: PskParams,
    balance: Optional[Decimal] = None
) -> Dict[str, str]:
    """Headers advertising a payment challenge and, optionally, a balance."""
    headers = {PAY_HEADER: format_pay_header(price, params)}
    if balance is not None:
        headers[PAY_BALANCE_HEADER] = format_amount(balance)
    return headers


def bypass_decision(token: Optional[str]) -> GateDecision:
    """Decision for zero-priced requests; the ledger is never consulted."""
    return GateDecision(token=token, balance=ZERO, paid=False, price=ZERO)


async def evaluate_payment(
    ledger: BalanceLedger,
    token: Optional[str],
    price: Decimal,
    optional: bool = False
) -> GateResult:
    """
    Decide whether a request may proceed and debit the ledger if so.

    Args:
        ledger: Shared balance ledger
        token: Value of the Pay-Token header (None/empty if absent)
        price: Resolved price for this request; must be positive
        optional: Let requests through unpaid instead of rejecting them

    Returns:
        Paid, Unpaid or Rejected
    """
    if not token:
        if optional:
            return Unpaid(GateDecision(token=None, balance=ZERO, paid=False, price=price))
        return Rejected(RejectReason.MISSING_TOKEN, MissingToken(price))

    balance, ok = await ledger.debit(token, price)

    if ok:
        logger.info(f"Token {token} paid {price}, remaining balance {balance}")
        return Paid(GateDecision(token=token, balance=balance, paid=True, price=price))

    if optional:
        logger.info(f"Token {token} cannot cover {price} (has {balance}), continuing unpaid")
        return Unpaid(GateDecision(token=token, balance=balance, paid=False, price=price))

    logger.info(f"Token {token} cannot cover {price} (has {balance}), payment required")
    return Rejected(
        RejectReason.INSUFFICIENT_FUNDS,
        InsufficientFunds(token=token, price=price, balance=balance)
    )
