"""
Price resolution for paid routes.

A route price is either fixed or computed from the request. Computed
prices may be plain functions or coroutines; either way the price is
resolved exactly once per request.
"""
import inspect
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Union

from fastapi import Request

from app.ilp.ledger import Amount, to_amount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixedPrice:
    """The same price for every request."""
    amount: Decimal

    async def resolve(self, request: Request) -> Decimal:
        return self.amount


@dataclass(frozen=True)
class ComputedPrice:
    """Price computed from the request by a sync or async callable."""
    func: Callable[[Request], Any]

    async def resolve(self, request: Request) -> Decimal:
        value = self.func(request)
        if inspect.isawaitable(value):
            value = await value
        price = to_amount(value)
        if price < 0:
            raise ValueError(f"Price must not be negative, got {price}")
        return price


PriceResolver = Union[FixedPrice, ComputedPrice]


def as_price_resolver(price: Union[PriceResolver, Amount, Callable[[Request], Any]]) -> PriceResolver:
    """
    Wrap a route price into a resolver.

    Args:
        price: A resolver, a fixed amount (int/str/Decimal) or a callable
            taking the request

    Returns:
        FixedPrice or ComputedPrice
    """
    if isinstance(price, (FixedPrice, ComputedPrice)):
        return price
    if callable(price):
        return ComputedPrice(func=price)

    amount = to_amount(price)
    if amount < 0:
        raise ValueError(f"Price must not be negative, got {amount}")
    return FixedPrice(amount=amount)


def price_by_content_length(per_byte: Amount, minimum: Amount = 0) -> ComputedPrice:
    """
    Price proportional to the request's Content-Length header.

    Missing or non-numeric Content-Length counts as zero bytes.
    """
    rate = to_amount(per_byte)
    floor = to_amount(minimum)

    def _price(request: Request) -> Decimal:
        content_length = request.headers.get("Content-Length", "0")
        size_bytes = int(content_length) if content_length.isdigit() else 0
        return max(rate * size_bytes, floor)

    return ComputedPrice(func=_price)
