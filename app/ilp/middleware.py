"""
FastAPI middleware for ILP pay-per-request gating.

This module provides HTTP middleware that:
1. Matches requests against the priced route table
2. Announce routes: adds Pay / Pay-Balance discovery headers
3. Enforce routes: debits the Pay-Token balance for the route price
4. Returns 402 Payment Required (with a fresh challenge) when needed
5. Attaches the GateDecision to request.state.payment

This is the only place where gate results become HTTP responses.
"""
import logging
import re
from dataclasses import dataclass, field
from decimal import InvalidOperation
from typing import Any, Callable, List, Optional, Pattern

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.ilp import audit
from app.ilp.errors import TransportNotConnected
from app.ilp.gate import (
    GateMode,
    Paid,
    Rejected,
    format_amount,
)
from app.ilp.paywall import Paywall, get_paywall
from app.ilp.pricing import PriceResolver, as_price_resolver

logger = logging.getLogger(__name__)

_PARAM_PATTERN = re.compile(r"\{[^/{}]+\}")


def compile_path(path: str) -> Pattern:
    """Turn a route path such as /content/{name} into an anchored regex."""
    parts = _PARAM_PATTERN.split(path.rstrip("/"))
    regex = "[^/]+".join(re.escape(part) for part in parts)
    return re.compile(f"^{regex}/?$")


@dataclass
class PricedRoute:
    """A route the paywall applies to."""
    method: str
    path: str
    price: Any
    mode: GateMode = GateMode.ENFORCE
    optional: bool = False
    resolver: PriceResolver = field(init=False)
    pattern: Pattern = field(init=False)

    def __post_init__(self):
        self.method = self.method.upper()
        self.resolver = as_price_resolver(self.price)
        self.pattern = compile_path(self.path)

    def matches(self, method: str, path: str) -> bool:
        return method.upper() == self.method and self.pattern.match(path) is not None


def find_route(routes: List[PricedRoute], method: str, path: str) -> Optional[PricedRoute]:
    """First route matching the request, if any."""
    for route in routes:
        if route.matches(method, path):
            return route
    return None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(rejected: Rejected, headers: dict) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    The headers carry a fresh challenge and the unchanged balance so the
    caller can pay and retry with the same token.
    """
    error = rejected.error
    return JSONResponse(
        status_code=402,
        content={
            "error": "Payment required",
            "detail": error.message,
            "reason": rejected.reason.value,
            "token": error.token,
            "price": format_amount(error.price),
            "balance": format_amount(error.balance),
        },
        headers=headers
    )


class PaywallMiddleware(BaseHTTPMiddleware):
    """
    ILP payment gating middleware for FastAPI.

    When ILP_ENABLED=true, requests matching a PricedRoute go through the
    paywall. When ILP_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(
        self,
        app,
        routes: Optional[List[PricedRoute]] = None,
        paywall: Optional[Paywall] = None
    ):
        super().__init__(app)
        self.routes = list(routes or [])
        self._paywall = paywall

    @property
    def paywall(self) -> Paywall:
        """Paywall given at construction, else the process-wide one."""
        if self._paywall is not None:
            return self._paywall
        return get_paywall()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.ILP_ENABLED:
            return await call_next(request)

        route = find_route(self.routes, request.method, request.url.path)
        if route is None:
            return await call_next(request)

        if route.mode is GateMode.ANNOUNCE:
            return await self._announce(request, call_next, route)
        return await self._enforce(request, call_next, route)

    async def _announce(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        route: PricedRoute
    ) -> Response:
        try:
            headers = await self.paywall.announce(request, route.resolver)
        except TransportNotConnected as e:
            return self._unavailable(request, "Payment transport unavailable", e)
        except (ValueError, InvalidOperation) as e:
            return self._unavailable(request, "Failed to calculate price", e)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    async def _enforce(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        route: PricedRoute
    ) -> Response:
        client_ip = get_client_ip(request)

        try:
            result, headers = await self.paywall.enforce(
                request, route.resolver, optional=route.optional
            )
        except TransportNotConnected as e:
            return self._unavailable(request, "Payment transport unavailable", e)
        except (ValueError, InvalidOperation) as e:
            return self._unavailable(request, "Failed to calculate price", e)

        if isinstance(result, Rejected):
            logger.info(
                f"ilp: Payment required for {request.method} {request.url.path} "
                f"from {client_ip}: {result.reason.value}"
            )
            audit.log_payment_required_sent(
                token=result.error.token,
                price=format_amount(result.error.price),
                balance=format_amount(result.error.balance),
                reason=result.reason.value,
                client_ip=client_ip,
                path=request.url.path
            )
            return create_402_response(result, headers)

        decision = result.decision
        if isinstance(result, Paid):
            audit.log_balance_debited(
                token=decision.token,
                amount=format_amount(decision.price),
                balance=format_amount(decision.balance),
                client_ip=client_ip,
                path=request.url.path
            )

        # Pass payment details to the endpoint
        request.state.payment = decision

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    def _unavailable(self, request: Request, message: str, error: Exception) -> JSONResponse:
        logger.error(f"ilp: {message} for {request.method} {request.url.path}: {error}")
        audit.log_error(
            error_type=type(error).__name__,
            error_message=str(error),
            context={"path": request.url.path, "method": request.method},
            client_ip=get_client_ip(request)
        )
        return JSONResponse(
            status_code=503,
            content={"error": "Service temporarily unavailable", "detail": str(error)}
        )
