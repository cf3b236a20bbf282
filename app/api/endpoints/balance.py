from fastapi import APIRouter, Depends, Header, HTTPException
from typing import Optional
import logging

from app.api.models.payment import BalanceResponse
from app.ilp.gate import format_amount
from app.ilp.paywall import Paywall, get_paywall

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    pay_token: Optional[str] = Header(default=None, alias="Pay-Token"),
    paywall: Paywall = Depends(get_paywall)
) -> BalanceResponse:
    """
    Get the current balance of a payment token.

    Raises:
        HTTPException: 400 if no Pay-Token header was sent
    """
    if not pay_token or not pay_token.strip():
        raise HTTPException(status_code=400, detail="Pay-Token header is required")

    token = pay_token.strip()
    balance = paywall.ledger.peek(token)
    logger.debug(f"Balance lookup for token {token}: {balance}")
    return BalanceResponse(token=token, balance=format_amount(balance))
