"""
RPC passthrough to the payment transport.

The connector delivers prepared transfers (and other plugin calls) by
POSTing to /__ilp_rpc?method=<name>, optionally scoped to a ledger
prefix with &prefix=<prefix>. Calls are authenticated with a
static Bearer token (ILP_RPC_TOKEN), unrelated to payment tokens.
"""
import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query

from app.core.config import settings
from app.ilp.paywall import Paywall, get_paywall

logger = logging.getLogger(__name__)

RPC_PATH = "/__ilp_rpc"

router = APIRouter()


def verify_rpc_token(authorization: Optional[str] = Header(default=None)) -> None:
    """
    Check the Authorization header against ILP_RPC_TOKEN.

    Raises:
        HTTPException: 404 if the passthrough is disabled, 401 on a missing
            or wrong Bearer token
    """
    expected = settings.ILP_RPC_TOKEN
    if not expected:
        raise HTTPException(status_code=404, detail="Not Found")

    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        credentials.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Rejected RPC call with invalid bearer token")
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"}
        )


@router.post(RPC_PATH, dependencies=[Depends(verify_rpc_token)])
async def ilp_rpc(
    method: Optional[str] = Query(default=None),
    prefix: Optional[str] = Query(default=None),
    payload: Any = Body(default=None),
    paywall: Paywall = Depends(get_paywall)
) -> Any:
    """
    Forward an RPC call to the transport's inbound handler.

    Returns:
        Whatever the transport handler returns

    Raises:
        HTTPException: 400 if method is missing, 422 if the handler fails
    """
    if not method:
        raise HTTPException(status_code=400, detail="Missing method parameter")

    try:
        result = await paywall.transport.handle_rpc(method, payload, prefix=prefix)
    except Exception as e:
        logger.warning(f"RPC method {method} failed: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    logger.debug(f"RPC method {method} handled")
    return result
