import asyncio
import contextlib
import logging

from fastapi import FastAPI

from app.core.config import settings
from app.api.endpoints import balance, content
from app.ilp import __version__, rpc
from app.ilp.gate import GateMode
from app.ilp.middleware import PaywallMiddleware, PricedRoute
from app.ilp.paywall import get_paywall
from app.ilp.pricing import price_by_content_length

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

CONTENT_PATH = f"{settings.API_V1_STR}/content"

# Routes gated by the paywall
PRICED_ROUTES = [
    PricedRoute("OPTIONS", f"{CONTENT_PATH}/{{name}}", settings.ILP_DEFAULT_PRICE, mode=GateMode.ANNOUNCE),
    PricedRoute("GET", f"{CONTENT_PATH}/{{name}}/preview", settings.ILP_DEFAULT_PRICE, optional=True),
    PricedRoute("GET", f"{CONTENT_PATH}/{{name}}", settings.ILP_DEFAULT_PRICE),
    PricedRoute(
        "POST",
        f"{CONTENT_PATH}/{{name}}/annotations",
        price_by_content_length(settings.ILP_PRICE_PER_BYTE, minimum=1)
    ),
]


async def purge_expired_balances(interval: int) -> None:
    """Drop expired ledger entries every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        get_paywall().ledger.purge_expired()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if settings.ILP_BALANCE_TTL_SECONDS:
        task = asyncio.create_task(purge_expired_balances(settings.ILP_BALANCE_TTL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json", # Standard location for OpenAPI spec
    lifespan=lifespan
)

app.add_middleware(PaywallMiddleware, routes=PRICED_ROUTES)

# The prefix ensures all routes start with /api/v1
app.include_router(content.router, prefix=CONTENT_PATH, tags=["content"])
app.include_router(balance.router, prefix=settings.API_V1_STR, tags=["payments"])
app.include_router(rpc.router, tags=["rpc"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
