import os
from decimal import Decimal
from typing import Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "ILP Paywall Gateway"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Payment gating
    ILP_ENABLED: bool = True
    ILP_CONNECTOR_URL: Optional[AnyHttpUrl] = None  # HTTP connector backing the transport
    ILP_ACCOUNT: Optional[str] = "test.paywall"  # Used when no connector is configured
    ILP_CONNECTOR_TIMEOUT: int = 10
    ILP_DEFAULT_PRICE: Decimal = Decimal("10")
    ILP_PRICE_PER_BYTE: Decimal = Decimal("0.01")  # Annotation uploads, minimum 1

    # "after_fulfill" credits only once the connector accepted the fulfillment
    ILP_CREDIT_POLICY: Literal["after_fulfill", "before_fulfill"] = "after_fulfill"
    ILP_BALANCE_TTL_SECONDS: Optional[int] = None  # None keeps balances for the process lifetime

    # Bearer token for the /__ilp_rpc passthrough; passthrough is off when unset
    ILP_RPC_TOKEN: Optional[str] = None

    # Audit trail
    ILP_AUDIT_ENABLED: bool = True
    ILP_AUDIT_LOG_PATH: str = os.path.join("logs", "ilp_audit.jsonl")

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
