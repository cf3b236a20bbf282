from typing import Optional

from pydantic import BaseModel


class PaymentDecisionModel(BaseModel):
    """
    Outcome of the paywall for the current request.
    """
    token: Optional[str] = None
    balance: str
    paid: bool
    price: str


class BalanceResponse(BaseModel):
    """
    Response model for the balance lookup endpoint.
    """
    token: str
    balance: str


class AnnotationResponse(BaseModel):
    """
    Response model for annotation uploads.
    """
    name: str
    size_bytes: int
    annotations: int
    payment: Optional[PaymentDecisionModel] = None


class ContentResponse(BaseModel):
    """
    Response model for paid content endpoints.
    """
    name: str
    content: str
    payment: Optional[PaymentDecisionModel] = None
