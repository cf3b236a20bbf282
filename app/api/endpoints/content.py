from typing import Dict, List

from fastapi import APIRouter, HTTPException, Request, Response
import logging

from app.api.models.payment import AnnotationResponse, ContentResponse, PaymentDecisionModel

logger = logging.getLogger(__name__)

router = APIRouter()

PREVIEW_LENGTH = 40

# Reader annotations per document, kept in memory
ANNOTATIONS: Dict[str, List[str]] = {}

# Sample documents served behind the paywall
CATALOG = {
    "interledger": (
        "Interledger is a protocol for sending payments across different "
        "ledgers. Connectors forward packets between ledgers and the receiver "
        "fulfills the condition to claim the money."
    ),
    "psk": (
        "With pre-shared key payments the receiver derives a destination "
        "address and a shared secret from one root secret, so it never has to "
        "store the challenges it hands out."
    ),
}


def _get_document(name: str) -> str:
    document = CATALOG.get(name)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Content '{name}' not found")
    return document


def _payment_model(request: Request):
    decision = getattr(request.state, "payment", None)
    if decision is None:
        return None
    return PaymentDecisionModel(**decision.to_dict())


@router.options("/{name}", status_code=204)
async def announce_content(name: str) -> Response:
    """
    Price discovery for a document.

    The Pay and Pay-Balance headers are added by the paywall middleware.
    """
    _get_document(name)
    return Response(status_code=204)


@router.get("/{name}", response_model=ContentResponse)
async def get_content(name: str, request: Request) -> ContentResponse:
    """
    Get a full document. Requires payment.

    Raises:
        HTTPException: 404 if the document does not exist
    """
    document = _get_document(name)
    logger.info(f"Serving paid content '{name}'")
    return ContentResponse(name=name, content=document, payment=_payment_model(request))


@router.get("/{name}/preview", response_model=ContentResponse)
async def get_content_preview(name: str, request: Request) -> ContentResponse:
    """
    Get a document preview, or the full document if the token paid.

    Payment is optional on this route.
    """
    document = _get_document(name)
    payment = _payment_model(request)

    if payment is None or not payment.paid:
        document = document[:PREVIEW_LENGTH]

    return ContentResponse(name=name, content=document, payment=payment)


@router.post("/{name}/annotations", response_model=AnnotationResponse)
async def add_annotation(name: str, request: Request) -> AnnotationResponse:
    """
    Attach a plain-text annotation to a document.

    Priced per byte of the request body by the paywall.
    """
    _get_document(name)
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Annotation must not be empty")

    notes = ANNOTATIONS.setdefault(name, [])
    notes.append(body.decode("utf-8", errors="replace"))
    logger.info(f"Stored annotation of {len(body)} bytes for '{name}'")

    return AnnotationResponse(
        name=name,
        size_bytes=len(body),
        annotations=len(notes),
        payment=_payment_model(request)
    )
