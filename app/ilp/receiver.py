"""
PSK payment receiver.

Registered on the transport as the incoming-payment listener. Each
prepared payment carries 16 bytes of correlation data: the raw payment
token. The receiver canonicalizes it (url-safe base64, no padding),
fulfills the transfer and credits the ledger.

Credit ordering is set by ILP_CREDIT_POLICY:
- after_fulfill: credit only once fulfillment succeeded. A failed
  fulfillment credits nothing.
- before_fulfill: credit first, then fulfill. A failed fulfillment is
  logged and the credit stays in place.
"""
import logging
from enum import Enum

from app.ilp import audit
from app.ilp.errors import InvalidTokenLength
from app.ilp.ledger import BalanceLedger
from app.ilp.psk import base64url
from app.ilp.transport import IncomingPayment

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16


class CreditPolicy(Enum):
    AFTER_FULFILL = "after_fulfill"
    BEFORE_FULFILL = "before_fulfill"


def token_from_data(data: bytes) -> str:
    """
    Canonical payment token for the correlation data of a payment.

    Raises:
        InvalidTokenLength: If the data is not exactly 16 bytes
    """
    if len(data) != TOKEN_BYTES:
        raise InvalidTokenLength(len(data))
    return base64url(data)


class PaymentReceiver:
    """Credits the ledger for incoming PSK payments."""

    def __init__(
        self,
        ledger: BalanceLedger,
        credit_policy: CreditPolicy = CreditPolicy.AFTER_FULFILL
    ):
        self.ledger = ledger
        self.credit_policy = credit_policy

    async def __call__(self, payment: IncomingPayment) -> bool:
        return await self.handle_payment(payment)

    async def handle_payment(self, payment: IncomingPayment) -> bool:
        """
        Process one incoming payment.

        Returns:
            True if the ledger was credited

        Raises:
            InvalidTokenLength: Correlation data is malformed; the payment is
                neither credited nor fulfilled
        """
        try:
            token = token_from_data(payment.data)
        except InvalidTokenLength as e:
            logger.warning(f"Dropping payment {payment.transfer_id}: {e}")
            audit.log_payment_rejected(
                transfer_id=payment.transfer_id,
                amount=str(payment.amount),
                reason=str(e),
            )
            raise

        audit.log_payment_received(
            token=token,
            transfer_id=payment.transfer_id,
            amount=str(payment.amount),
        )

        if self.credit_policy is CreditPolicy.BEFORE_FULFILL:
            balance = await self.ledger.credit(token, payment.amount)
            logger.info(f"Received payment for token {token} for {payment.amount}, new balance {balance}")
            audit.log_balance_credited(token=token, amount=str(payment.amount), balance=str(balance))
            await self._fulfill(payment, token)
            return True

        if not await self._fulfill(payment, token):
            return False

        balance = await self.ledger.credit(token, payment.amount)
        logger.info(f"Received payment for token {token} for {payment.amount}, new balance {balance}")
        audit.log_balance_credited(token=token, amount=str(payment.amount), balance=str(balance))
        return True

    async def _fulfill(self, payment: IncomingPayment, token: str) -> bool:
        try:
            await payment.fulfill()
        except Exception as e:
            logger.error(f"Error fulfilling incoming payment {payment.transfer_id} for token {token}: {e}")
            audit.log_fulfillment_failed(
                token=token,
                transfer_id=payment.transfer_id,
                amount=str(payment.amount),
                reason=str(e),
                credited=self.credit_policy is CreditPolicy.BEFORE_FULFILL,
            )
            return False

        audit.log_payment_fulfilled(
            token=token,
            transfer_id=payment.transfer_id,
            amount=str(payment.amount),
        )
        return True
