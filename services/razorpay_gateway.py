"""
Razorpay service implementation for registration payments
Order creation, payment lookup and signature verification
"""

import hmac
import hashlib
import logging
import httpx
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from app_config import RazorpayConfig

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED_EVENT = 'payment.captured'
CORRELATION_NOTE_KEY = 'registration_correlation_id'


class GatewayError(Exception):
    """Remote payment gateway call failed"""
    pass


@dataclass
class OrderRef:
    id: str
    amount: int
    currency: str
    receipt: str

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'amount': self.amount, 'currency': self.currency, 'receipt': self.receipt}


@dataclass
class CapturedPayment:
    """A captured payment as reported by the gateway, with explicit optionality"""
    payment_id: str
    amount: int
    order_id: Optional[str] = None
    currency: Optional[str] = None
    method: Optional[str] = None
    status: Optional[str] = None
    description: str = ''
    captured_at: Optional[datetime] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: Dict[str, Any]) -> Optional['CapturedPayment']:
        """
        Parse a gateway payment entity.

        Returns None when the entity lacks an id or an integer amount.
        """
        if not isinstance(entity, dict):
            return None

        payment_id = entity.get('id')
        amount = entity.get('amount')
        if not isinstance(payment_id, str) or not payment_id:
            return None
        if isinstance(amount, bool) or not isinstance(amount, int):
            return None

        notes = entity.get('notes')
        correlation_id = None
        if isinstance(notes, dict):
            correlation_id = notes.get(CORRELATION_NOTE_KEY) or None

        captured_at = None
        raw_captured = entity.get('captured_at') or entity.get('created_at')
        if isinstance(raw_captured, (int, float)) and not isinstance(raw_captured, bool):
            captured_at = datetime.fromtimestamp(raw_captured, tz=timezone.utc)

        return cls(
            payment_id=payment_id,
            amount=amount,
            order_id=entity.get('order_id') if isinstance(entity.get('order_id'), str) else None,
            currency=entity.get('currency') if isinstance(entity.get('currency'), str) else None,
            method=entity.get('method') if isinstance(entity.get('method'), str) else None,
            status=entity.get('status') if isinstance(entity.get('status'), str) else None,
            description=entity.get('description') if isinstance(entity.get('description'), str) else '',
            captured_at=captured_at,
            correlation_id=str(correlation_id) if correlation_id is not None else None
        )


def parse_payment_captured_event(body: Any) -> Optional[CapturedPayment]:
    """
    Extract the captured payment from a webhook body.

    Anything that is not a well-formed payment.captured event yields None so the
    caller can acknowledge it as a no-op.
    """
    if not isinstance(body, dict) or body.get('event') != PAYMENT_CAPTURED_EVENT:
        return None

    payload = body.get('payload')
    payment = payload.get('payment') if isinstance(payload, dict) else None
    entity = payment.get('entity') if isinstance(payment, dict) else None
    return CapturedPayment.from_entity(entity)


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


class RazorpayService:
    """Razorpay orders API client and signature verifier"""

    def __init__(self, config: RazorpayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

        if config.is_configured():
            logger.info("🔧 Razorpay service initialized with API credentials")
        else:
            logger.info("🔧 Razorpay service initialized (missing credentials)")

    def is_available(self) -> bool:
        """Check if Razorpay credentials are configured"""
        return self.config.is_configured()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            auth=(self.config.key_id or '', self.config.key_secret or ''),
            timeout=self.config.timeout,
            transport=self._transport
        )

    async def create_order(self, amount: int, currency: str, correlation_id: str, receipt: str,
                           notes: Optional[Dict[str, Any]] = None) -> OrderRef:
        """
        Create a remote order for the given amount

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            correlation_id: Registration correlation id embedded in the order notes
            receipt: Merchant receipt reference
            notes: Extra order notes

        Returns:
            OrderRef: The created order

        Raises:
            GatewayError: On transport errors, timeouts or non-2xx responses
        """
        if not self.is_available():
            raise GatewayError("Razorpay credentials are not configured")

        order_notes = dict(notes or {})
        order_notes[CORRELATION_NOTE_KEY] = correlation_id
        data = {
            'amount': int(amount),
            'currency': currency,
            'receipt': receipt,
            'notes': order_notes
        }

        try:
            async with self._client() as client:
                response = await client.post('/orders', json=data)
        except httpx.HTTPError as e:
            logger.error(f"❌ RAZORPAY: Order creation transport error for {receipt}: {e}")
            raise GatewayError(f"Order creation failed: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"❌ RAZORPAY: Order creation failed: {response.status_code} - {response.text}")
            raise GatewayError(f"Order creation failed with HTTP {response.status_code}")

        result = response.json()
        if not result.get('id'):
            logger.error(f"❌ RAZORPAY: Order response missing id: {result}")
            raise GatewayError("Order creation response missing order id")

        order = OrderRef(
            id=result['id'],
            amount=int(result.get('amount', amount)),
            currency=result.get('currency', currency),
            receipt=result.get('receipt', receipt)
        )
        logger.info(f"✅ RAZORPAY: Order {order.id} created for {order.amount} {order.currency} ({receipt})")
        return order

    async def fetch_payment(self, payment_id: str) -> CapturedPayment:
        """
        Fetch a payment entity by id

        Raises:
            GatewayError: On transport errors, non-2xx responses or malformed entities
        """
        if not self.is_available():
            raise GatewayError("Razorpay credentials are not configured")

        try:
            async with self._client() as client:
                response = await client.get(f'/payments/{payment_id}')
        except httpx.HTTPError as e:
            logger.error(f"❌ RAZORPAY: Payment lookup transport error for {payment_id}: {e}")
            raise GatewayError(f"Payment lookup failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ RAZORPAY: Payment lookup failed: {response.status_code} - {response.text}")
            raise GatewayError(f"Payment lookup failed with HTTP {response.status_code}")

        payment = CapturedPayment.from_entity(response.json())
        if payment is None:
            raise GatewayError(f"Malformed payment entity for {payment_id}")
        return payment

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Verify the checkout signature HMAC-SHA256(order_id|payment_id)"""
        if not self.config.key_secret:
            logger.error("🛡️ RAZORPAY: Cannot verify payment signature - key secret not configured")
            return False
        if not order_id or not payment_id or not signature:
            return False

        expected = _hmac_sha256(self.config.key_secret, f"{order_id}|{payment_id}".encode('utf-8'))
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning(f"🛡️ RAZORPAY: Payment signature mismatch for order {order_id} ({signature[:8]}...)")
        return is_valid

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """Verify the webhook signature HMAC-SHA256 over the raw request body"""
        if not self.config.webhook_secret:
            logger.error("🛡️ RAZORPAY: Webhook secret not configured - rejecting webhook")
            return False
        if not signature_header:
            logger.warning("🛡️ RAZORPAY: Missing webhook signature header")
            return False

        expected = _hmac_sha256(self.config.webhook_secret, raw_body or b'')
        is_valid = hmac.compare_digest(expected, signature_header.strip())
        if not is_valid:
            logger.warning(f"🛡️ RAZORPAY: Webhook signature mismatch ({signature_header[:8]}...)")
        return is_valid
