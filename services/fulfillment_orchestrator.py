"""
Fulfillment Orchestrator - single source of truth for turning a captured payment
into a fulfilled registration

Architecture:
- State machine: DRAFT_PENDING → PAYMENT_VERIFIED → PUBLISHED, terminal REJECTED
- Webhook and client-side verification converge on one transition routine
- Idempotency guard: per-registration lock plus a conditional UPDATE keyed on
  payment_status = 'pending', so duplicate deliveries never pass twice
- Downstream steps (account provisioning, add-on credits, notifications) run
  after the payment is committed and can never roll it back
"""

import json
import logging
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from admin_alerts import send_critical_alert, send_error_alert, send_warning_alert
from app_config import FulfillmentConfig
from payment_validation import SignatureError, ValidationError, AmountMismatchError, validate_order_amount
from pricing_utils import price_registration
from services.addon_tiers import get_addon_tier, get_addon_credits
from services.cosmic_kids import ProvisioningError, EXISTING_ACCOUNT_PASSWORD_NOTE
from services.razorpay_gateway import CapturedPayment, parse_payment_captured_event
from services.registration_store import (
    Registration, PAYMENT_COMPLETED, PAYMENT_FAILED,
    ADDON_CREDIT_GRANTED, ADDON_CREDIT_FAILED, ADDON_CREDIT_SKIPPED, ADDON_CREDIT_NOT_APPLICABLE
)

logger = logging.getLogger(__name__)


class FulfillmentState(Enum):
    DRAFT_PENDING = "draft_pending"
    PAYMENT_VERIFIED = "payment_verified"
    PUBLISHED = "published"
    REJECTED = "rejected"


def registration_state(registration: Registration) -> FulfillmentState:
    """Derive the fulfillment state from a stored registration"""
    if registration.payment_status == PAYMENT_FAILED:
        return FulfillmentState.REJECTED
    if registration.payment_status == PAYMENT_COMPLETED:
        return FulfillmentState.PUBLISHED if registration.published else FulfillmentState.PAYMENT_VERIFIED
    return FulfillmentState.DRAFT_PENDING


class KeyedLock:
    """Table of asyncio locks keyed by registration id, released when unused"""

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._waiters: Dict[Any, int] = {}

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class FulfillmentOrchestrator:
    """Drives a verified payment through publication, provisioning and notification"""

    def __init__(self, store, gateway, accounts, notification_queue, config: FulfillmentConfig):
        self.store = store
        self.gateway = gateway
        self.accounts = accounts
        self.notification_queue = notification_queue
        self.config = config
        self._locks = KeyedLock()

    def expected_amount(self, registration: Registration) -> int:
        """Re-derive the order amount from the stored registration inputs"""
        amount, _ = price_registration(
            registration.email,
            registration.registration_fee,
            registration.selected_addon,
            registration.is_overseas,
            self.config
        )
        return amount

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_payment_captured(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process a payment webhook delivery

        Raises SignatureError when authentication fails. Every authenticated
        delivery returns a result dict, including ignored and rejected events.
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.error("🛡️ ORCHESTRATOR: Webhook authentication failed, no registration touched")
            await send_warning_alert(
                "FulfillmentOrchestrator", "Webhook signature verification failed", "security"
            )
            raise SignatureError("Invalid webhook signature")

        try:
            body = json.loads(raw_body or b'{}')
        except (ValueError, UnicodeDecodeError):
            logger.warning("⚠️ ORCHESTRATOR: Authenticated webhook with unparseable body ignored")
            return {'status': 'ignored', 'reason': 'invalid_body'}

        payment = parse_payment_captured_event(body)
        if payment is None:
            event = body.get('event') if isinstance(body, dict) else None
            logger.info(f"ℹ️ ORCHESTRATOR: Ignoring webhook event {event!r}")
            return {'status': 'ignored', 'reason': 'unsupported_event'}

        tag = self.config.payment_description_tag
        if tag and tag not in payment.description:
            logger.info(f"ℹ️ ORCHESTRATOR: Payment {payment.payment_id} not tagged '{tag}', ignored")
            return {'status': 'ignored', 'reason': 'foreign_payment'}

        registration = await self._resolve_registration(payment)
        if registration is None:
            logger.info(f"ℹ️ ORCHESTRATOR: No registration for payment {payment.payment_id}, ignored")
            return {'status': 'ignored', 'reason': 'registration_not_found'}

        try:
            return await self._apply_captured_payment(registration.id, payment, source='webhook')
        except AmountMismatchError as e:
            return {'status': 'rejected', 'registration_id': registration.id, 'reason': str(e)}

    async def verify_client_payment(self, order_id: str, payment_id: str, signature: str) -> Dict[str, Any]:
        """
        Process the checkout callback sent by the client after payment

        Raises:
            ValidationError: Missing parameters or unknown order
            SignatureError: Checkout signature mismatch
            AmountMismatchError: Captured amount differs from the registration's amount
            GatewayError: The payment could not be fetched from the gateway
        """
        if not order_id or not payment_id or not signature:
            raise ValidationError("razorpay_order_id, razorpay_payment_id and razorpay_signature are required")

        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.error(f"🛡️ ORCHESTRATOR: Invalid checkout signature for order {order_id}")
            raise SignatureError("Invalid payment signature")

        registration = await self.store.find_by_gateway_order_id(order_id)
        if registration is None:
            raise ValidationError(f"No registration found for order {order_id}")

        if registration.payment_status == PAYMENT_COMPLETED:
            logger.info(f"🚫 ORCHESTRATOR: Registration {registration.id} already completed")
            return {'status': 'already_processed', 'registration_id': registration.id}

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.order_id and payment.order_id != order_id:
            raise ValidationError(f"Payment {payment_id} does not belong to order {order_id}")
        if payment.status != 'captured':
            raise ValidationError(f"Payment {payment_id} is not captured (status {payment.status})")

        return await self._apply_captured_payment(registration.id, payment, source='client')

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------

    async def _resolve_registration(self, payment: CapturedPayment) -> Optional[Registration]:
        if payment.correlation_id:
            registration = await self.store.find_by_correlation_id(payment.correlation_id)
            if registration is not None:
                return registration
        if payment.order_id:
            return await self.store.find_by_gateway_order_id(payment.order_id)
        return None

    async def _apply_captured_payment(self, registration_id: int, payment: CapturedPayment,
                                      source: str) -> Dict[str, Any]:
        """Verify the amount and commit the payment, then fulfill outside the lock"""
        async with self._locks.hold(registration_id):
            registration = await self.store.get(registration_id)
            if registration is None:
                return {'status': 'ignored', 'reason': 'registration_not_found'}

            state = registration_state(registration)
            if state in (FulfillmentState.PUBLISHED, FulfillmentState.PAYMENT_VERIFIED):
                logger.info(f"🚫 ORCHESTRATOR: Registration {registration_id} already completed, "
                            f"duplicate {source} delivery for payment {payment.payment_id}")
                return {'status': 'already_processed', 'registration_id': registration_id}
            if state == FulfillmentState.REJECTED:
                logger.info(f"🚫 ORCHESTRATOR: Registration {registration_id} was rejected earlier, ignoring")
                return {'status': 'already_rejected', 'registration_id': registration_id}

            expected = self.expected_amount(registration)
            try:
                validate_order_amount(expected, payment.amount, registration_id)
            except AmountMismatchError as e:
                logger.error(f"❌ ORCHESTRATOR: {e}")
                await self.store.mark_rejected(registration_id, str(e))
                await send_critical_alert(
                    "FulfillmentOrchestrator",
                    f"Amount mismatch on registration {registration_id}",
                    "payment_processing",
                    {'expected': expected, 'received': payment.amount, 'payment_id': payment.payment_id}
                )
                raise

            now = datetime.now(timezone.utc)
            completed = await self.store.complete_payment(
                registration_id,
                payment.payment_id,
                payment.method,
                payment.captured_at or now,
                now
            )
            if completed is None:
                logger.warning(f"🚫 ORCHESTRATOR: Registration {registration_id} left pending state concurrently")
                return {'status': 'already_processed', 'registration_id': registration_id}

        logger.info(f"✅ ORCHESTRATOR: Registration {registration_id} completed and published "
                    f"(payment {payment.payment_id} via {source})")

        fulfillment = await self.fulfill(completed, amount_paid=payment.amount / 100)
        return {'status': 'completed', 'registration_id': registration_id, **fulfillment}

    # ------------------------------------------------------------------
    # Post-payment fulfillment (shared with bulk import)
    # ------------------------------------------------------------------

    async def provision_account(self, registration: Registration):
        """Returns (external_id, password_message); failures are logged, never raised"""
        try:
            result = await self.accounts.ensure_account(registration.email)
            return result.external_id, result.password_message
        except ProvisioningError as e:
            logger.error(f"❌ ORCHESTRATOR: Account provisioning failed for registration {registration.id}: {e}")
            await send_error_alert(
                "FulfillmentOrchestrator",
                f"Account provisioning failed for registration {registration.id}",
                "account_provisioning",
                {'email': registration.email, 'error': str(e)}
            )
            return None, EXISTING_ACCOUNT_PASSWORD_NOTE
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Unexpected provisioning error for registration {registration.id}: {e}",
                         exc_info=True)
            await send_error_alert(
                "FulfillmentOrchestrator",
                f"Unexpected account provisioning error for registration {registration.id}",
                "account_provisioning",
                {'email': registration.email, 'error': str(e)}
            )
            return None, EXISTING_ACCOUNT_PASSWORD_NOTE

    async def credit_addon(self, registration: Registration, external_id: Optional[str], amount_paid: float) -> str:
        """Grant the add-on credits; returns the addon_credit_status to record"""
        addon_id = registration.addon_id
        if not addon_id:
            return ADDON_CREDIT_NOT_APPLICABLE

        tier = get_addon_tier(addon_id)
        if tier is None:
            logger.warning(f"⚠️ ORCHESTRATOR: Unknown add-on tier '{addon_id}' on registration "
                           f"{registration.id}, crediting skipped")
            return ADDON_CREDIT_SKIPPED

        if not external_id:
            logger.error(f"❌ ORCHESTRATOR: No external account for registration {registration.id}, "
                         f"cannot credit add-on '{addon_id}'")
            return ADDON_CREDIT_FAILED

        try:
            await self.accounts.grant_credits(external_id, tier.addon_id, amount_paid, get_addon_credits(addon_id))
            return ADDON_CREDIT_GRANTED
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Add-on credit failed for registration {registration.id}: {e}")
            await send_error_alert(
                "FulfillmentOrchestrator",
                f"Add-on credit failed for registration {registration.id}",
                "account_provisioning",
                {'external_id': external_id, 'addon': addon_id, 'error': str(e)}
            )
            return ADDON_CREDIT_FAILED

    async def fulfill(self, registration: Registration, amount_paid: float) -> Dict[str, Any]:
        """
        Provision the account, credit the add-on and queue notifications for a
        completed registration. Never raises for downstream failures.
        """
        external_id, password_message = await self.provision_account(registration)
        credit_status = await self.credit_addon(registration, external_id, amount_paid)

        try:
            await self.store.record_fulfillment(registration.id, external_id, credit_status)
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Could not record fulfillment for registration {registration.id}: {e}")

        registration.external_account_id = external_id or registration.external_account_id
        registration.addon_credit_status = credit_status

        try:
            queued = self.notification_queue.enqueue(registration, password_message)
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Could not queue notifications for registration {registration.id}: {e}")
            queued = False

        return {
            'external_account_id': external_id,
            'addon_credit_status': credit_status,
            'notifications_queued': queued
        }
