"""
Registration drafts - create a pending registration and its payment order
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from admin_alerts import send_error_alert
from app_config import FulfillmentConfig
from payment_validation import ValidationError, validate_required_fields, validate_email
from pricing_utils import price_registration, to_decimal
from services.razorpay_gateway import GatewayError
from services.registration_store import CONTACT_FIELDS, PAYMENT_COMPLETED, PAYMENT_PENDING

logger = logging.getLogger(__name__)

DRAFT_REQUIRED_FIELDS = ('name', 'email', 'phone', 'dob', 'school_name', 'grade', 'section', 'city')


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('true', '1', 'yes')


def parse_selected_addon(selected_addon: Any) -> Optional[Dict[str, Any]]:
    """
    Normalise the add-on selection sent by the registration form

    Accepts either {'price_inr', 'price_usd'} or the form's
    {'originalPriceInr', 'originalPrice'} keys.
    """
    if not selected_addon:
        return None
    if not isinstance(selected_addon, dict):
        raise ValidationError("selectedAddon must be an object")

    addon_id = selected_addon.get('id')
    if addon_id is None or str(addon_id).strip() == '':
        raise ValidationError("selectedAddon.id is required")

    price_inr = selected_addon.get('price_inr', selected_addon.get('originalPriceInr'))
    price_usd = selected_addon.get('price_usd', selected_addon.get('originalPrice'))
    try:
        return {
            'id': str(addon_id).strip(),
            'title': str(selected_addon.get('title') or addon_id).strip(),
            'price_inr': str(to_decimal(price_inr)),
            'price_usd': str(to_decimal(price_usd))
        }
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("selectedAddon prices must be numeric")


class RegistrationDraftService:
    """Creates draft registrations and gateway orders"""

    def __init__(self, store, gateway, config: FulfillmentConfig):
        self.store = store
        self.gateway = gateway
        self.config = config

    def _resolve_fee(self, registration_fee: Any, is_overseas: bool) -> Decimal:
        if registration_fee is None or registration_fee == '':
            return self.config.registration_fee_usd if is_overseas else self.config.registration_fee_inr
        try:
            fee = to_decimal(registration_fee)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("registrationFee must be numeric")
        if fee < 0:
            raise ValidationError("registrationFee cannot be negative")
        return fee

    async def save_draft_and_create_order(
        self,
        data: Optional[Dict[str, Any]],
        selected_addon: Any = None,
        registration_fee: Any = None
    ) -> Dict[str, Any]:
        """
        Create a pending draft for the registrant and open a payment order

        Returns:
            Dict: {'success': True, 'registration': ..., 'order': ...} or
                  {'success': False, 'message': ...} when the email already has
                  a completed registration

        Raises:
            ValidationError: Missing or malformed input (nothing written)
            GatewayError: Order creation failed (draft stays unpublished and pending)
        """
        if not data:
            raise ValidationError("Missing data in request body")
        validate_required_fields(data, DRAFT_REQUIRED_FIELDS)

        contact = {name: data.get(name) for name in CONTACT_FIELDS}
        for name, value in contact.items():
            if isinstance(value, str):
                contact[name] = value.strip()
        contact['email'] = validate_email(data.get('email'))
        contact['is_overseas'] = parse_bool(data.get('is_overseas'))

        addon = parse_selected_addon(selected_addon)
        fee = self._resolve_fee(registration_fee, contact['is_overseas'])
        amount, currency = price_registration(contact['email'], fee, addon, contact['is_overseas'], self.config)

        existing = await self.store.find_by_email(contact['email'])
        if any(registration.payment_status == PAYMENT_COMPLETED for registration in existing):
            logger.info(f"🚫 DRAFTS: Completed registration already exists for {contact['email']}")
            return {'success': False, 'message': 'Registration already exists'}

        for stale in existing:
            if stale.payment_status == PAYMENT_PENDING:
                await self.store.delete(stale.id)
                logger.info(f"🧹 DRAFTS: Stale pending draft {stale.id} deleted for {contact['email']}")

        registration = await self.store.create_draft(contact, addon, fee, amount, currency)

        try:
            order = await self.gateway.create_order(
                amount,
                currency,
                correlation_id=registration.correlation_id,
                receipt=f"registration_{registration.id}",
                notes={'registration_id': str(registration.id)}
            )
        except GatewayError as e:
            logger.error(f"❌ DRAFTS: Order creation failed for draft {registration.id}: {e}")
            await send_error_alert(
                "RegistrationDraftService",
                f"Order creation failed for draft {registration.id}",
                "payment_processing",
                {'email': contact['email'], 'amount': amount, 'currency': currency, 'error': str(e)}
            )
            raise

        await self.store.attach_gateway_order(registration.id, order.id)
        registration.gateway_order_id = order.id

        logger.info(f"✅ DRAFTS: Draft {registration.id} ready with order {order.id} "
                    f"({amount} {currency})")
        return {
            'success': True,
            'registration': registration.to_dict(),
            'order': order.to_dict()
        }
