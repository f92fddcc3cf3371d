"""
Registration notifications - batch template email and WhatsApp template messages

Both channels are best effort: every public coroutine here reports success as a
boolean and never raises to its caller.
"""

import asyncio
import logging
import re
import httpx
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from app_config import ZeptoMailConfig, WhatsAppConfig
from services.addon_tiers import get_whatsapp_template
from services.registration_store import Registration

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Notification provider rejected a request or could not be reached"""
    pass


@dataclass
class EmailRecipient:
    address: str
    name: str
    merge_info: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'email_address': {'address': self.address, 'name': self.name},
            'merge_info': self.merge_info
        }


def normalize_phone(phone: Optional[str], default_country_code: str = '91') -> Optional[str]:
    """
    Normalise a phone number to digits with a country-code prefix

    '+1 415 555 0100' -> '14155550100', '098765 43210' -> '919876543210'

    Args:
        phone: Raw phone number as entered
        default_country_code: Prefix for local numbers without one

    Returns:
        Optional[str]: Normalised number, or None when nothing usable remains
    """
    if not phone:
        return None

    raw = str(phone).strip()
    digits = re.sub(r'\D', '', raw)
    if not digits:
        return None

    if raw.startswith('+'):
        return digits
    if digits.startswith('00'):
        return digits[2:] or None

    local = digits.lstrip('0')
    if len(local) == 10:
        return f"{default_country_code}{local}"
    if len(local) > 10 and local.startswith(default_country_code):
        return local
    return local or None


def build_merge_info(registration: Registration, password_message: str) -> Dict[str, str]:
    """Merge fields shared by the registrant and the operations copy"""
    return {
        'password': password_message,
        'grade': str(registration.grade or ''),
        'name': registration.name,
        'email': registration.email,
        'addon': registration.addon_title
    }


class NotificationDispatcher:
    """Sends the post-payment welcome email and WhatsApp message"""

    def __init__(
        self,
        mail_config: ZeptoMailConfig,
        whatsapp_config: WhatsAppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.mail_config = mail_config
        self.whatsapp_config = whatsapp_config
        self._transport = transport

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Any:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Transport error calling {url}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotificationError(f"HTTP {response.status_code} from {url}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError:
            return {}

    async def send_email_batch(self, recipients: List[EmailRecipient]) -> bool:
        """Send the template email batch; False on any failure"""
        if not recipients:
            logger.warning("📧 NOTIFY: Email batch skipped - no recipients")
            return False
        if not self.mail_config.is_configured():
            logger.warning("📧 NOTIFY: Email batch skipped - ZeptoMail not configured")
            return False

        payload = {
            'mail_template_key': self.mail_config.template_key,
            'from': {
                'address': self.mail_config.from_address,
                'name': self.mail_config.from_name
            },
            'to': [recipient.to_payload() for recipient in recipients]
        }
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'Authorization': f"Zoho-enczapikey {self.mail_config.api_key}"
        }

        try:
            await self._post_json(self.mail_config.api_url, payload, headers, self.mail_config.timeout)
        except NotificationError as e:
            logger.error(f"❌ NOTIFY: Email batch failed: {e}")
            return False
        except Exception as e:
            logger.error(f"❌ NOTIFY: Unexpected email batch error: {e}", exc_info=True)
            return False

        logger.info(f"✅ NOTIFY: Email batch sent to {len(recipients)} recipients")
        return True

    async def send_messaging_notification(self, template_id: str, phone_number: Optional[str],
                                          params: List[Dict[str, str]]) -> bool:
        """Send a WhatsApp template message; False when skipped or failed"""
        if not self.whatsapp_config.is_configured():
            logger.warning("💬 NOTIFY: WhatsApp skipped - ULGEBRA_WEBHOOK_AUTHTOKEN not configured")
            return False

        mobile_number = normalize_phone(phone_number, self.whatsapp_config.default_country_code)
        if not mobile_number:
            logger.warning("💬 NOTIFY: WhatsApp skipped - phone number not available")
            return False

        payload = {
            'templateId': template_id,
            'mobileNumber': mobile_number,
            'parameters': params
        }
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self.whatsapp_config.auth_token}"
        }

        try:
            await self._post_json(self.whatsapp_config.webhook_url, payload, headers, self.whatsapp_config.timeout)
        except NotificationError as e:
            logger.error(f"❌ NOTIFY: WhatsApp message failed (template {template_id}): {e}")
            return False
        except Exception as e:
            logger.error(f"❌ NOTIFY: Unexpected WhatsApp error: {e}", exc_info=True)
            return False

        logger.info(f"✅ NOTIFY: WhatsApp template {template_id} sent")
        return True

    async def send_registration_email(self, registration: Registration, password_message: str) -> bool:
        if not registration.email or not registration.name:
            logger.warning(f"📧 NOTIFY: Email skipped for registration {registration.id} - missing name/email")
            return False

        merge_info = build_merge_info(registration, password_message)
        recipients = [
            EmailRecipient(registration.email, registration.name, merge_info),
            EmailRecipient(self.mail_config.ops_address, self.mail_config.ops_name, dict(merge_info))
        ]
        return await self.send_email_batch(recipients)

    async def send_registration_whatsapp(self, registration: Registration) -> bool:
        template_id = get_whatsapp_template(registration.addon_id)
        params = [{'type': 'text', 'text': registration.name or 'Student'}]
        logger.info(f"💬 NOTIFY: Template {template_id} selected for add-on {registration.addon_id}")
        return await self.send_messaging_notification(template_id, registration.phone, params)

    async def dispatch(self, registration: Registration, password_message: str) -> Dict[str, bool]:
        """
        Run both channels as independent attempts.

        Returns:
            Dict[str, bool]: {'mail_sent': ..., 'wa_sent': ...}
        """
        results = await asyncio.gather(
            self.send_registration_email(registration, password_message),
            self.send_registration_whatsapp(registration),
            return_exceptions=True
        )

        mail_sent, wa_sent = (result is True for result in results)
        for channel, result in zip(('email', 'whatsapp'), results):
            if isinstance(result, BaseException):
                logger.error(f"❌ NOTIFY: {channel} channel raised for registration {registration.id}: {result}")

        logger.info(f"📬 NOTIFY: Registration {registration.id} notified (mail={mail_sent}, wa={wa_sent})")
        return {'mail_sent': mail_sent, 'wa_sent': wa_sent}

    def status(self) -> Dict[str, bool]:
        return {
            'email_configured': self.mail_config.is_configured(),
            'whatsapp_configured': self.whatsapp_config.is_configured()
        }
