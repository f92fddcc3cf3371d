"""
Registration store - the single persistence boundary for registration records

Every state change of a registration goes through this module:
- draft creation and stale-draft cleanup
- gateway order attachment
- the atomic pending → completed payment transition (conditional UPDATE)
- rejection, fulfillment bookkeeping and notification flag updates
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from database import execute_query, execute_update, execute_returning

logger = logging.getLogger(__name__)

PAYMENT_PENDING = 'pending'
PAYMENT_COMPLETED = 'completed'
PAYMENT_FAILED = 'failed'

ADDON_CREDIT_GRANTED = 'granted'
ADDON_CREDIT_FAILED = 'failed'
ADDON_CREDIT_SKIPPED = 'skipped'
ADDON_CREDIT_NOT_APPLICABLE = 'not_applicable'

CONTACT_FIELDS = ('name', 'email', 'phone', 'school_name', 'grade', 'section', 'dob', 'city', 'is_overseas')


@dataclass
class Registration:
    """A registration record as stored"""
    id: int
    correlation_id: str
    name: str
    email: str
    phone: Optional[str] = None
    school_name: Optional[str] = None
    grade: Optional[str] = None
    section: Optional[str] = None
    dob: Optional[str] = None
    city: Optional[str] = None
    is_overseas: bool = False
    selected_addon: Optional[Dict[str, Any]] = None
    registration_fee: Decimal = Decimal('0')
    order_amount: Optional[int] = None
    order_currency: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: str = PAYMENT_PENDING
    payment_method: Optional[str] = None
    payment_verified_at: Optional[datetime] = None
    payment_captured_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    external_account_id: Optional[str] = None
    addon_credit_status: Optional[str] = None
    mail_sent: bool = False
    wa_sent: bool = False
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def published(self) -> bool:
        return self.published_at is not None

    @property
    def is_completed(self) -> bool:
        return self.payment_status == PAYMENT_COMPLETED

    @property
    def addon_id(self) -> Optional[str]:
        return (self.selected_addon or {}).get('id') or None

    @property
    def addon_title(self) -> str:
        return (self.selected_addon or {}).get('title') or 'N/A'

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Registration':
        known = {name for name in cls.__dataclass_fields__}
        data = {key: value for key, value in row.items() if key in known}
        addon = data.get('selected_addon')
        if isinstance(addon, str):
            data['selected_addon'] = json.loads(addon)
        if data.get('correlation_id') is not None:
            data['correlation_id'] = str(data['correlation_id'])
        if data.get('external_account_id') is not None:
            data['external_account_id'] = str(data['external_account_id'])
        if data.get('registration_fee') is not None:
            data['registration_fee'] = Decimal(str(data['registration_fee']))
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for API responses"""
        data = asdict(self)
        data['registration_fee'] = str(self.registration_fee)
        data['published'] = self.published
        for key in ('payment_verified_at', 'payment_captured_at', 'published_at', 'created_at', 'updated_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _row_or_none(rows: List[Dict]) -> Optional[Registration]:
    return Registration.from_row(rows[0]) if rows else None


class RegistrationStore:
    """PostgreSQL-backed registration store"""

    async def get(self, registration_id: int) -> Optional[Registration]:
        rows = await execute_query("SELECT * FROM registrations WHERE id = %s", (registration_id,))
        return _row_or_none(rows)

    async def find_by_correlation_id(self, correlation_id: str) -> Optional[Registration]:
        rows = await execute_query(
            "SELECT * FROM registrations WHERE correlation_id::text = %s",
            (str(correlation_id),)
        )
        return _row_or_none(rows)

    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Registration]:
        rows = await execute_query(
            "SELECT * FROM registrations WHERE gateway_order_id = %s ORDER BY created_at DESC LIMIT 1",
            (gateway_order_id,)
        )
        return _row_or_none(rows)

    async def find_by_email(self, email: str) -> List[Registration]:
        """All registrations for an email, most recent first"""
        rows = await execute_query(
            "SELECT * FROM registrations WHERE email = %s ORDER BY created_at DESC, id DESC",
            (email,)
        )
        return [Registration.from_row(row) for row in rows]

    async def create_draft(
        self,
        contact: Dict[str, Any],
        selected_addon: Optional[Dict[str, Any]],
        registration_fee: Decimal,
        order_amount: int,
        order_currency: str
    ) -> Registration:
        """Insert an unpublished pending registration"""
        rows = await execute_returning("""
            INSERT INTO registrations (
                name, email, phone, school_name, grade, section, dob, city, is_overseas,
                selected_addon, registration_fee, order_amount, order_currency, payment_status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
            RETURNING *
        """, (
            contact.get('name'), contact.get('email'), contact.get('phone'),
            contact.get('school_name'), contact.get('grade'), contact.get('section'),
            contact.get('dob'), contact.get('city'), bool(contact.get('is_overseas')),
            json.dumps(selected_addon) if selected_addon else None,
            registration_fee, order_amount, order_currency
        ))
        registration = Registration.from_row(rows[0])
        logger.info(f"📝 STORE: Draft registration {registration.id} created for {registration.email}")
        return registration

    async def delete(self, registration_id: int) -> bool:
        """Delete a registration, only ever used for stale pending drafts"""
        deleted = await execute_update(
            "DELETE FROM registrations WHERE id = %s AND payment_status = 'pending'",
            (registration_id,)
        )
        return deleted > 0

    async def attach_gateway_order(self, registration_id: int, gateway_order_id: str) -> bool:
        updated = await execute_update("""
            UPDATE registrations
            SET gateway_order_id = %s, updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND payment_status = 'pending'
        """, (gateway_order_id, registration_id))
        return updated > 0

    async def complete_payment(
        self,
        registration_id: int,
        payment_id: str,
        payment_method: Optional[str],
        captured_at: datetime,
        verified_at: datetime
    ) -> Optional[Registration]:
        """
        Atomically move a pending registration to completed and publish it.

        Returns the updated registration, or None when the registration was not
        pending any more (another delivery already won the transition).
        """
        rows = await execute_returning("""
            UPDATE registrations
            SET payment_id = %s,
                payment_status = 'completed',
                payment_method = %s,
                payment_captured_at = %s,
                payment_verified_at = %s,
                published_at = %s,
                mail_sent = FALSE,
                wa_sent = FALSE,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND payment_status = 'pending'
            RETURNING *
        """, (payment_id, payment_method, captured_at, verified_at, verified_at, registration_id))
        return _row_or_none(rows)

    async def mark_rejected(self, registration_id: int, reason: str) -> bool:
        """Record an integrity rejection on a pending registration"""
        updated = await execute_update("""
            UPDATE registrations
            SET payment_status = 'failed', rejection_reason = %s, updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND payment_status = 'pending'
        """, (reason, registration_id))
        return updated > 0

    async def record_fulfillment(
        self,
        registration_id: int,
        external_account_id: Optional[str],
        addon_credit_status: str
    ) -> bool:
        updated = await execute_update("""
            UPDATE registrations
            SET external_account_id = COALESCE(%s, external_account_id),
                addon_credit_status = %s,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND payment_status = 'completed'
        """, (external_account_id, addon_credit_status, registration_id))
        return updated > 0

    async def update_notification_flags(self, registration_id: int, mail_sent: bool, wa_sent: bool) -> bool:
        """Write only the notification flags of a completed registration"""
        updated = await execute_update("""
            UPDATE registrations
            SET mail_sent = %s, wa_sent = %s, updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND payment_status = 'completed'
        """, (bool(mail_sent), bool(wa_sent), registration_id))
        return updated > 0

    async def upsert_completed(
        self,
        contact: Dict[str, Any],
        selected_addon: Optional[Dict[str, Any]],
        payment_id: str,
        payment_method: str,
        paid_at: datetime
    ) -> Registration:
        """
        Write an already-paid registration: update the latest record for the
        email if one exists, otherwise insert a new one. The result is always
        completed and published.
        """
        existing = await self.find_by_email(contact['email'])
        addon_json = json.dumps(selected_addon) if selected_addon else None

        if existing:
            target = existing[0]
            rows = await execute_returning("""
                UPDATE registrations
                SET name = %s, phone = %s, school_name = %s, grade = %s, section = %s,
                    dob = COALESCE(%s, dob), city = COALESCE(%s, city), is_overseas = %s,
                    selected_addon = COALESCE(%s::jsonb, selected_addon),
                    payment_id = %s, payment_status = 'completed', payment_method = %s,
                    payment_captured_at = %s, payment_verified_at = %s, published_at = %s,
                    rejection_reason = NULL, mail_sent = FALSE, wa_sent = FALSE,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = %s
                RETURNING *
            """, (
                contact.get('name'), contact.get('phone'), contact.get('school_name'),
                contact.get('grade'), contact.get('section'), contact.get('dob'),
                contact.get('city'), bool(contact.get('is_overseas')), addon_json,
                payment_id, payment_method, paid_at, paid_at, paid_at, target.id
            ))
            logger.info(f"📝 STORE: Registration {target.id} updated as completed for {contact['email']}")
            return Registration.from_row(rows[0])

        rows = await execute_returning("""
            INSERT INTO registrations (
                name, email, phone, school_name, grade, section, dob, city, is_overseas,
                selected_addon, payment_id, payment_status, payment_method,
                payment_captured_at, payment_verified_at, published_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'completed', %s, %s, %s, %s)
            RETURNING *
        """, (
            contact.get('name'), contact.get('email'), contact.get('phone'),
            contact.get('school_name'), contact.get('grade'), contact.get('section'),
            contact.get('dob'), contact.get('city'), bool(contact.get('is_overseas')),
            addon_json, payment_id, payment_method, paid_at, paid_at, paid_at
        ))
        registration = Registration.from_row(rows[0])
        logger.info(f"📝 STORE: Registration {registration.id} created as completed for {registration.email}")
        return registration
