"""
Shared test fixtures and configuration for the registration service test suite
Provides factories, an in-memory registration store and integration doubles
"""

import os
import json
import hmac
import hashlib
import asyncio
import itertools
import uuid
import pytest
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyAttribute
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, Optional, List
from unittest.mock import AsyncMock
import logging

from admin_alerts import configure_admin_alerts
from app_config import AlertConfig, FulfillmentConfig, RazorpayConfig
from services.cosmic_kids import AccountLookup, ProvisionResult, ProvisioningError, EXISTING_ACCOUNT_PASSWORD_NOTE
from services.fulfillment_orchestrator import FulfillmentOrchestrator
from services.notification_queue import NotificationQueue
from services.razorpay_gateway import RazorpayService, OrderRef
from services.registration_store import Registration, PAYMENT_PENDING, PAYMENT_COMPLETED, PAYMENT_FAILED

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',
    'ADMIN_ALERTS_ENABLED': 'true',
    'ALERT_MIN_SEVERITY': 'WARNING',
}
for key, value in test_env_vars.items():
    os.environ.setdefault(key, value)

TEST_KEY_SECRET = 'test_key_secret'
TEST_WEBHOOK_SECRET = 'test_webhook_secret'


# Test data factories
class RegistrationDataFactory(factory.Factory):  # type: ignore[misc]
    """Factory for draft registration form data"""
    class Meta:  # type: ignore[misc]
        model = dict

    name = Faker('name')
    email = Sequence(lambda n: f"student{n}@example.com")
    phone = Sequence(lambda n: f"98765{n:05d}")
    dob = '2014-05-17'
    school_name = Faker('company')
    grade = Faker('random_element', elements=('5', '6', '7', '8'))
    section = Faker('random_element', elements=('A', 'B', 'C'))
    city = Faker('city')
    is_overseas = False


class AddonFactory(factory.Factory):  # type: ignore[misc]
    """Factory for add-on selections as sent by the registration form"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = 'basic'
    title = LazyAttribute(lambda o: f"{o.id.title()} Pack")
    originalPriceInr = 750
    originalPrice = 15


class BulkRowFactory(factory.Factory):  # type: ignore[misc]
    """Factory for bulk upload CSV rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    name = Faker('name')
    email = Sequence(lambda n: f"bulk{n}@example.com")
    phone = Sequence(lambda n: f"91234{n:05d}")
    school = Faker('company')
    grade = '6'
    section = 'B'
    payment_id = Sequence(lambda n: f"pay_bulk{n:06d}")
    is_overseas = 'false'
    addon_id = ''
    addon_title = ''
    dob = ''
    city = ''


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def build_captured_event(registration: Registration, amount: Optional[int] = None,
                         payment_id: str = 'pay_test123', method: str = 'upi',
                         description: str = 'NAC25 Registration') -> Dict[str, Any]:
    """payment.captured webhook body for a registration"""
    return {
        'event': 'payment.captured',
        'payload': {
            'payment': {
                'entity': {
                    'id': payment_id,
                    'order_id': registration.gateway_order_id,
                    'method': method,
                    'amount': registration.order_amount if amount is None else amount,
                    'currency': registration.order_currency,
                    'status': 'captured',
                    'description': description,
                    'captured_at': 1760000000,
                    'notes': {'registration_correlation_id': registration.correlation_id}
                }
            }
        }
    }


def signed_body(body: Dict[str, Any]):
    """Serialize a webhook body and sign it with the test webhook secret"""
    raw = json.dumps(body).encode('utf-8')
    return raw, sign(TEST_WEBHOOK_SECRET, raw)


class InMemoryRegistrationStore:
    """Registration store double with the same conditional-update semantics as the SQL store"""

    def __init__(self):
        self.records: Dict[int, Registration] = {}
        self._ids = itertools.count(1)
        self.flag_updates: List[Dict[str, Any]] = []

    async def _yield(self):
        # Let concurrent tasks interleave at every store round trip
        await asyncio.sleep(0)

    def _copy(self, registration: Optional[Registration]) -> Optional[Registration]:
        if registration is None:
            return None
        return Registration(**{name: getattr(registration, name) for name in Registration.__dataclass_fields__})

    async def get(self, registration_id):
        await self._yield()
        return self._copy(self.records.get(registration_id))

    async def find_by_correlation_id(self, correlation_id):
        await self._yield()
        for registration in self.records.values():
            if registration.correlation_id == correlation_id:
                return self._copy(registration)
        return None

    async def find_by_gateway_order_id(self, gateway_order_id):
        await self._yield()
        for registration in sorted(self.records.values(), key=lambda r: r.id, reverse=True):
            if registration.gateway_order_id == gateway_order_id:
                return self._copy(registration)
        return None

    async def find_by_email(self, email):
        await self._yield()
        matches = [r for r in self.records.values() if r.email == email]
        return [self._copy(r) for r in sorted(matches, key=lambda r: r.id, reverse=True)]

    async def create_draft(self, contact, selected_addon, registration_fee, order_amount, order_currency):
        await self._yield()
        now = datetime.now(timezone.utc)
        registration = Registration(
            id=next(self._ids),
            correlation_id=str(uuid.uuid4()),
            selected_addon=selected_addon,
            registration_fee=Decimal(str(registration_fee)),
            order_amount=order_amount,
            order_currency=order_currency,
            created_at=now,
            updated_at=now,
            **contact
        )
        self.records[registration.id] = registration
        return self._copy(registration)

    async def delete(self, registration_id):
        await self._yield()
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_PENDING:
            return False
        del self.records[registration_id]
        return True

    async def attach_gateway_order(self, registration_id, gateway_order_id):
        await self._yield()
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_PENDING:
            return False
        registration.gateway_order_id = gateway_order_id
        return True

    async def complete_payment(self, registration_id, payment_id, payment_method, captured_at, verified_at):
        await self._yield()
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_PENDING:
            return None
        registration.payment_id = payment_id
        registration.payment_status = PAYMENT_COMPLETED
        registration.payment_method = payment_method
        registration.payment_captured_at = captured_at
        registration.payment_verified_at = verified_at
        registration.published_at = verified_at
        registration.mail_sent = False
        registration.wa_sent = False
        return self._copy(registration)

    async def mark_rejected(self, registration_id, reason):
        await self._yield()
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_PENDING:
            return False
        registration.payment_status = PAYMENT_FAILED
        registration.rejection_reason = reason
        return True

    async def record_fulfillment(self, registration_id, external_account_id, addon_credit_status):
        await self._yield()
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_COMPLETED:
            return False
        if external_account_id is not None:
            registration.external_account_id = external_account_id
        registration.addon_credit_status = addon_credit_status
        return True

    async def update_notification_flags(self, registration_id, mail_sent, wa_sent):
        await self._yield()
        self.flag_updates.append({'id': registration_id, 'mail_sent': mail_sent, 'wa_sent': wa_sent})
        registration = self.records.get(registration_id)
        if registration is None or registration.payment_status != PAYMENT_COMPLETED:
            return False
        registration.mail_sent = bool(mail_sent)
        registration.wa_sent = bool(wa_sent)
        return True

    async def upsert_completed(self, contact, selected_addon, payment_id, payment_method, paid_at):
        await self._yield()
        matches = sorted((r for r in self.records.values() if r.email == contact['email']),
                         key=lambda r: r.id, reverse=True)
        if matches:
            registration = matches[0]
            for name, value in contact.items():
                if value is not None:
                    setattr(registration, name, value)
            if selected_addon:
                registration.selected_addon = selected_addon
        else:
            registration = Registration(
                id=next(self._ids),
                correlation_id=str(uuid.uuid4()),
                selected_addon=selected_addon,
                created_at=paid_at,
                **contact
            )
            self.records[registration.id] = registration

        registration.payment_id = payment_id
        registration.payment_status = PAYMENT_COMPLETED
        registration.payment_method = payment_method
        registration.payment_captured_at = paid_at
        registration.payment_verified_at = paid_at
        registration.published_at = paid_at
        registration.rejection_reason = None
        registration.mail_sent = False
        registration.wa_sent = False
        return self._copy(registration)


class FakeCosmicKidsService:
    """Account provisioning double that records every remote call"""

    def __init__(self):
        self.accounts: Dict[str, str] = {}
        self.created: List[str] = []
        self.grants: List[Dict[str, Any]] = []
        self.fail_create = False
        self.fail_grant = False
        self._ids = itertools.count(5000)

    async def find_by_email(self, email):
        await asyncio.sleep(0)
        if email in self.accounts:
            return AccountLookup(registered=True, external_id=self.accounts[email])
        return AccountLookup(registered=False)

    async def ensure_account(self, email):
        lookup = await self.find_by_email(email)
        if lookup.registered:
            return ProvisionResult(lookup.external_id, False, EXISTING_ACCOUNT_PASSWORD_NOTE)
        if self.fail_create:
            raise ProvisioningError("Failed to create account: HTTP 500")
        await asyncio.sleep(0)
        self.accounts[email] = str(next(self._ids))
        self.created.append(email)
        recheck = await self.find_by_email(email)
        return ProvisionResult(recheck.external_id, True, 'generated-password')

    async def grant_credits(self, external_id, tier, amount_paid, credits):
        await asyncio.sleep(0)
        if self.fail_grant:
            raise ProvisioningError("Failed to add user addons: HTTP 502")
        self.grants.append({'external_id': external_id, 'tier': tier, 'amount': amount_paid, 'credits': credits})
        return {'ok': True}


class FakeDispatcher:
    """Notification dispatcher double; optionally blocks until released"""

    def __init__(self, result: Optional[Dict[str, bool]] = None):
        self.result = result or {'mail_sent': True, 'wa_sent': True}
        self.calls: List[Dict[str, Any]] = []
        self.release = asyncio.Event()
        self.release.set()

    async def dispatch(self, registration, password_message):
        self.calls.append({'registration_id': registration.id, 'password': password_message})
        await self.release.wait()
        return dict(self.result)


@pytest.fixture
def fulfillment_config():
    return FulfillmentConfig(
        registration_fee_inr=Decimal('500'),
        registration_fee_usd=Decimal('10'),
        gst_rate=Decimal('0.18'),
        staff_email_domain='@spacetopia.in',
        staff_order_amount=100,
        payment_description_tag=None,
        notification_workers=2,
        notification_queue_size=50
    )


@pytest.fixture
def razorpay_config():
    return RazorpayConfig(
        key_id='rzp_test_key',
        key_secret=TEST_KEY_SECRET,
        webhook_secret=TEST_WEBHOOK_SECRET,
        base_url='https://api.razorpay.test/v1',
        timeout=5.0
    )


@pytest.fixture
def store():
    return InMemoryRegistrationStore()


@pytest.fixture
def gateway(razorpay_config):
    """Real signature verification with remote calls mocked out"""
    service = RazorpayService(razorpay_config)
    service.create_order = AsyncMock(side_effect=lambda amount, currency, correlation_id, receipt, notes=None:
                                     OrderRef(id=f"order_{receipt}", amount=amount, currency=currency,
                                              receipt=receipt))
    service.fetch_payment = AsyncMock()
    return service


@pytest.fixture
def accounts():
    return FakeCosmicKidsService()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
async def notification_queue(dispatcher, store):
    queue = NotificationQueue(dispatcher, store, workers=2, maxsize=50)
    yield queue
    await queue.stop()


@pytest.fixture
def orchestrator(store, gateway, accounts, notification_queue, fulfillment_config):
    return FulfillmentOrchestrator(store, gateway, accounts, notification_queue, fulfillment_config)


@pytest.fixture
def registration_data():
    """Generate draft registration form data"""
    return RegistrationDataFactory()


@pytest.fixture
def basic_addon():
    return AddonFactory()


@pytest.fixture
async def pending_registration(store, registration_data):
    """A pending draft with an attached gateway order: fee 500 + basic add-on 750, domestic"""
    addon = {'id': 'basic', 'title': 'Basic Pack', 'price_inr': '750', 'price_usd': '15'}
    contact = {name: registration_data[name] for name in
               ('name', 'email', 'phone', 'school_name', 'grade', 'section', 'dob', 'city', 'is_overseas')}
    registration = await store.create_draft(contact, addon, Decimal('500'), 147500, 'INR')
    await store.attach_gateway_order(registration.id, 'order_TEST001')
    return await store.get(registration.id)


@pytest.fixture(autouse=True)
def alert_system():
    """Fresh alert system per test so suppression state never leaks"""
    return configure_admin_alerts(AlertConfig(enabled=True, min_severity='WARNING'))
