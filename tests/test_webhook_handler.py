"""
HTTP surface tests
P0 Critical: webhook authentication, acknowledgement semantics and request validation
"""

import pytest
from aiohttp import FormData
from aiohttp import test_utils
from unittest.mock import AsyncMock

from services.bulk_import import BulkImportProcessor
from services.razorpay_gateway import CapturedPayment, GatewayError
from services.registration_drafts import RegistrationDraftService
from services.registration_store import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING
from webhook_handler import create_app, WEBHOOK_SIGNATURE_HEADER
from conftest import (
    RegistrationDataFactory, AddonFactory, BulkRowFactory, build_captured_event, signed_body, sign, TEST_KEY_SECRET
)

BULK_HEADER = 'name,email,phone,school,grade,section,payment_id,is_overseas\n'


@pytest.fixture
async def client(store, gateway, orchestrator, notification_queue, fulfillment_config):
    draft_service = RegistrationDraftService(store, gateway, fulfillment_config)
    bulk_processor = BulkImportProcessor(store, orchestrator)
    app = create_app(orchestrator, draft_service, bulk_processor, notification_queue,
                     {'razorpay_configured': True})
    test_client = test_utils.TestClient(test_utils.TestServer(app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


class TestPaymentWebhookRoute:

    async def test_invalid_signature_returns_400(self, client, store, pending_registration):
        raw, _ = signed_body(build_captured_event(pending_registration))

        response = await client.post('/v1/webhook', data=raw, headers={WEBHOOK_SIGNATURE_HEADER: 'forged'})

        assert response.status == 400
        body = await response.json()
        assert body['success'] is False
        assert store.records[pending_registration.id].payment_status == PAYMENT_PENDING

    async def test_authenticated_delivery_is_acknowledged(self, client, store, notification_queue,
                                                          pending_registration):
        raw, signature = signed_body(build_captured_event(pending_registration))

        response = await client.post('/v1/webhook', data=raw, headers={WEBHOOK_SIGNATURE_HEADER: signature})
        await notification_queue.join(timeout=5)

        assert response.status == 200
        body = await response.json()
        assert body == {'success': True, 'message': 'Webhook processed successfully', 'status': 'completed'}
        assert store.records[pending_registration.id].payment_status == PAYMENT_COMPLETED

    async def test_duplicate_and_rejected_deliveries_still_200(self, client, pending_registration):
        raw, signature = signed_body(build_captured_event(pending_registration, amount=1))

        first = await client.post('/v1/webhook', data=raw, headers={WEBHOOK_SIGNATURE_HEADER: signature})
        second = await client.post('/v1/webhook', data=raw, headers={WEBHOOK_SIGNATURE_HEADER: signature})

        assert first.status == 200
        assert (await first.json())['status'] == 'rejected'
        assert second.status == 200
        assert (await second.json())['status'] == 'already_rejected'

    async def test_unexpected_error_returns_500(self, client, orchestrator, pending_registration):
        orchestrator.store.get = AsyncMock(side_effect=RuntimeError("database unavailable"))
        raw, signature = signed_body(build_captured_event(pending_registration))

        response = await client.post('/v1/webhook', data=raw, headers={WEBHOOK_SIGNATURE_HEADER: signature})

        assert response.status == 500


class TestDraftRoute:

    async def test_save_draft(self, client):
        payload = {'data': RegistrationDataFactory(), 'selectedAddon': AddonFactory()}

        response = await client.post('/v1/save-draft-and-create-order', json=payload)

        assert response.status == 200
        body = await response.json()
        assert body['success'] is True
        assert body['registration']['order_amount'] == 147500
        assert body['order']['id'].startswith('order_registration_')

    async def test_save_draft_validation_error(self, client):
        response = await client.post('/v1/save-draft-and-create-order', json={'data': {'name': 'Only name'}})
        assert response.status == 400
        assert 'Missing required fields' in (await response.json())['message']

    async def test_save_draft_invalid_json(self, client):
        response = await client.post('/v1/save-draft-and-create-order', data=b'{not json',
                                     headers={'Content-Type': 'application/json'})
        assert response.status == 400

    async def test_save_draft_gateway_failure(self, client, gateway):
        gateway.create_order.side_effect = GatewayError("down")

        response = await client.post('/v1/save-draft-and-create-order', json={'data': RegistrationDataFactory()})

        assert response.status == 502


class TestVerifyPaymentRoute:

    async def test_missing_fields(self, client):
        response = await client.post('/v1/verify-payment', json={'razorpay_order_id': 'order_1'})
        assert response.status == 400

    async def test_bad_signature(self, client, pending_registration):
        response = await client.post('/v1/verify-payment', json={
            'razorpay_order_id': 'order_TEST001',
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': 'forged'
        })
        assert response.status == 400

    async def test_previously_rejected_registration_is_not_success(self, client, store, gateway,
                                                                   pending_registration):
        await store.mark_rejected(pending_registration.id, 'Amount mismatch')
        gateway.fetch_payment.return_value = CapturedPayment(
            payment_id='pay_1', amount=pending_registration.order_amount, order_id='order_TEST001',
            currency='INR', method='card', status='captured'
        )

        response = await client.post('/v1/verify-payment', json={
            'razorpay_order_id': 'order_TEST001',
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': sign(TEST_KEY_SECRET, b'order_TEST001|pay_1')
        })

        assert response.status == 409
        body = await response.json()
        assert body['success'] is False
        assert body['status'] == 'already_rejected'
        assert store.records[pending_registration.id].payment_status == PAYMENT_FAILED

    async def test_verified_payment_succeeds(self, client, store, gateway, notification_queue,
                                             pending_registration):
        gateway.fetch_payment.return_value = CapturedPayment(
            payment_id='pay_1', amount=pending_registration.order_amount, order_id='order_TEST001',
            currency='INR', method='card', status='captured'
        )

        response = await client.post('/v1/verify-payment', json={
            'razorpay_order_id': 'order_TEST001',
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': sign(TEST_KEY_SECRET, b'order_TEST001|pay_1')
        })
        await notification_queue.join(timeout=5)

        assert response.status == 200
        body = await response.json()
        assert body['success'] is True
        assert body['status'] == 'completed'
        assert store.records[pending_registration.id].payment_status == PAYMENT_COMPLETED
        assert response.status == 400


class TestBulkUploadRoute:

    async def test_multipart_upload(self, client, notification_queue):
        rows = BulkRowFactory.build_batch(2)
        csv_text = BULK_HEADER + ''.join(
            f"{r['name'].replace(',', ' ')},{r['email']},{r['phone']},School,{r['grade']},"
            f"{r['section']},{r['payment_id']},false\n"
            for r in rows
        )
        form = FormData()
        form.add_field('file', csv_text.encode('utf-8'), filename='paid.csv', content_type='text/csv')

        response = await client.post('/v1/bulk-upload', data=form)
        await notification_queue.join(timeout=5)

        assert response.status == 200
        body = await response.json()
        assert body['message'] == 'Bulk upload completed. 2 successful, 0 failed.'
        assert body['results']['total'] == 2

    async def test_wrong_file_type(self, client):
        form = FormData()
        form.add_field('file', b'data', filename='paid.xlsx', content_type='application/octet-stream')

        response = await client.post('/v1/bulk-upload', data=form)

        assert response.status == 400

    async def test_missing_columns(self, client):
        response = await client.post('/v1/bulk-upload', data=b'name,email\nA,a@example.com\n',
                                     headers={'Content-Type': 'text/csv'})
        assert response.status == 400
        assert 'Missing required columns' in (await response.json())['message']


class TestHealthRoute:

    async def test_health(self, client):
        response = await client.get('/health')
        assert response.status == 200
        body = await response.json()
        assert body['status'] == 'healthy'
        assert body['integrations'] == {'razorpay_configured': True}
        assert body['notification_queue_depth'] == 0
