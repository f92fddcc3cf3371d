"""
HTTP surface for the registration service
aiohttp routes for draft/order creation, payment webhooks, client-side payment
verification and bulk uploads
"""

import json
import logging
import time
from typing import Dict, Any, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from payment_validation import ValidationError, SignatureError, AmountMismatchError
from services.bulk_import import BulkImportProcessor
from services.fulfillment_orchestrator import FulfillmentOrchestrator
from services.notification_queue import NotificationQueue
from services.razorpay_gateway import GatewayError
from services.registration_drafts import RegistrationDraftService

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

WEBHOOK_SIGNATURE_HEADER = 'X-Razorpay-Signature'

ORCHESTRATOR_KEY = web.AppKey('orchestrator', FulfillmentOrchestrator)
DRAFTS_KEY = web.AppKey('draft_service', RegistrationDraftService)
BULK_KEY = web.AppKey('bulk_processor', BulkImportProcessor)
QUEUE_KEY = web.AppKey('notification_queue', NotificationQueue)
STATUS_KEY = web.AppKey('integration_status', dict)

# Webhook failure tracking for alerting
_webhook_stats = {
    'authentication_failures': 0,
    'last_successful_webhook': 0.0
}


def _error(message: str, status: int) -> Response:
    return web.json_response({'success': False, 'message': message}, status=status)


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def health_handler(request: Request) -> Response:
    """Health check with queue depth and integration configuration"""
    queue = request.app[QUEUE_KEY]
    return web.json_response({
        'status': 'healthy',
        'timestamp': time.time(),
        'notification_queue_depth': queue.depth,
        'notifications_processed': queue.processed,
        'notifications_dropped': queue.dropped,
        'integrations': request.app[STATUS_KEY],
        'webhook_authentication_failures': _webhook_stats['authentication_failures'],
        'last_successful_webhook': _webhook_stats['last_successful_webhook']
    })


async def save_draft_handler(request: Request) -> Response:
    """Create a draft registration and its payment order"""
    try:
        body = await _read_json(request)
        result = await request.app[DRAFTS_KEY].save_draft_and_create_order(
            body.get('data'),
            body.get('selectedAddon'),
            body.get('registrationFee')
        )
        return web.json_response(result)
    except ValidationError as e:
        return _error(str(e), 400)
    except GatewayError as e:
        logger.error(f"❌ WEBHOOK: Draft order creation failed: {e}")
        return _error("Payment order could not be created, please try again", 502)
    except Exception as e:
        logger.error(f"❌ WEBHOOK: Error creating draft registration: {e}", exc_info=True)
        return _error("An error occurred while processing the registration", 500)


async def payment_webhook_handler(request: Request) -> Response:
    """
    Handle payment webhooks

    Any authenticated delivery is acknowledged with 200 regardless of the
    downstream outcome; only authentication failures get a 400.
    """
    raw_body = await request.read()
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)

    try:
        result = await request.app[ORCHESTRATOR_KEY].handle_payment_captured(raw_body, signature)
    except SignatureError:
        _webhook_stats['authentication_failures'] += 1
        logger.error(f"🛡️ WEBHOOK REJECTED: Authentication failed from {request.remote}")
        return _error("Invalid webhook signature", 400)
    except Exception as e:
        # Nothing was committed; a 5xx lets the gateway redeliver
        logger.error(f"❌ WEBHOOK: Error processing payment webhook: {e}", exc_info=True)
        return _error("Webhook processing failed", 500)

    _webhook_stats['last_successful_webhook'] = time.time()
    logger.info(f"📦 WEBHOOK: Payment webhook processed: {result.get('status')}")
    return web.json_response({
        'success': True,
        'message': 'Webhook processed successfully',
        'status': result.get('status')
    })


async def verify_payment_handler(request: Request) -> Response:
    """Client-side payment verification after checkout"""
    try:
        body = await _read_json(request)
        result = await request.app[ORCHESTRATOR_KEY].verify_client_payment(
            body.get('razorpay_order_id'),
            body.get('razorpay_payment_id'),
            body.get('razorpay_signature')
        )
        status = result.get('status')
        if status == 'already_rejected':
            return web.json_response({
                'success': False,
                'message': "Payment for this registration was rejected. Please contact support.",
                **result
            }, status=409)
        if status == 'ignored':
            return web.json_response({
                'success': False,
                'message': "Payment could not be matched to a registration",
                **result
            }, status=400)
        return web.json_response({'success': True, **result})
    except (ValidationError, SignatureError) as e:
        return _error(str(e), 400)
    except AmountMismatchError:
        return _error("Payment amount does not match the registration", 400)
    except GatewayError as e:
        logger.error(f"❌ WEBHOOK: Payment verification lookup failed: {e}")
        return _error("Payment could not be verified, please try again", 502)
    except Exception as e:
        logger.error(f"❌ WEBHOOK: Error verifying payment: {e}", exc_info=True)
        return _error("An error occurred while verifying the payment", 500)


async def _read_bulk_upload(request: Request) -> str:
    """Read CSV text from a multipart 'file' field or a raw text body"""
    if request.content_type.startswith('multipart/'):
        reader = await request.multipart()
        async for part in reader:
            if part.name not in ('file', 'files'):
                continue
            filename = part.filename or 'unknown'
            if not filename.lower().endswith('.csv'):
                raise ValidationError("Invalid file type. Please upload a CSV file.")
            content = await part.read(decode=True)
            return content.decode('utf-8-sig')
        raise ValidationError(
            'No file uploaded. Please upload a CSV file using multipart/form-data with field name "file".'
        )

    content = await request.read()
    if not content:
        raise ValidationError("No file uploaded. Please upload a CSV file.")
    return content.decode('utf-8-sig')


async def bulk_upload_handler(request: Request) -> Response:
    """Import already-paid registrations from CSV"""
    try:
        csv_text = await _read_bulk_upload(request)
        result = await request.app[BULK_KEY].import_csv(csv_text)
    except ValidationError as e:
        return _error(str(e), 400)
    except UnicodeDecodeError:
        return _error("CSV file must be UTF-8 encoded", 400)
    except Exception as e:
        logger.error(f"❌ WEBHOOK: Bulk upload error: {e}", exc_info=True)
        return _error("An error occurred while processing the bulk upload", 500)

    return web.json_response({
        'success': True,
        'message': f"Bulk upload completed. {result.successful} successful, {result.failed} failed.",
        'results': result.to_dict()
    })


def create_app(
    orchestrator: FulfillmentOrchestrator,
    draft_service: RegistrationDraftService,
    bulk_processor: BulkImportProcessor,
    notification_queue: NotificationQueue,
    integration_status: Optional[Dict[str, bool]] = None
) -> web.Application:
    """Build the aiohttp application with all routes"""
    app = web.Application(client_max_size=10 * 1024 * 1024)
    app[ORCHESTRATOR_KEY] = orchestrator
    app[DRAFTS_KEY] = draft_service
    app[BULK_KEY] = bulk_processor
    app[QUEUE_KEY] = notification_queue
    app[STATUS_KEY] = integration_status or {}

    app.router.add_get('/health', health_handler)
    app.router.add_post('/v1/save-draft-and-create-order', save_draft_handler)
    app.router.add_post('/v1/webhook', payment_webhook_handler)
    app.router.add_post('/v1/verify-payment', verify_payment_handler)
    app.router.add_post('/v1/bulk-upload', bulk_upload_handler)
    return app


async def start_webhook_server(app: web.Application, host: str = '0.0.0.0', port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the running event loop"""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"✅ Webhook server started on http://{host}:{port}")
    logger.info("🔗 Endpoints: /v1/save-draft-and-create-order, /v1/webhook, /v1/verify-payment, /v1/bulk-upload")
    return runner


async def stop_webhook_server(runner: Optional[web.AppRunner]):
    """Stop the webhook server and cleanup"""
    if runner:
        await runner.cleanup()
    logger.info("✅ Webhook server stopped")
