#!/usr/bin/env python3
"""
Registration service entry point
Wires configuration, storage, integrations and the HTTP server into one event loop
"""

import asyncio
import logging
import signal
from dataclasses import dataclass

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Prevent httpx from logging request URLs
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from admin_alerts import configure_admin_alerts
from app_config import AppConfig
from database import configure_database, init_database, close_connection_pool
from services.bulk_import import BulkImportProcessor
from services.cosmic_kids import CosmicKidsService
from services.fulfillment_orchestrator import FulfillmentOrchestrator
from services.notification_queue import NotificationQueue
from services.notifications import NotificationDispatcher
from services.razorpay_gateway import RazorpayService
from services.registration_drafts import RegistrationDraftService
from services.registration_store import RegistrationStore
from utils.environment import get_webhook_url, is_production_environment
from webhook_handler import create_app, start_webhook_server, stop_webhook_server


@dataclass
class Services:
    store: RegistrationStore
    gateway: RazorpayService
    accounts: CosmicKidsService
    dispatcher: NotificationDispatcher
    notification_queue: NotificationQueue
    orchestrator: FulfillmentOrchestrator
    drafts: RegistrationDraftService
    bulk: BulkImportProcessor


def build_services(config: AppConfig) -> Services:
    """Construct every component with its configuration section"""
    store = RegistrationStore()
    gateway = RazorpayService(config.razorpay)
    accounts = CosmicKidsService(config.cosmic_kids)
    dispatcher = NotificationDispatcher(config.zepto_mail, config.whatsapp)
    notification_queue = NotificationQueue(
        dispatcher,
        store,
        workers=config.fulfillment.notification_workers,
        maxsize=config.fulfillment.notification_queue_size
    )
    orchestrator = FulfillmentOrchestrator(store, gateway, accounts, notification_queue, config.fulfillment)
    drafts = RegistrationDraftService(store, gateway, config.fulfillment)
    bulk = BulkImportProcessor(store, orchestrator)
    return Services(store, gateway, accounts, dispatcher, notification_queue, orchestrator, drafts, bulk)


async def run_service():
    config = AppConfig.from_env()
    configure_database(config.database)
    configure_admin_alerts(config.alerts)

    await init_database()

    services = build_services(config)
    services.notification_queue.start()

    integration_status = {
        'razorpay_configured': services.gateway.is_available(),
        **services.dispatcher.status()
    }
    app = create_app(
        services.orchestrator,
        services.drafts,
        services.bulk,
        services.notification_queue,
        integration_status
    )
    runner = await start_webhook_server(app, config.server.host, config.server.port)

    environment = 'production' if is_production_environment() else 'development'
    logger.info(f"🚀 Registration service running ({environment}), webhook URL: {get_webhook_url('webhook')}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await stop_event.wait()
        logger.info("🛑 Shutdown signal received, initiating graceful shutdown...")
    finally:
        await stop_webhook_server(runner)
        try:
            await services.notification_queue.join(timeout=30)
        except asyncio.TimeoutError:
            logger.warning("⚠️ Notification queue not drained before shutdown")
        await services.notification_queue.stop()
        close_connection_pool()


def main():
    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")


if __name__ == "__main__":
    main()
