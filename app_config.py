"""
Application configuration for the registration fulfillment service
Reads the environment once at startup and hands each adapter its own section
"""

import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from utils.environment import get_env_bool, get_env_int, get_env_decimal

logger = logging.getLogger(__name__)


@dataclass
class RazorpayConfig:
    """Payment gateway credentials and endpoints"""
    key_id: Optional[str] = None
    key_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    base_url: str = 'https://api.razorpay.com/v1'
    timeout: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)


@dataclass
class CosmicKidsConfig:
    """External learning platform (account provisioning) settings"""
    api_base: str = 'https://api.cosmickids.club/api'
    api_token: Optional[str] = None
    timeout: float = 30.0


@dataclass
class ZeptoMailConfig:
    """Batch template email settings"""
    api_url: str = 'https://api.zeptomail.in/v1.1/email/template/batch'
    api_key: Optional[str] = None
    template_key: Optional[str] = None
    from_address: str = 'noreply@spacetopia.in'
    from_name: str = 'NAC25 Registration'
    ops_address: str = 'ckc@stemandspace.com'
    ops_name: str = 'School Registration'
    timeout: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.api_key and self.template_key)


@dataclass
class WhatsAppConfig:
    """WhatsApp template messaging via the Ulgebra workflow webhook"""
    webhook_url: str = 'https://api.ulgebra.com/v1/workflows?extensionName=whatsappforspreadsheet'
    auth_token: Optional[str] = None
    default_country_code: str = '91'
    timeout: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.auth_token)


@dataclass
class FulfillmentConfig:
    """Pricing and background dispatch settings"""
    registration_fee_inr: Decimal = Decimal('500')
    registration_fee_usd: Decimal = Decimal('10')
    gst_rate: Decimal = Decimal('0.18')
    staff_email_domain: Optional[str] = '@spacetopia.in'
    staff_order_amount: int = 100
    payment_description_tag: Optional[str] = None
    notification_workers: int = 4
    notification_queue_size: int = 500


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    pool_min: int = 1
    pool_max: int = 10


@dataclass
class ServerConfig:
    host: str = '0.0.0.0'
    port: int = 5000


@dataclass
class AlertConfig:
    """Operational alert delivery settings"""
    enabled: bool = True
    webhook_url: Optional[str] = None
    min_severity: str = 'WARNING'
    rate_limit_window: int = 300
    max_alerts_per_window: int = 10
    suppression_window: int = 3600


@dataclass
class AppConfig:
    razorpay: RazorpayConfig = field(default_factory=RazorpayConfig)
    cosmic_kids: CosmicKidsConfig = field(default_factory=CosmicKidsConfig)
    zepto_mail: ZeptoMailConfig = field(default_factory=ZeptoMailConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    fulfillment: FulfillmentConfig = field(default_factory=FulfillmentConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Build the full configuration from environment variables"""
        timeout = float(os.getenv('HTTP_TIMEOUT_SECONDS', '30'))

        config = cls(
            razorpay=RazorpayConfig(
                key_id=os.getenv('RAZORPAY_KEY_ID'),
                key_secret=os.getenv('RAZORPAY_KEY_SECRET'),
                webhook_secret=os.getenv('RAZORPAY_WEBHOOK_SECRET'),
                base_url=os.getenv('RAZORPAY_BASE_URL', 'https://api.razorpay.com/v1'),
                timeout=timeout
            ),
            cosmic_kids=CosmicKidsConfig(
                api_base=os.getenv('COSMIC_KIDS_API_BASE', 'https://api.cosmickids.club/api'),
                api_token=os.getenv('COSMIC_KIDS_API_TOKEN'),
                timeout=timeout
            ),
            zepto_mail=ZeptoMailConfig(
                api_url=os.getenv('ZEPTO_MAIL_API_URL', 'https://api.zeptomail.in/v1.1/email/template/batch'),
                api_key=os.getenv('ZEPTO_MAIL_API_KEY'),
                template_key=os.getenv('ZEPTO_MAIL_TEMPLATE_KEY'),
                from_address=os.getenv('ZEPTO_MAIL_FROM_ADDRESS', 'noreply@spacetopia.in'),
                from_name=os.getenv('ZEPTO_MAIL_FROM_NAME', 'NAC25 Registration'),
                ops_address=os.getenv('OPS_NOTIFICATION_EMAIL', 'ckc@stemandspace.com'),
                ops_name=os.getenv('OPS_NOTIFICATION_NAME', 'School Registration'),
                timeout=timeout
            ),
            whatsapp=WhatsAppConfig(
                webhook_url=os.getenv(
                    'ULGEBRA_WEBHOOK_URL',
                    'https://api.ulgebra.com/v1/workflows?extensionName=whatsappforspreadsheet'
                ),
                auth_token=os.getenv('ULGEBRA_WEBHOOK_AUTHTOKEN') or None,
                default_country_code=os.getenv('WHATSAPP_DEFAULT_COUNTRY_CODE', '91'),
                timeout=timeout
            ),
            fulfillment=FulfillmentConfig(
                registration_fee_inr=get_env_decimal('REGISTRATION_FEE_INR', Decimal('500')),
                registration_fee_usd=get_env_decimal('REGISTRATION_FEE_USD', Decimal('10')),
                gst_rate=get_env_decimal('GST_RATE', Decimal('0.18')),
                staff_email_domain=os.getenv('STAFF_EMAIL_DOMAIN', '@spacetopia.in') or None,
                staff_order_amount=get_env_int('STAFF_ORDER_AMOUNT', 100),
                payment_description_tag=os.getenv('PAYMENT_DESCRIPTION_TAG') or None,
                notification_workers=get_env_int('NOTIFICATION_WORKERS', 4),
                notification_queue_size=get_env_int('NOTIFICATION_QUEUE_SIZE', 500)
            ),
            database=DatabaseConfig(
                url=os.getenv('DATABASE_URL'),
                pool_min=get_env_int('DB_POOL_MIN', 1),
                pool_max=get_env_int('DB_POOL_MAX', 10)
            ),
            server=ServerConfig(
                host=os.getenv('HOST', '0.0.0.0'),
                port=get_env_int('PORT', 5000)
            ),
            alerts=AlertConfig(
                enabled=get_env_bool('ADMIN_ALERTS_ENABLED', True),
                webhook_url=os.getenv('ALERT_WEBHOOK_URL') or None,
                min_severity=os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper(),
                rate_limit_window=get_env_int('ALERT_RATE_LIMIT_WINDOW', 300),
                max_alerts_per_window=get_env_int('ALERT_MAX_PER_WINDOW', 10),
                suppression_window=get_env_int('ALERT_SUPPRESSION_WINDOW', 3600)
            )
        )

        logger.info(
            f"🔧 Configuration loaded: razorpay={'yes' if config.razorpay.is_configured() else 'no'}, "
            f"email={'yes' if config.zepto_mail.is_configured() else 'no'}, "
            f"whatsapp={'yes' if config.whatsapp.is_configured() else 'no'}"
        )
        return config
