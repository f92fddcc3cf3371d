"""
Admin alert system for the registration service

Centralised operational alerts for integration failures:
- Severity levels (CRITICAL, ERROR, WARNING, INFO) with a minimum threshold
- Rate limiting to prevent alert storms
- Suppression of duplicate alerts inside a window
- Delivery as a log record plus an optional JSON webhook POST
"""

import logging
import time
import hashlib
import httpx
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from enum import Enum
from dataclasses import dataclass, asdict

from app_config import AlertConfig

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}

_SEVERITY_LOG_LEVEL = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    PAYMENT_PROCESSING = "payment_processing"
    ACCOUNT_PROVISIONING = "account_provisioning"
    NOTIFICATIONS = "notifications"
    BULK_IMPORT = "bulk_import"
    SECURITY = "security"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    SYSTEM_HEALTH = "system_health"


@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a unique fingerprint for alert deduplication"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data


def _parse_category(category: str) -> AlertCategory:
    try:
        return AlertCategory(category)
    except ValueError:
        return AlertCategory.SYSTEM_HEALTH


class AdminAlertSystem:
    """Rate-limited, de-duplicated operational alerting"""

    def __init__(self, config: Optional[AlertConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or AlertConfig()
        self._transport = transport
        try:
            self.min_severity = AlertSeverity(self.config.min_severity)
        except ValueError:
            self.min_severity = AlertSeverity.WARNING
        self._sent_timestamps: List[float] = []
        self._suppressed_until: Dict[str, float] = {}
        self.history: List[Alert] = []

    def _is_rate_limited(self) -> bool:
        now = time.time()
        window_start = now - self.config.rate_limit_window
        self._sent_timestamps = [ts for ts in self._sent_timestamps if ts > window_start]
        return len(self._sent_timestamps) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        until = self._suppressed_until.get(fingerprint)
        return until is not None and until > time.time()

    async def _post_webhook(self, alert: Alert) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self.config.webhook_url, json=alert.to_dict())
            return 200 <= response.status_code < 300
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Alert webhook delivery failed: {e}")
            return False

    async def send_alert(
        self,
        severity: AlertSeverity,
        component: str,
        message: str,
        category: str = "system_health",
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Record and deliver an alert

        Returns:
            bool: True if the alert passed filtering and was delivered
        """
        if not self.config.enabled:
            return False
        if _SEVERITY_RANK[severity] < _SEVERITY_RANK[self.min_severity]:
            return False

        alert = Alert(severity, _parse_category(category), component, message, details)

        if self._is_suppressed(alert.fingerprint):
            logger.debug(f"🔕 Alert suppressed (duplicate): {component} - {message}")
            return False
        if self._is_rate_limited():
            logger.warning(f"🔕 Alert rate limit reached, dropping: {component} - {message}")
            return False

        self._sent_timestamps.append(time.time())
        self._suppressed_until[alert.fingerprint] = time.time() + self.config.suppression_window
        self.history.append(alert)

        logger.log(
            _SEVERITY_LOG_LEVEL[severity],
            f"🚨 ALERT [{severity.value}] {alert.category.value}/{component}: {message} {details or ''}"
        )

        if self.config.webhook_url:
            await self._post_webhook(alert)
        return True


_alert_system: Optional[AdminAlertSystem] = None


def configure_admin_alerts(config: AlertConfig) -> AdminAlertSystem:
    """Install the process-wide alert system"""
    global _alert_system
    _alert_system = AdminAlertSystem(config)
    return _alert_system


def get_admin_alert_system() -> AdminAlertSystem:
    global _alert_system
    if _alert_system is None:
        _alert_system = AdminAlertSystem()
    return _alert_system


async def _send(severity: AlertSeverity, component: str, message: str, category: str,
                details: Optional[Dict[str, Any]]) -> bool:
    try:
        return await get_admin_alert_system().send_alert(severity, component, message, category, details)
    except Exception as e:
        logger.error(f"❌ Failed to send admin alert: {e}")
        return False


async def send_critical_alert(component: str, message: str, category: str = "system_health",
                              details: Optional[Dict[str, Any]] = None) -> bool:
    return await _send(AlertSeverity.CRITICAL, component, message, category, details)


async def send_error_alert(component: str, message: str, category: str = "system_health",
                           details: Optional[Dict[str, Any]] = None) -> bool:
    return await _send(AlertSeverity.ERROR, component, message, category, details)


async def send_warning_alert(component: str, message: str, category: str = "system_health",
                             details: Optional[Dict[str, Any]] = None) -> bool:
    return await _send(AlertSeverity.WARNING, component, message, category, details)
