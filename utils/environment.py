"""Environment helpers for configuration parsing and deployment detection"""

import os
import logging
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def get_env_bool(name: str, default: bool = False) -> bool:
    """
    Read a boolean flag from the environment

    Args:
        name: Environment variable name
        default: Value used when the variable is unset or empty

    Returns:
        bool: Parsed flag
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in _TRUE_VALUES


def get_env_int(name: str, default: int) -> int:
    """Read an integer from the environment, falling back on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {raw!r}, using default {default}")
        return default


def get_env_decimal(name: str, default: Decimal) -> Decimal:
    """Read a decimal amount from the environment, falling back on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        logger.warning(f"⚠️ Invalid decimal for {name}: {raw!r}, using default {default}")
        return default


def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return (os.getenv('APP_ENV') or '').lower() == 'production'


def get_public_base_url() -> str:
    """
    Get the externally reachable base URL of this service

    Returns:
        str: Base URL without trailing slash
    """
    configured = os.getenv('PUBLIC_BASE_URL')
    if configured:
        return configured.rstrip('/')

    port = os.getenv('PORT', '5000')
    logger.warning(f"⚠️ PUBLIC_BASE_URL not set, using localhost fallback on port {port}")
    return f"http://localhost:{port}"


def get_webhook_url(endpoint: str = 'webhook') -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path under /v1 (e.g., 'webhook')

    Returns:
        str: Complete webhook URL
    """
    return f"{get_public_base_url()}/v1/{endpoint}"
