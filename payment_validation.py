"""
Payment validation utilities for registration payments
Input validation, integrity checks and the matching error types
"""

import logging
from typing import Dict, Any, Iterable, List

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Missing or malformed input; rejected before any side effect"""
    pass


class SignatureError(Exception):
    """Payment signature or webhook authentication failure"""
    pass


class AmountMismatchError(Exception):
    """Captured amount differs from the amount derived from the registration"""

    def __init__(self, expected: int, received: int, registration_id: Any = None):
        self.expected = expected
        self.received = received
        self.registration_id = registration_id
        super().__init__(
            f"Amount mismatch for registration {registration_id}: expected {expected}, received {received}"
        )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


def find_missing_fields(data: Dict[str, Any], required_fields: Iterable[str]) -> List[str]:
    """
    List required fields that are absent or empty

    Args:
        data: Input mapping
        required_fields: Field names that must carry a non-empty value

    Returns:
        List[str]: Missing field names in the order they were required
    """
    return [name for name in required_fields if _is_blank(data.get(name))]


def validate_required_fields(data: Dict[str, Any], required_fields: Iterable[str]) -> None:
    """
    Raise ValidationError if any required field is missing

    Args:
        data: Input mapping
        required_fields: Field names that must carry a non-empty value
    """
    if not isinstance(data, dict):
        raise ValidationError("Missing data in request body")

    missing = find_missing_fields(data, required_fields)
    if missing:
        logger.warning(f"Missing required fields: {', '.join(missing)}")
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def validate_email(email: Any) -> str:
    """Normalise an email address and reject obviously malformed values"""
    if _is_blank(email):
        raise ValidationError("Email is required")
    normalized = str(email).strip().lower()
    local, _, domain = normalized.partition('@')
    if not local or '.' not in domain or ' ' in normalized:
        raise ValidationError(f"Invalid email address: {email}")
    return normalized


def validate_order_amount(expected: int, received: int, registration_id: Any = None) -> None:
    """
    Exact integrity check of a captured amount in minor units

    Args:
        expected: Amount re-derived from the stored registration
        received: Amount reported by the payment provider
        registration_id: Registration the amounts belong to (for the error)
    """
    try:
        expected_minor = int(expected)
        received_minor = int(received)
    except (TypeError, ValueError):
        raise AmountMismatchError(expected, received, registration_id)

    if expected_minor <= 0 or expected_minor != received_minor:
        raise AmountMismatchError(expected_minor, received_minor, registration_id)
