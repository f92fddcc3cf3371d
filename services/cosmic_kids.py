"""
Cosmic Kids Club integration - account provisioning and add-on credits
"""

import logging
import secrets
import string
import httpx
from dataclasses import dataclass
from typing import Dict, Any, Optional

from app_config import CosmicKidsConfig

logger = logging.getLogger(__name__)

EXISTING_ACCOUNT_PASSWORD_NOTE = (
    "Use your old password. If you have forgotten your password, "
    "you can change it in the application."
)

_PASSWORD_ALPHABET = string.ascii_lowercase + string.digits


class ProvisioningError(Exception):
    """Remote account provisioning call failed"""
    pass


@dataclass
class AccountLookup:
    registered: bool
    external_id: Optional[str] = None


@dataclass
class ProvisionResult:
    """Outcome of ensure_account"""
    external_id: Optional[str]
    created: bool
    password_message: str


def generate_password(length: int = 16) -> str:
    """Random one-time password for a freshly created account"""
    return ''.join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def _json_body(response: httpx.Response, action: str) -> Any:
    """Decode a 2xx response body; an unparseable body is a remote failure"""
    try:
        return response.json()
    except ValueError as e:
        logger.error(f"❌ COSMIC KIDS: {action} returned a non-JSON body: {response.text[:200]}")
        raise ProvisioningError(f"{action}: invalid response body") from e


class CosmicKidsService:
    """REST client for the Cosmic Kids Club user and add-on APIs"""

    def __init__(self, config: CosmicKidsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {'accept': 'application/json'}
        return httpx.AsyncClient(
            base_url=self.config.api_base.rstrip('/'),
            headers=headers,
            timeout=self.config.timeout,
            transport=self._transport
        )

    async def find_by_email(self, email: str) -> AccountLookup:
        """
        Check whether an email already has an account

        Not found is a normal outcome; only remote failures raise.

        Raises:
            ProvisioningError: On transport errors or non-2xx responses
        """
        if not email:
            raise ProvisioningError("Email is required")

        params = {'filters[email][$eq]': email, 'fields[0]': 'id'}
        try:
            async with self._client() as client:
                response = await client.get('/users', params=params)
        except httpx.HTTPError as e:
            logger.error(f"❌ COSMIC KIDS: Lookup transport error for {email}: {e}")
            raise ProvisioningError(f"Failed to check email registration status: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ COSMIC KIDS: Lookup failed for {email}: {response.status_code} - {response.text}")
            raise ProvisioningError(f"Failed to check email registration status: HTTP {response.status_code}")

        users = _json_body(response, "Failed to check email registration status")
        if isinstance(users, list) and users and isinstance(users[0], dict) and users[0].get('id') is not None:
            return AccountLookup(registered=True, external_id=str(users[0]['id']))
        return AccountLookup(registered=False)

    async def create(self, username: str, email: str, password: str) -> Optional[str]:
        """
        Register a new account

        The id in the response is informational; callers re-run find_by_email
        to obtain the authoritative external id.

        Raises:
            ProvisioningError: On transport errors or non-2xx responses
        """
        if not username or not email or not password:
            raise ProvisioningError("Username, email, and password are required")

        payload = {'username': username, 'email': email, 'password': password}
        try:
            async with self._client() as client:
                response = await client.post('/auth/local/register', json=payload)
        except httpx.HTTPError as e:
            logger.error(f"❌ COSMIC KIDS: Account creation transport error for {email}: {e}")
            raise ProvisioningError(f"Failed to create account: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"❌ COSMIC KIDS: Account creation failed for {email}: {response.status_code} - {response.text}")
            raise ProvisioningError(f"Failed to create account: HTTP {response.status_code}")

        result = _json_body(response, "Failed to create account")
        user = result.get('user') if isinstance(result, dict) else None
        created_id = user.get('id') if isinstance(user, dict) else None
        logger.info(f"✅ COSMIC KIDS: Account created for {email}")
        return str(created_id) if created_id is not None else None

    async def ensure_account(self, email: str) -> ProvisionResult:
        """
        Look up the account for an email and create it when absent.

        An existing account short-circuits to "already registered". After a
        create, the lookup is repeated to read back the external id.
        """
        lookup = await self.find_by_email(email)
        if lookup.registered:
            logger.info(f"👤 COSMIC KIDS: {email} already registered (id {lookup.external_id})")
            return ProvisionResult(
                external_id=lookup.external_id,
                created=False,
                password_message=EXISTING_ACCOUNT_PASSWORD_NOTE
            )

        password = generate_password()
        await self.create(username=email, email=email, password=password)

        recheck = await self.find_by_email(email)
        if not recheck.registered:
            logger.warning(f"⚠️ COSMIC KIDS: Account for {email} not visible yet after creation")
        return ProvisionResult(external_id=recheck.external_id, created=True, password_message=password)

    async def grant_credits(self, external_id: str, tier: str, amount_paid: float, credits: int) -> Dict[str, Any]:
        """
        Submit an add-on credit grant

        Raises:
            ProvisioningError: On missing input, transport errors or non-2xx responses
        """
        if not external_id or not tier or not credits:
            raise ProvisioningError("User id, add-on type and credits are required")

        payload = {
            'userId': int(external_id) if str(external_id).isdigit() else external_id,
            'addons': {
                'type': tier,
                'amount': amount_paid,
                'credits': credits
            }
        }
        headers = {'content-type': 'application/json'}
        if self.config.api_token:
            headers['Authorization'] = f"Bearer {self.config.api_token}"

        try:
            async with self._client() as client:
                response = await client.post('/v1/user/addons', json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"❌ COSMIC KIDS: Add-on grant transport error for user {external_id}: {e}")
            raise ProvisioningError(f"Failed to add user addons: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"❌ COSMIC KIDS: Add-on grant failed for user {external_id}: "
                         f"{response.status_code} - {response.text}")
            raise ProvisioningError(f"Failed to add user addons: HTTP {response.status_code}")

        logger.info(f"✅ COSMIC KIDS: Granted {credits} credits ({tier}) to user {external_id}")
        return _json_body(response, "Failed to add user addons") if response.content else {}
