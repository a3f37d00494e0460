"""Razorpay adapter: order creation, payment lookups and signature checks."""
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config import Settings

logger = logging.getLogger(__name__)

CAPTURED_STATUSES = ("captured", "authorized")


class GatewayError(Exception):
    """The gateway could not be reached or refused the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayCredentials(BaseModel):
    """Key pair used for API calls and verify-signature checks."""
    key_id: str
    key_secret: str


def to_minor_units(amount: float) -> int:
    """Convert rupees to paise."""
    return int(round(amount * 100))


def resolve_credentials(event, settings: Settings) -> Optional[GatewayCredentials]:
    """
    Pick the event's own key pair when both halves are set, else the platform default.

    Returns None when neither is configured.
    """
    if event is not None and event.razorpay_key_id and event.razorpay_key_secret:
        return GatewayCredentials(key_id=event.razorpay_key_id, key_secret=event.razorpay_key_secret)
    if settings.razorpay_key_id and settings.razorpay_key_secret:
        return GatewayCredentials(key_id=settings.razorpay_key_id, key_secret=settings.razorpay_key_secret)
    return None


def resolve_webhook_secret(event, settings: Settings) -> Optional[str]:
    """Event webhook secret, else the platform default, else None."""
    if event is not None and event.razorpay_webhook_secret:
        return event.razorpay_webhook_secret
    return settings.razorpay_webhook_secret or None


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _safe_equals(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode(), received.encode())


def verify_payment_signature(
    order_id: str,
    payment_id: str,
    signature: str,
    secret: Optional[str]
) -> bool:
    """
    Check the checkout signature: HMAC-SHA256 hex of "order_id|payment_id".

    Never raises; any missing part is a mismatch.
    """
    if not (order_id and payment_id and signature and secret):
        return False
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode())
    return _safe_equals(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a webhook signature: HMAC-SHA256 hex of the raw request body."""
    if not (signature and secret):
        return False
    return _safe_equals(_hmac_hex(secret, raw_body), signature)


class RazorpayGateway:
    """Thin async client for the Razorpay REST API."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the gateway client.

        Args:
            settings: Supplies the API URL, timeout and default credentials
            client: Optional preconfigured client (tests pass one with a MockTransport)
        """
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.razorpay_api_url,
            timeout=settings.gateway_timeout_seconds,
        )

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _auth(self, credentials: Optional[GatewayCredentials]) -> tuple[str, str]:
        credentials = credentials or resolve_credentials(None, self.settings)
        if credentials is None:
            raise GatewayError("Payment gateway credentials are not configured")
        return credentials.key_id, credentials.key_secret

    @staticmethod
    def _parse(response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            description = response.text
            try:
                description = response.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            raise GatewayError(
                f"Gateway returned {response.status_code}: {description}",
                status_code=response.status_code,
            )
        return response.json()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, path: str, auth: tuple[str, str]) -> httpx.Response:
        return await self._client.get(path, auth=auth)

    async def _read(self, path: str, credentials: Optional[GatewayCredentials]) -> Dict[str, Any]:
        auth = self._auth(credentials)
        try:
            response = await self._get(path, auth)
        except httpx.TransportError as e:
            raise GatewayError(f"Gateway unreachable: {str(e)}") from e
        return self._parse(response)

    async def create_order(
        self,
        amount: float,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
        credentials: Optional[GatewayCredentials] = None
    ) -> Dict[str, Any]:
        """
        Create a gateway order.

        Args:
            amount: Amount in rupees, sent to the gateway in paise
            currency: ISO currency code
            receipt: Our reference, the payment number
            notes: Free-form key/values echoed back in webhooks
            credentials: Event credentials; defaults to the platform pair

        Returns:
            The gateway order, including its "id"
        """
        auth = self._auth(credentials)
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        # Not retried: a timed-out create may still have created the order
        try:
            response = await self._client.post("/orders", json=payload, auth=auth)
        except httpx.TransportError as e:
            raise GatewayError(f"Gateway unreachable: {str(e)}") from e
        order = self._parse(response)
        logger.info(f"Created gateway order {order.get('id')} for receipt {receipt}")
        return order

    async def fetch_payment(
        self,
        payment_id: str,
        credentials: Optional[GatewayCredentials] = None
    ) -> Dict[str, Any]:
        """Fetch one gateway payment by its id."""
        return await self._read(f"/payments/{payment_id}", credentials)

    async def fetch_order_payments(
        self,
        order_id: str,
        credentials: Optional[GatewayCredentials] = None
    ) -> List[Dict[str, Any]]:
        """List the payments attempted against a gateway order."""
        data = await self._read(f"/orders/{order_id}/payments", credentials)
        return data.get("items", [])
