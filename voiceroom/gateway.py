"""Razorpay gateway client: order creation and payment signature checks."""

import hashlib
import hmac
import logging
from typing import Optional

import httpx

from .errors import EconomyError, ErrorCode

logger = logging.getLogger(__name__)


class RazorpayClient:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self._key_secret)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                auth=(self.key_id, self._key_secret),
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def create_order(self, amount_paise: int, receipt: str, notes: dict) -> str:
        """Create an INR order and return its gateway id. Fails closed on any error."""
        if not self.configured:
            raise EconomyError(ErrorCode.PAYMENTS_NOT_CONFIGURED)

        try:
            response = await self._get_client().post(
                "/orders",
                json={
                    "amount": amount_paise,
                    "currency": "INR",
                    "receipt": receipt,
                    "notes": notes,
                },
            )
        except httpx.TimeoutException as e:
            logger.error(f"Razorpay order creation timed out: {e}")
            raise EconomyError(ErrorCode.GATEWAY_UNAVAILABLE) from e
        except httpx.RequestError as e:
            logger.error(f"Razorpay request failed: {e}")
            raise EconomyError(ErrorCode.GATEWAY_UNAVAILABLE) from e

        if response.status_code != 200:
            logger.error(f"Razorpay order creation returned {response.status_code}: {response.text[:200]}")
            raise EconomyError(ErrorCode.GATEWAY_UNAVAILABLE)

        order_id = response.json().get("id")
        if not order_id:
            logger.error("Razorpay order response had no id")
            raise EconomyError(ErrorCode.GATEWAY_UNAVAILABLE)
        return order_id

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        message = f"{payment_id}|{order_id}".encode()
        return hmac.new(self._key_secret.encode(), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> None:
        if not self.configured:
            raise EconomyError(ErrorCode.PAYMENTS_NOT_CONFIGURED)
        expected = self.expected_signature(order_id, payment_id).encode()
        if not hmac.compare_digest(expected, signature.encode("utf-8", "surrogatepass")):
            raise EconomyError(ErrorCode.INVALID_SIGNATURE)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
