"""
Paystack client used for the external leg of an escrow payment.

Only two calls are needed: initialize a checkout session for a payment
reference, and verify what happened to it. Every call goes through the shared
circuit breaker when one is configured.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime

import httpx
from dateutil import parser

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import Settings
from .errors import GatewayError

logger = logging.getLogger(__name__)

GATEWAY_SUCCESS = "success"

# verify() statuses that end an attempt unsuccessfully
FAILED_STATUSES = {"failed", "abandoned", "reversed"}


@dataclass(frozen=True)
class GatewaySession:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayVerification:
    reference: str
    status: str
    paid_at: datetime | None = None


def is_trusted_redirect(url: str | None, pattern: str) -> bool:
    if not url or not isinstance(url, str):
        return False
    return re.fullmatch(pattern, url) is not None


class PaystackGateway:
    def __init__(
        self,
        settings: Settings,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = settings.gateway_base_url.rstrip("/")
        self.secret_key = settings.gateway_secret_key
        self.callback_url = settings.gateway_callback_url
        self.subunit = settings.currency_subunit
        self.timeout = settings.gateway_timeout
        self.breaker = breaker
        self._transport = transport

    def _headers(self) -> dict:
        if not self.secret_key:
            raise GatewayError("Payment gateway secret key is not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        headers = self._headers()
        url = f"{self.base_url}{path}"

        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise GatewayError(str(e))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method=method, url=url, json=payload, headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException:
            await self._record_failure()
            raise GatewayError(f"Timeout calling payment gateway: {path}")
        except httpx.HTTPStatusError as e:
            await self._record_failure()
            raise GatewayError(
                f"Payment gateway responded {e.response.status_code} for {path}: {e.response.text}"
            )
        except (httpx.HTTPError, ValueError) as e:
            await self._record_failure()
            raise GatewayError(f"Bad response from payment gateway for {path}: {e}")

        if self.breaker:
            await self.breaker.record_success()

        if not isinstance(body, dict) or body.get("status") is not True:
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayError(f"Payment gateway rejected {path}: {message or 'no message'}")

        data = body.get("data")
        if not isinstance(data, dict):
            raise GatewayError(f"Payment gateway returned no data for {path}")
        return data

    async def _record_failure(self):
        if self.breaker:
            await self.breaker.record_failure()

    async def create_session(
        self,
        amount: int,
        currency: str,
        customer_email: str,
        reference: str,
    ) -> GatewaySession:
        payload = {
            "email": customer_email,
            "amount": amount * self.subunit,
            "currency": currency,
            "reference": reference,
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        data = await self._call("POST", "/transaction/initialize", payload)

        redirect_url = data.get("authorization_url")
        session_id = data.get("access_code") or data.get("reference")
        if not redirect_url or not session_id:
            raise GatewayError("Payment gateway response is missing authorization_url or access_code")

        logger.info("gateway session created reference=%s", reference)
        return GatewaySession(session_id=str(session_id), redirect_url=str(redirect_url))

    async def verify(self, reference: str) -> GatewayVerification:
        data = await self._call("GET", f"/transaction/verify/{reference}")

        status = str(data.get("status") or "").lower()
        paid_at = None
        if data.get("paid_at"):
            try:
                paid_at = parser.isoparse(data["paid_at"])
            except (TypeError, ValueError):
                paid_at = None

        return GatewayVerification(reference=reference, status=status, paid_at=paid_at)
