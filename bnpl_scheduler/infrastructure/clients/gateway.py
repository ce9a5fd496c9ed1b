"""Payment gateway HTTP client for charging stored instruments"""

from typing import Any, Dict, Optional, Protocol

import httpx

from bnpl_scheduler.config import settings
from bnpl_scheduler.domain.exceptions import FatalGatewayError, GatewayError, RetryableGatewayError
from bnpl_scheduler.domain.models import ChargeReceipt
from bnpl_scheduler.domain.retry import FailureKind, classify_failure
from bnpl_scheduler.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram


class Gateway(Protocol):
    """Card-network gateway primitives the engine depends on"""

    async def charge_stored_instrument(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount_cents: int,
        metadata: Dict[str, Any],
    ) -> ChargeReceipt: ...

    async def create_reusable_instrument(self, customer_ref: str) -> str: ...

    async def refund_charge(self, charge_ref: str, amount_cents: Optional[int] = None) -> str: ...


def gateway_error(code: str, message: str) -> GatewayError:
    """Build the retryable or fatal error matching a gateway failure code"""
    if classify_failure(code) == FailureKind.RETRYABLE:
        gateway_failure_counter.labels(kind="retryable").inc()
        return RetryableGatewayError(message, code=code)
    gateway_failure_counter.labels(kind="fatal").inc()
    return FatalGatewayError(message, code=code)


class GatewayClient:
    """Client for the external payment gateway API"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.gateway_api_base
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST to the gateway and return the JSON body.

        Raises:
            RetryableGatewayError: On timeout, network errors, 429 and 5xx
            FatalGatewayError: On non-retryable 4xx responses
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.post(f"{self.base_url}{path}", json=payload)
                    response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                raise gateway_error("timeout", f"Gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429:
                    code = "rate_limited"
                elif status >= 500:
                    code = "gateway_unavailable"
                else:
                    code = self._error_code(e.response) or "invalid_request"
                raise gateway_error(code, f"Gateway error {status}: {code}") from e
            except httpx.RequestError as e:
                raise gateway_error("network_error", f"Gateway unreachable: {e}") from e
            except ValueError as e:
                raise gateway_error("processing_error", f"Invalid gateway response: {e}") from e

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            return response.json().get("error", {}).get("code")
        except (ValueError, AttributeError):
            return None

    async def charge_stored_instrument(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount_cents: int,
        metadata: Dict[str, Any],
    ) -> ChargeReceipt:
        """Charge a saved instrument off-session; non-succeeded charges raise"""
        data = await self._post(
            "charge",
            "/v1/charges",
            {
                "customer_ref": customer_ref,
                "instrument_ref": instrument_ref,
                "amount_cents": amount_cents,
                "currency": "usd",
                "metadata": metadata,
            },
        )

        try:
            receipt = ChargeReceipt(charge_ref=data["charge_ref"], status=data["status"])
        except (KeyError, TypeError) as e:
            raise gateway_error("processing_error", f"Invalid charge response: {e}") from e

        if receipt.status != "succeeded":
            code = data.get("failure_code") or "processing_error"
            raise gateway_error(code, f"Charge {receipt.charge_ref} {receipt.status}: {code}")
        return receipt

    async def create_reusable_instrument(self, customer_ref: str) -> str:
        """Provision an instrument that future installments can be charged against"""
        data = await self._post("create_instrument", "/v1/instruments", {"customer_ref": customer_ref})
        try:
            return data["instrument_ref"]
        except (KeyError, TypeError) as e:
            raise gateway_error("processing_error", f"Invalid instrument response: {e}") from e

    async def refund_charge(self, charge_ref: str, amount_cents: Optional[int] = None) -> str:
        payload: Dict[str, Any] = {"charge_ref": charge_ref}
        if amount_cents is not None:
            payload["amount_cents"] = amount_cents
        data = await self._post("refund", "/v1/refunds", payload)
        try:
            return data["refund_ref"]
        except (KeyError, TypeError) as e:
            raise gateway_error("processing_error", f"Invalid refund response: {e}") from e
