"""
Facilitator - Verify/settle contract for payment proofs.

The facilitator is a trusted external service: it checks that a signed
payment authorization satisfies the stated requirements, and settles it
into an irreversible on-chain transfer. The server only orchestrates.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from adauction.core.payment.types import (
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    VerifyResult,
)
from adauction.utils.logger import get_logger

logger = get_logger("facilitator")


class Facilitator(ABC):
    """Payment verification and settlement service."""

    @abstractmethod
    async def verify(
        self,
        payment: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> VerifyResult:
        """
        Check the payment against the requirements without moving funds.

        Returns:
            VerifyResult with the payer address when valid
        """

    @abstractmethod
    async def settle(
        self,
        payment: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> SettleResult:
        """
        Execute the transfer.

        Returns:
            SettleResult with the transaction reference on success
        """


class HttpFacilitator(Facilitator):
    """
    Remote facilitator speaking the x402 HTTP API.

    POST {url}/verify and POST {url}/settle with
    {"x402Version", "paymentPayload", "paymentRequirements"}.
    Transport errors are reported as failed results, never raised.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        logger.info(f"Using facilitator at {self.url}")

    def _body(self, payment: PaymentPayload, requirements: PaymentRequirements) -> dict:
        return {
            "x402Version": X402_VERSION,
            "paymentPayload": payment.to_wire(),
            "paymentRequirements": requirements.to_wire(),
        }

    @staticmethod
    def _client_error(response: httpx.Response, model, reason_field: str):
        """
        Structured rejection from a 4xx body, or None.

        Facilitators answer invalid payments with 400 and a verify/settle
        body; its reason is passed through instead of the HTTP status line.
        """
        if not 400 <= response.status_code < 500:
            return None
        try:
            result = model.model_validate(response.json())
        except ValueError:
            return None
        if getattr(result, reason_field) is None:
            return None
        return result

    async def verify(self, payment: PaymentPayload, requirements: PaymentRequirements) -> VerifyResult:
        try:
            response = await self._client.post(f"{self.url}/verify", json=self._body(payment, requirements))
            rejected = self._client_error(response, VerifyResult, "invalid_reason")
            if rejected is not None:
                return rejected
            response.raise_for_status()
            return VerifyResult.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Facilitator verify call failed: {e}")
            return VerifyResult(is_valid=False, invalid_reason=f"facilitator_unavailable: {e}")

    async def settle(self, payment: PaymentPayload, requirements: PaymentRequirements) -> SettleResult:
        try:
            response = await self._client.post(f"{self.url}/settle", json=self._body(payment, requirements))
            rejected = self._client_error(response, SettleResult, "error_reason")
            if rejected is not None:
                return rejected
            response.raise_for_status()
            return SettleResult.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Facilitator settle call failed: {e}")
            return SettleResult(success=False, error_reason=f"facilitator_unavailable: {e}")

    async def close(self) -> None:
        await self._client.aclose()
