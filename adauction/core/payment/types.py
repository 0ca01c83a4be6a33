"""
Payment Types - x402 wire models.

Field names follow the x402 JSON format (camelCase aliases); Python code
uses the snake_case attribute names.
"""

import base64
import binascii
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from adauction.core.errors import PaymentPayloadError


X402_VERSION = 1


class X402Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequirements(X402Model):
    """What payment the server accepts for a resource."""
    scheme: str = "exact"
    network: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    min_amount_required: Optional[str] = Field(default=None, alias="minAmountRequired")
    resource: str
    description: str = ""
    mime_type: str = Field(default="application/json", alias="mimeType")
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(default=60, alias="maxTimeoutSeconds")
    asset: str
    extra: Optional[Dict[str, Any]] = None

    @property
    def required_amount(self) -> int:
        return int(self.max_amount_required)


class Authorization(X402Model):
    """Transfer authorization signed by the payer."""
    from_address: str = Field(alias="from")
    to: str
    value: str
    valid_after: str = Field(alias="validAfter")
    valid_before: str = Field(alias="validBefore")
    nonce: str


class ExactPayload(X402Model):
    signature: str
    authorization: Authorization


class PaymentPayload(X402Model):
    """Decoded X-PAYMENT header."""
    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    scheme: str = "exact"
    network: str
    payload: ExactPayload

    @property
    def authorized_value(self) -> int:
        """Amount the payer authorized, in atomic units."""
        return int(self.payload.authorization.value)


class VerifyResult(X402Model):
    is_valid: bool = Field(alias="isValid")
    payer: Optional[str] = None
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")


class SettleResult(X402Model):
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = Field(default=None, alias="errorReason")


def decode_payment_header(header: str) -> PaymentPayload:
    """
    Decode a base64 JSON X-PAYMENT header.

    Raises:
        PaymentPayloadError: If the header is not a valid payment payload
    """
    try:
        raw = base64.b64decode(header, validate=True)
        payment = PaymentPayload.model_validate(json.loads(raw))
        if payment.authorized_value <= 0:
            raise ValueError("authorization value must be positive")
    except (binascii.Error, ValueError, ValidationError) as e:
        raise PaymentPayloadError(f"invalid_payload: {e}") from e
    return payment


def encode_payment_header(payment: PaymentPayload) -> str:
    return base64.b64encode(json.dumps(payment.to_wire()).encode()).decode()


def encode_receipt(result: SettleResult) -> str:
    """X-PAYMENT-RESPONSE header value."""
    return base64.b64encode(json.dumps(result.to_wire()).encode()).decode()
