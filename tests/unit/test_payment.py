"""
Unit tests for the payment layer.

Tests cover:
1. X-PAYMENT header decoding
2. Local facilitator verify/settle checks
3. Remote facilitator HTTP adapter
"""

import base64
import json

import httpx
import pytest

from adauction.core.errors import PaymentPayloadError
from adauction.core.payment import (
    HttpFacilitator,
    Ledger,
    LocalFacilitator,
    PaymentRequirements,
    decode_payment_header,
    encode_payment_header,
    sign_authorization,
)
from adauction.core.pricing import USDC_UNIT
from adauction.crypto import generate_keypair

NETWORK = "base-sepolia"
ASSET = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


@pytest.fixture
def payer():
    return generate_keypair()


@pytest.fixture
def server():
    return generate_keypair()


@pytest.fixture
def ledger(payer):
    ledger = Ledger()
    ledger.mint(payer.address, 10 * USDC_UNIT)
    return ledger


def requirements(pay_to: str, amount: int) -> PaymentRequirements:
    return PaymentRequirements(
        network=NETWORK,
        max_amount_required=str(amount),
        resource="http://test/bid/slot",
        pay_to=pay_to,
        asset=ASSET,
    )


# =============================================================================
# Header Codec
# =============================================================================


class TestPaymentHeader:
    """Tests for X-PAYMENT decoding."""

    def test_decode_signed_payload(self, payer, server):
        """A signed payload survives the base64 JSON header."""
        payment = sign_authorization(payer, server.address, 2 * USDC_UNIT, NETWORK, ASSET)
        decoded = decode_payment_header(encode_payment_header(payment))

        assert decoded.authorized_value == 2 * USDC_UNIT
        assert decoded.payload.authorization.from_address == payer.address

    def test_wire_format_uses_x402_names(self, payer, server):
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        wire = json.loads(base64.b64decode(encode_payment_header(payment)))

        assert wire["x402Version"] == 1
        assert wire["payload"]["authorization"]["from"] == payer.address
        assert "validBefore" in wire["payload"]["authorization"]

    @pytest.mark.parametrize("header", [
        "not base64!!",
        base64.b64encode(b"not json").decode(),
        base64.b64encode(json.dumps({"scheme": "exact"}).encode()).decode(),
    ])
    def test_undecodable_headers(self, header):
        with pytest.raises(PaymentPayloadError):
            decode_payment_header(header)

    def test_zero_value_rejected(self, payer, server):
        payment = sign_authorization(payer, server.address, 0, NETWORK, ASSET)
        with pytest.raises(PaymentPayloadError):
            decode_payment_header(encode_payment_header(payment))


# =============================================================================
# Local Facilitator
# =============================================================================


class TestLocalFacilitator:
    """Tests for in-process verify/settle."""

    @pytest.mark.asyncio
    async def test_verify_and_settle(self, ledger, payer, server):
        """A valid authorization verifies, then moves the funds."""
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, 2 * USDC_UNIT, NETWORK, ASSET)
        reqs = requirements(server.address, 2 * USDC_UNIT)

        verified = await facilitator.verify(payment, reqs)
        assert verified.is_valid
        assert verified.payer == payer.address

        settled = await facilitator.settle(payment, reqs)
        assert settled.success
        assert settled.transaction.startswith("0x")
        assert ledger.balance_of(payer.address) == 8 * USDC_UNIT
        assert ledger.balance_of(server.address) == 2 * USDC_UNIT

    @pytest.mark.asyncio
    async def test_value_above_requirement_accepted(self, ledger, payer, server):
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, 3 * USDC_UNIT, NETWORK, ASSET)
        result = await facilitator.verify(payment, requirements(server.address, 2 * USDC_UNIT))
        assert result.is_valid

    @pytest.mark.asyncio
    async def test_insufficient_value(self, ledger, payer, server):
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        result = await facilitator.verify(payment, requirements(server.address, 2 * USDC_UNIT))
        assert result.invalid_reason == "insufficient_value"

    @pytest.mark.asyncio
    async def test_wrong_recipient(self, ledger, payer, server):
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, generate_keypair().address, USDC_UNIT, NETWORK, ASSET)
        result = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))
        assert result.invalid_reason == "invalid_recipient"

    @pytest.mark.asyncio
    async def test_wrong_network(self, ledger, payer, server):
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, USDC_UNIT, "base", ASSET)
        result = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))
        assert result.invalid_reason == "invalid_network"

    @pytest.mark.asyncio
    async def test_tampered_value_breaks_signature(self, ledger, payer, server):
        """Raising the value after signing invalidates the signature."""
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        payment.payload.authorization.value = str(5 * USDC_UNIT)

        result = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))
        assert result.invalid_reason == "invalid_signature"

    @pytest.mark.asyncio
    async def test_expired_authorization(self, ledger, payer, server):
        facilitator = LocalFacilitator(ledger, clock=lambda: 10_000.0)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET, valid_for=60, now=1_000.0)
        result = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))
        assert result.invalid_reason == "authorization_expired"

    @pytest.mark.asyncio
    async def test_nonce_cannot_settle_twice(self, ledger, payer, server):
        """Replaying a settled authorization is rejected."""
        facilitator = LocalFacilitator(ledger)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        reqs = requirements(server.address, USDC_UNIT)

        assert (await facilitator.settle(payment, reqs)).success
        replay = await facilitator.settle(payment, reqs)

        assert not replay.success
        assert replay.error_reason == "nonce_already_used"
        assert ledger.balance_of(payer.address) == 9 * USDC_UNIT

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, payer, server):
        facilitator = LocalFacilitator(Ledger())
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        result = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))
        assert result.invalid_reason == "insufficient_funds"


# =============================================================================
# Remote Facilitator
# =============================================================================


class TestHttpFacilitator:
    """Tests for the x402 HTTP adapter."""

    @pytest.mark.asyncio
    async def test_verify_and_settle_bodies(self, payer, server):
        """Requests carry the x402 body; responses parse into results."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append((request.url.path, body))
            if request.url.path == "/verify":
                return httpx.Response(200, json={"isValid": True, "payer": payer.address})
            return httpx.Response(200, json={"success": True, "transaction": "0xabc", "network": NETWORK})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        facilitator = HttpFacilitator("http://facilitator/", client=client)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        reqs = requirements(server.address, USDC_UNIT)

        verified = await facilitator.verify(payment, reqs)
        settled = await facilitator.settle(payment, reqs)
        await facilitator.close()

        assert verified.is_valid and verified.payer == payer.address
        assert settled.success and settled.transaction == "0xabc"
        assert [path for path, _ in seen] == ["/verify", "/settle"]
        assert seen[0][1]["x402Version"] == 1
        assert seen[0][1]["paymentRequirements"]["payTo"] == server.address
        assert seen[0][1]["paymentPayload"]["payload"]["authorization"]["value"] == str(USDC_UNIT)

    @pytest.mark.asyncio
    async def test_transport_errors_become_failures(self, payer, server):
        """Facilitator outages are failed results, not exceptions."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="down")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        facilitator = HttpFacilitator("http://facilitator", client=client)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        reqs = requirements(server.address, USDC_UNIT)

        verified = await facilitator.verify(payment, reqs)
        settled = await facilitator.settle(payment, reqs)

        assert not verified.is_valid
        assert verified.invalid_reason.startswith("facilitator_unavailable")
        assert not settled.success

    @pytest.mark.asyncio
    async def test_client_error_keeps_reason(self, payer, server):
        """A 400 with a verify/settle body passes its reason through."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/verify":
                return httpx.Response(400, json={"isValid": False, "invalidReason": "invalid_signature"})
            return httpx.Response(400, json={"success": False, "errorReason": "insufficient_funds"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        facilitator = HttpFacilitator("http://facilitator", client=client)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)
        reqs = requirements(server.address, USDC_UNIT)

        verified = await facilitator.verify(payment, reqs)
        settled = await facilitator.settle(payment, reqs)

        assert not verified.is_valid
        assert verified.invalid_reason == "invalid_signature"
        assert not settled.success
        assert settled.error_reason == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_client_error_without_body(self, payer, server):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(404, text="not found"))
        )
        facilitator = HttpFacilitator("http://facilitator", client=client)
        payment = sign_authorization(payer, server.address, USDC_UNIT, NETWORK, ASSET)

        verified = await facilitator.verify(payment, requirements(server.address, USDC_UNIT))

        assert verified.invalid_reason.startswith("facilitator_unavailable")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
