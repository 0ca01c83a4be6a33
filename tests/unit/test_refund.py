"""
Unit tests for the refund issuer and wallet transports.
"""

import asyncio
import json
from collections import deque

import httpx
import pytest

from adauction.core.errors import TransferFailed
from adauction.core.payment import HttpWalletTransport, Ledger, LedgerWallet, RefundIssuer
from adauction.core.pricing import USDC_UNIT
from adauction.crypto import generate_keypair


@pytest.fixture
def custody():
    return generate_keypair().address


@pytest.fixture
def ledger(custody):
    ledger = Ledger()
    ledger.mint(custody, 10 * USDC_UNIT)
    return ledger


class TestRefundIssuer:
    """Tests for refunds with one fixed-delay retry."""

    @pytest.mark.asyncio
    async def test_successful_refund(self, ledger, custody):
        """A refund moves funds back to the payout address."""
        payee = generate_keypair().address
        issuer = RefundIssuer(LedgerWallet(ledger, custody), retry_delay=0)

        tx_ref = await issuer.refund(payee, 2 * USDC_UNIT)

        assert tx_ref.startswith("0x")
        assert ledger.balance_of(payee) == 2 * USDC_UNIT
        assert len(issuer.failed) == 0

    @pytest.mark.asyncio
    async def test_single_failure_is_retried(self, ledger, custody, flaky_wallet):
        """The retry succeeds after one failed attempt."""
        payee = generate_keypair().address
        wallet = flaky_wallet(LedgerWallet(ledger, custody), failures=1)
        issuer = RefundIssuer(wallet, retry_delay=0)

        await issuer.refund(payee, USDC_UNIT)

        assert wallet.calls == 2
        assert ledger.balance_of(payee) == USDC_UNIT

    @pytest.mark.asyncio
    async def test_double_failure_no_third_attempt(self, ledger, custody, flaky_wallet):
        """Primary and retry both fail: TransferFailed, exactly two attempts."""
        payee = generate_keypair().address
        wallet = flaky_wallet(LedgerWallet(ledger, custody), failures=5)
        issuer = RefundIssuer(wallet, retry_delay=0)

        with pytest.raises(TransferFailed):
            await issuer.refund(payee, USDC_UNIT)

        assert wallet.calls == 2
        assert ledger.balance_of(payee) == 0
        assert len(issuer.failed) == 1
        assert issuer.failed[0].amount == USDC_UNIT

    @pytest.mark.asyncio
    async def test_failure_log_is_bounded(self, custody):
        """Only the most recent failures are kept in memory."""
        issuer = RefundIssuer(LedgerWallet(Ledger(), custody), retry_delay=0)
        issuer.failed = deque(maxlen=3)
        amounts = [USDC_UNIT * n for n in range(1, 6)]

        for amount in amounts:
            with pytest.raises(TransferFailed):
                await issuer.refund(generate_keypair().address, amount)

        assert [f.amount for f in issuer.failed] == amounts[-3:]

    def test_default_failure_cap(self, ledger, custody):
        issuer = RefundIssuer(LedgerWallet(ledger, custody))
        assert issuer.failed.maxlen == RefundIssuer.MAX_FAILED_KEPT

    @pytest.mark.asyncio
    async def test_insufficient_custody_balance_fails(self, custody):
        issuer = RefundIssuer(LedgerWallet(Ledger(), custody), retry_delay=0)
        with pytest.raises(TransferFailed):
            await issuer.refund(generate_keypair().address, USDC_UNIT)

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, ledger, custody):
        issuer = RefundIssuer(LedgerWallet(ledger, custody), retry_delay=0)
        with pytest.raises(ValueError):
            await issuer.refund(generate_keypair().address, 0)

    @pytest.mark.asyncio
    async def test_transfers_hold_the_shared_lock(self, ledger, custody):
        """No transfer starts while the settlement lock is held elsewhere."""
        lock = asyncio.Lock()
        issuer = RefundIssuer(LedgerWallet(ledger, custody), lock=lock, retry_delay=0)
        payee = generate_keypair().address

        await lock.acquire()
        task = asyncio.create_task(issuer.refund(payee, USDC_UNIT))
        await asyncio.sleep(0.01)
        assert ledger.balance_of(payee) == 0

        lock.release()
        await task
        assert ledger.balance_of(payee) == USDC_UNIT


class TestHttpWalletTransport:
    """Tests for the remote custodial wallet client."""

    @pytest.mark.asyncio
    async def test_transfer_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"transaction": "0xfeed"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        wallet = HttpWalletTransport("http://wallet", client=client)

        assert await wallet.transfer("0x" + "b" * 40, 1_500_000) == "0xfeed"
        assert seen == [{"to": "0x" + "b" * 40, "amount": "1500000"}]
        await wallet.close()

    @pytest.mark.asyncio
    async def test_service_error_raises_transfer_failed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        wallet = HttpWalletTransport("http://wallet", client=client)

        with pytest.raises(TransferFailed):
            await wallet.transfer("0x" + "b" * 40, USDC_UNIT)

    @pytest.mark.asyncio
    async def test_missing_transaction_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        wallet = HttpWalletTransport("http://wallet", client=client)

        with pytest.raises(TransferFailed):
            await wallet.transfer("0x" + "b" * 40, USDC_UNIT)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
