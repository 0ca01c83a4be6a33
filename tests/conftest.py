"""
Shared fixtures: a local ledger with funded agent wallets, a recording
notifier and a fully wired auction service with all delays set to zero.
"""

import pytest

from adauction.core.auction.events import RecordingNotifier
from adauction.core.config import AuctionConfig
from adauction.core.errors import TransferFailed
from adauction.core.payment.local import Ledger, sign_authorization
from adauction.core.payment.refund import WalletTransport
from adauction.core.payment.types import encode_payment_header
from adauction.core.pricing import USDC_UNIT
from adauction.core.service import build_service
from adauction.crypto import generate_keypair


SERVER = generate_keypair()
AGENTS = {name: generate_keypair() for name in ("agent-a", "agent-b", "agent-c")}


class FlakyWallet(WalletTransport):
    """Wallet that fails its first `failures` transfers, then delegates."""

    def __init__(self, inner: WalletTransport, failures: int):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def transfer(self, to_address: str, amount: int) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransferFailed(f"simulated failure {self.calls}")
        return await self.inner.transfer(to_address, amount)


@pytest.fixture
def config(tmp_path):
    return AuctionConfig(
        data_dir=tmp_path,
        thinking_delay=0.0,
        refund_delay=0.0,
        refund_retry_delay=0.0,
        pay_to=SERVER.address,
    )


@pytest.fixture
def ledger():
    ledger = Ledger()
    for keypair in AGENTS.values():
        ledger.mint(keypair.address, 100 * USDC_UNIT)
    return ledger


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(config, ledger, notifier):
    return build_service(config, notifier=notifier, ledger=ledger)


@pytest.fixture
def make_proof(config):
    """Build a base64 X-PAYMENT header for an agent and amount (atomic units)."""

    def _make(agent_id: str, amount: int, **kwargs) -> str:
        payment = sign_authorization(
            AGENTS[agent_id],
            kwargs.pop("pay_to", config.pay_to),
            amount,
            kwargs.pop("network", config.network),
            config.asset,
            **kwargs,
        )
        return encode_payment_header(payment)

    return _make


@pytest.fixture
def flaky_wallet():
    """The FlakyWallet class, for tests that build their own transports."""
    return FlakyWallet
