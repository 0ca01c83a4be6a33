"""
Refund Issuer - Pays money back from the server's custodial account.

Every transfer takes the shared settlement lock: settlements and refunds
leave the same account and its transaction ordering cannot tolerate
concurrent submissions. A failed transfer is retried exactly once after a
fixed delay; a second failure raises TransferFailed. The most recent
failures stay in `failed`; the store keeps the full record. The bidder is not compensated further.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import httpx

from adauction.core.errors import TransferFailed
from adauction.core.payment.local import Ledger
from adauction.core.pricing import format_usdc
from adauction.utils.logger import get_logger

logger = get_logger("refund")


# =============================================================================
# Transports
# =============================================================================


class WalletTransport(ABC):
    """Custodial wallet able to send funds."""

    @abstractmethod
    async def transfer(self, to_address: str, amount: int) -> str:
        """
        Send `amount` atomic units to `to_address`.

        Returns:
            Transaction reference

        Raises:
            TransferFailed: If the transfer did not go through
        """


class LedgerWallet(WalletTransport):
    """Wallet backed by the local Ledger (development and tests)."""

    def __init__(self, ledger: Ledger, address: str):
        self.ledger = ledger
        self.address = address

    async def transfer(self, to_address: str, amount: int) -> str:
        try:
            return self.ledger.transfer(self.address, to_address, amount)
        except ValueError as e:
            raise TransferFailed(str(e)) from e


class HttpWalletTransport(WalletTransport):
    """
    Remote custodial wallet service.

    POST {url}/transfer {"to", "amount"} -> {"transaction"}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def transfer(self, to_address: str, amount: int) -> str:
        try:
            response = await self._client.post(
                f"{self.url}/transfer",
                json={"to": to_address, "amount": str(amount)},
            )
            response.raise_for_status()
            transaction = response.json().get("transaction")
        except (httpx.HTTPError, ValueError) as e:
            raise TransferFailed(f"wallet service error: {e}") from e

        if not transaction:
            raise TransferFailed("wallet service returned no transaction")
        return transaction

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Refund Issuer
# =============================================================================


@dataclass
class FailedRefund:
    """A refund that failed its primary attempt and its retry."""
    payout_address: str
    amount: int
    reason: str
    failed_at: float


class RefundIssuer:
    """
    Issues refunds with one fixed-delay retry.

    Args:
        transport: Wallet used to send funds
        lock: Settlement lock shared with the bid engine
        retry_delay: Seconds before the single retry
    """

    MAX_ATTEMPTS = 2
    MAX_FAILED_KEPT = 100

    def __init__(
        self,
        transport: WalletTransport,
        lock: Optional[asyncio.Lock] = None,
        retry_delay: float = 3.0,
    ):
        self.transport = transport
        self.lock = lock or asyncio.Lock()
        self.retry_delay = retry_delay
        self.failed: Deque[FailedRefund] = deque(maxlen=self.MAX_FAILED_KEPT)

    async def _attempt(self, payout_address: str, amount: int) -> str:
        async with self.lock:
            return await self.transport.transfer(payout_address, amount)

    async def refund(self, payout_address: str, amount: int) -> str:
        """
        Send a refund, retrying once on failure.

        Returns:
            Transaction reference

        Raises:
            TransferFailed: If both attempts fail
        """
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount}")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            if attempt > 1:
                await asyncio.sleep(self.retry_delay)
                logger.info(f"Retrying refund of {format_usdc(amount)} to {payout_address}")
            try:
                tx_ref = await self._attempt(payout_address, amount)
                logger.info(f"Refund of {format_usdc(amount)} to {payout_address} sent: {tx_ref}")
                return tx_ref
            except TransferFailed as e:
                last_error = e
                logger.warning(f"Refund attempt {attempt} to {payout_address} failed: {e}")

        reason = str(last_error)
        self.failed.append(FailedRefund(payout_address, amount, reason, time.time()))
        logger.error(
            f"Refund of {format_usdc(amount)} to {payout_address} not recovered after "
            f"{self.MAX_ATTEMPTS} attempts: {reason}"
        )
        raise TransferFailed(reason)
