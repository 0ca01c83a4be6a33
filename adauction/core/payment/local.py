"""
Local Facilitator - In-process verify/settle over an account ledger.

Used for development, the CLI demo and tests. It performs the same checks
a remote facilitator does for the "exact" scheme:

1. Scheme and network match the requirements
2. Recipient is the requirements' payTo
3. Authorized value covers the required amount
4. Current time is inside [validAfter, validBefore)
5. Signature recovers to the "from" address
6. Nonce has not been used
7. Payer balance covers the value

Authorization digest:
    keccak256("x402-exact|network|asset|from|to|value|validAfter|validBefore|nonce")
"""

import secrets
import time
from collections import defaultdict
from typing import Callable, Dict, Optional, Set

from adauction.core.payment.facilitator import Facilitator
from adauction.core.payment.types import (
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    VerifyResult,
)
from adauction.crypto import (
    KeyPair,
    bytes_to_hex,
    hex_to_bytes,
    keccak256,
    normalize_address,
    recover_address,
    sha256,
    sign,
)
from adauction.utils.logger import get_logger

logger = get_logger("facilitator.local")


# =============================================================================
# Ledger
# =============================================================================


class Ledger:
    """
    Account-balance ledger standing in for the token contract.

    Balances are atomic units keyed by lowercase address.
    """

    def __init__(self):
        self.balances: Dict[str, int] = defaultdict(int)
        self.tx_count = 0

    def mint(self, address: str, amount: int) -> None:
        self.balances[normalize_address(address)] += amount

    def balance_of(self, address: str) -> int:
        return self.balances.get(normalize_address(address), 0)

    def transfer(self, sender: str, recipient: str, amount: int) -> str:
        """
        Move funds between accounts.

        Returns:
            Transaction reference (0x-prefixed hex)

        Raises:
            ValueError: On non-positive amount or insufficient balance
        """
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        if amount <= 0:
            raise ValueError(f"Invalid transfer amount: {amount}")
        if self.balances.get(sender, 0) < amount:
            raise ValueError(f"Insufficient balance: have {self.balances.get(sender, 0)}, need {amount}")

        self.balances[sender] -= amount
        self.balances[recipient] += amount
        self.tx_count += 1
        return bytes_to_hex(sha256(f"{sender}:{recipient}:{amount}:{self.tx_count}".encode()))


# =============================================================================
# Authorization Signing
# =============================================================================


def authorization_digest(authorization: Authorization, network: str, asset: str) -> bytes:
    message = "|".join([
        "x402-exact",
        network,
        normalize_address(asset),
        normalize_address(authorization.from_address),
        normalize_address(authorization.to),
        authorization.value,
        authorization.valid_after,
        authorization.valid_before,
        authorization.nonce,
    ])
    return keccak256(message.encode())


def sign_authorization(
    keypair: KeyPair,
    pay_to: str,
    value: int,
    network: str,
    asset: str,
    valid_for: int = 300,
    nonce: Optional[str] = None,
    now: Optional[float] = None,
) -> PaymentPayload:
    """
    Build a signed "exact" payment payload.

    Args:
        keypair: Payer keys
        pay_to: Recipient address
        value: Authorized amount (atomic units)
        network: Payment network name
        asset: Token contract address
        valid_for: Seconds the authorization stays valid
        nonce: 32-byte hex nonce (random if omitted)
        now: Issue time (defaults to time.time())
    """
    issued = int(now if now is not None else time.time())
    authorization = Authorization(
        from_address=keypair.address,
        to=pay_to,
        value=str(value),
        valid_after=str(issued - 1),
        valid_before=str(issued + valid_for),
        nonce=nonce or bytes_to_hex(secrets.token_bytes(32)),
    )
    signature = sign(authorization_digest(authorization, network, asset), keypair.private_key)
    return PaymentPayload(
        network=network,
        payload=ExactPayload(signature=bytes_to_hex(signature), authorization=authorization),
    )


# =============================================================================
# Local Facilitator
# =============================================================================


class LocalFacilitator(Facilitator):
    """Verifies signatures and settles transfers against a Ledger."""

    def __init__(self, ledger: Ledger, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.clock = clock
        self.used_nonces: Set[str] = set()

    def _check(self, payment: PaymentPayload, requirements: PaymentRequirements) -> VerifyResult:
        auth = payment.payload.authorization

        if payment.scheme != requirements.scheme:
            return VerifyResult(is_valid=False, invalid_reason="unsupported_scheme")
        if payment.network != requirements.network:
            return VerifyResult(is_valid=False, invalid_reason="invalid_network")
        if normalize_address(auth.to) != normalize_address(requirements.pay_to):
            return VerifyResult(is_valid=False, invalid_reason="invalid_recipient")

        try:
            value = int(auth.value)
            valid_after = int(auth.valid_after)
            valid_before = int(auth.valid_before)
            signature = hex_to_bytes(payment.payload.signature)
        except ValueError:
            return VerifyResult(is_valid=False, invalid_reason="invalid_payload")

        if value < requirements.required_amount:
            return VerifyResult(is_valid=False, invalid_reason="insufficient_value")

        now = self.clock()
        if now < valid_after:
            return VerifyResult(is_valid=False, invalid_reason="authorization_not_yet_valid")
        if now >= valid_before:
            return VerifyResult(is_valid=False, invalid_reason="authorization_expired")

        digest = authorization_digest(auth, requirements.network, requirements.asset)
        signer = recover_address(digest, signature)
        if signer is None or signer != normalize_address(auth.from_address):
            return VerifyResult(is_valid=False, invalid_reason="invalid_signature")

        if auth.nonce in self.used_nonces:
            return VerifyResult(is_valid=False, invalid_reason="nonce_already_used")
        if self.ledger.balance_of(auth.from_address) < value:
            return VerifyResult(is_valid=False, invalid_reason="insufficient_funds", payer=signer)

        return VerifyResult(is_valid=True, payer=signer)

    async def verify(self, payment: PaymentPayload, requirements: PaymentRequirements) -> VerifyResult:
        return self._check(payment, requirements)

    async def settle(self, payment: PaymentPayload, requirements: PaymentRequirements) -> SettleResult:
        check = self._check(payment, requirements)
        if not check.is_valid:
            return SettleResult(success=False, error_reason=check.invalid_reason, network=payment.network)

        auth = payment.payload.authorization
        try:
            tx_ref = self.ledger.transfer(auth.from_address, auth.to, int(auth.value))
        except ValueError as e:
            return SettleResult(success=False, error_reason=str(e), network=payment.network)

        self.used_nonces.add(auth.nonce)
        logger.debug(f"Settled {auth.value} from {auth.from_address[:10]} tx={tx_ref[:18]}")
        return SettleResult(success=True, transaction=tx_ref, network=payment.network, payer=check.payer)
