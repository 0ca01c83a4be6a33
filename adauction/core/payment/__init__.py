"""Payment facilitator adapters, wire types and refund issuance"""
from adauction.core.payment.types import (
    PaymentPayload,
    PaymentRequirements,
    Authorization,
    ExactPayload,
    VerifyResult,
    SettleResult,
    decode_payment_header,
    encode_payment_header,
    encode_receipt,
)
from adauction.core.payment.facilitator import Facilitator, HttpFacilitator
from adauction.core.payment.local import (
    Ledger,
    LocalFacilitator,
    sign_authorization,
    authorization_digest,
)
from adauction.core.payment.refund import (
    RefundIssuer,
    WalletTransport,
    LedgerWallet,
    HttpWalletTransport,
    FailedRefund,
)

__all__ = [
    "PaymentPayload",
    "PaymentRequirements",
    "Authorization",
    "ExactPayload",
    "VerifyResult",
    "SettleResult",
    "decode_payment_header",
    "encode_payment_header",
    "encode_receipt",
    "Facilitator",
    "HttpFacilitator",
    "Ledger",
    "LocalFacilitator",
    "sign_authorization",
    "authorization_digest",
    "RefundIssuer",
    "WalletTransport",
    "LedgerWallet",
    "HttpWalletTransport",
    "FailedRefund",
]
