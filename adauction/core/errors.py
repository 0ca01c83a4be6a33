"""Exceptions raised by the auction core."""


class AuctionError(Exception):
    """Base class for auction errors. status_code is the HTTP mapping."""
    status_code = 500


class AuctionNotFound(AuctionError):
    """No record exists for the slot."""
    status_code = 404


class InvalidWithdrawal(AuctionError):
    """
    Caller-side withdrawal error: the current winner asking to leave, an
    agent with no bids, a repeated withdrawal or an unknown payout address.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class TransferFailed(AuctionError):
    """A refund transfer failed (after its retry, when raised by RefundIssuer)."""
    status_code = 500


class CreativeNotAllowed(AuctionError):
    """The creative-generation flow may not start or complete for this caller."""

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code


class PaymentPayloadError(AuctionError):
    """The payment proof header could not be decoded."""
    status_code = 402
