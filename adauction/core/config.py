"""
Auction server configuration.

Defines pricing parameters, auction timing, payment network settings and
the delays used to keep money movement on the custodial account ordered.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from adauction.core.pricing import parse_usdc


@dataclass
class AuctionConfig:
    """Server-wide auction parameters"""

    # Pricing (atomic USDC units, 6 decimals)
    starting_bid: int = 1_000_000         # $1.00 when no bid exists yet
    bid_increment: int = 1_000_000        # $1.00 over the current bid
    range_spread: int = 5_000_000         # Open challenge range above minimum
    range_cap: int = 50_000_000           # Hard cap on the open challenge range
    rejection_buffer: int = 500_000       # Suggested headroom on rejection
    negotiation_buffer: int = 1_000_000   # Suggested headroom on a 402 challenge

    # Auction timing
    auction_duration: float = 300.0       # Seconds from first accepted bid
    sweep_interval: float = 5.0           # Background expiry sweep period

    # Delays (seconds)
    thinking_delay: float = 1.5           # Lets observers render "thinking" first
    refund_delay: float = 2.0             # Wait after settlement before refunding
    refund_retry_delay: float = 3.0       # Wait before the single refund retry

    # Known bidders; used by the skip/withdrawal end rule
    bidder_roster: Tuple[str, ...] = ()

    # Payment network
    network: str = "base-sepolia"
    asset: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    asset_name: str = "USDC"
    asset_version: str = "2"
    pay_to: str = ""
    max_timeout_seconds: int = 60
    facilitator_url: Optional[str] = None
    wallet_service_url: Optional[str] = None

    # Paths
    data_dir: Path = field(default_factory=lambda: Path("data"))
    db_name: str = "auction.db"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


def _env_usdc(name: str, default: int) -> int:
    raw = os.getenv(name)
    return parse_usdc(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def load_config(env_file: Optional[str] = None) -> AuctionConfig:
    """
    Load configuration from the environment.

    Values from a .env file (if present) are loaded first and never override
    variables already set in the process environment.

    Args:
        env_file: Optional path to a .env file

    Returns:
        AuctionConfig instance
    """
    load_dotenv(env_file)

    roster = os.getenv("BIDDER_ROSTER", "")
    duration_minutes = os.getenv("AUCTION_DURATION_MINUTES")

    return AuctionConfig(
        starting_bid=_env_usdc("STARTING_BID_USDC", 1_000_000),
        bid_increment=_env_usdc("BID_INCREMENT_USDC", 1_000_000),
        auction_duration=(
            float(Decimal(duration_minutes) * 60) if duration_minutes else 300.0
        ),
        sweep_interval=_env_float("SWEEP_INTERVAL_SECONDS", 5.0),
        thinking_delay=_env_float("THINKING_DELAY_SECONDS", 1.5),
        refund_delay=_env_float("REFUND_DELAY_SECONDS", 2.0),
        refund_retry_delay=_env_float("REFUND_RETRY_DELAY_SECONDS", 3.0),
        bidder_roster=tuple(a.strip() for a in roster.split(",") if a.strip()),
        network=os.getenv("NETWORK", "base-sepolia"),
        asset=os.getenv("ASSET_ADDRESS", "0x036CbD53842c5426634e7929541eC2318f3dCF7e"),
        pay_to=os.getenv("PAY_TO_ADDRESS", ""),
        facilitator_url=os.getenv("FACILITATOR_URL") or None,
        wallet_service_url=os.getenv("WALLET_SERVICE_URL") or None,
        data_dir=Path(os.getenv("DATA_DIR", "data")),
    )
