"""
Input Validation - Sanitization of agent-supplied request fields.

Agents are untrusted HTTP clients; every identifier, address and free-text
field they send passes through these checks before touching auction state.
"""

import re
from typing import Any, Optional, Tuple

from adauction.crypto import is_valid_address

# =============================================================================
# Constants
# =============================================================================

MAX_AGENT_ID_LENGTH = 64
MAX_SLOT_ID_LENGTH = 128
MAX_TEXT_LENGTH = 8192
MAX_PAYMENT_HEADER_SIZE = 16 * 1024
MIN_AMOUNT = 1                      # One atomic unit
MAX_AMOUNT = 1_000_000 * 1_000_000  # $1M in atomic units

IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$"


# =============================================================================
# Validation Functions
# =============================================================================


def validate_string(
    value: Any,
    name: str,
    max_length: int = MAX_TEXT_LENGTH,
    pattern: Optional[str] = None,
) -> Tuple[bool, str]:
    """
    Validate string input.

    Args:
        value: Value to validate
        name: Field name for error messages
        max_length: Maximum string length
        pattern: Optional regex pattern

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    if not value:
        return False, f"{name} must not be empty"

    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}"

    if pattern and not re.match(pattern, value):
        return False, f"{name} does not match required pattern"

    return True, ""


def validate_agent_id(agent_id: Any) -> Tuple[bool, str]:
    """Validate an agent identifier."""
    return validate_string(agent_id, "agent_id", MAX_AGENT_ID_LENGTH, IDENTIFIER_PATTERN)


def validate_slot_id(slot_id: Any) -> Tuple[bool, str]:
    """Validate an ad slot identifier."""
    return validate_string(slot_id, "slot_id", MAX_SLOT_ID_LENGTH, IDENTIFIER_PATTERN)


def validate_address(address: Any, name: str = "address") -> Tuple[bool, str]:
    """Validate a 0x-prefixed 20-byte address."""
    if not isinstance(address, str):
        return False, f"{name} must be str, got {type(address).__name__}"
    if not is_valid_address(address):
        return False, f"{name} is not a valid 0x address"
    return True, ""


def validate_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a bid amount in atomic units."""
    if not isinstance(amount, int) or isinstance(amount, bool):
        return False, f"{name} must be int, got {type(amount).__name__}"
    if amount < MIN_AMOUNT:
        return False, f"{name} must be positive"
    if amount > MAX_AMOUNT:
        return False, f"{name} must be <= {MAX_AMOUNT}, got {amount}"
    return True, ""


def validate_optional_text(value: Any, name: str) -> Tuple[bool, str]:
    """Free text that may be absent."""
    if value is None:
        return True, ""
    return validate_string(value, name, MAX_TEXT_LENGTH)


__all__ = [
    "validate_string",
    "validate_agent_id",
    "validate_slot_id",
    "validate_address",
    "validate_optional_text",
    "validate_amount",
    "MAX_AGENT_ID_LENGTH",
    "MAX_SLOT_ID_LENGTH",
    "MAX_TEXT_LENGTH",
    "MAX_PAYMENT_HEADER_SIZE",
    "MIN_AMOUNT",
    "MAX_AMOUNT",
]
