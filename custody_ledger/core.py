"""
Core types and pure functions for the custodial ledger.

This module provides the foundational data structures and protocols:
1. Constants: native sentinel, precisions, staleness window, uint256 bound
2. Exceptions: LedgerError and the domain-specific error types
3. Immutable data structures: AssetDescriptor, BalanceEntry, PriceReading,
   DepositRecord, WithdrawalRecord, AssetConfigChange
4. Protocols: PriceSource, AccessGate, AssetTransferAdapter
5. Checked arithmetic: fixed-point helpers that fail closed on overflow

All functions in this module are pure. No function can mutate ledger state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved identifier for the native currency. It is the zero address, so no
# real token can ever be registered under it.
NATIVE_ASSET = "0x0000000000000000000000000000000000000000"

# Fractional digits of the common accounting unit.
COMMON_DECIMALS = 6

# Amounts are rescaled to this precision before being multiplied by a price.
INTERMEDIATE_DECIMALS = 18

# Native currency precision unless the registry is told otherwise.
NATIVE_DECIMALS = 18

# 10**77 is the largest power of ten below 2**256.
MAX_PRECISION = 77

# Maximum age of a price reading before it is rejected.
MAX_PRICE_AGE = timedelta(hours=24)

# All amounts are unsigned 256-bit integers.
UINT256_MAX = 2 ** 256 - 1

# Operation names passed to AccessGate.is_authorized().
OP_WITHDRAW = "withdraw"
OP_CONFIGURE = "configure"


# ============================================================================
# ENUMS
# ============================================================================

class WithdrawalNormalization(Enum):
    """
    How the common-unit amount of a withdrawal is computed.

    LIVE_PRICE: Re-price the withdrawn raw amount at the current price.
                The stored normalized amount can drift from the raw amount.
    PROPORTIONAL: Reduce the stored normalized amount by the withdrawn share
                  of the raw amount. A full withdrawal clears both fields.
    """
    LIVE_PRICE = "live_price"
    PROPORTIONAL = "proportional"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class ZeroAmount(LedgerError):
    """Raised when a deposit or withdrawal is requested for a zero amount."""
    pass


class InvalidAddress(LedgerError):
    """Raised when an asset or holder identifier is empty or reserved."""
    pass


class InvalidPrecision(LedgerError):
    """Raised when an asset precision is outside 1..MAX_PRECISION."""
    pass


class AssetNotConfigured(LedgerError):
    """Raised when operating on a non-native asset with no descriptor."""
    pass


class InsufficientBalance(LedgerError):
    """Raised when a withdrawal exceeds the holder's raw balance."""
    pass


class LimitExceeded(LedgerError):
    """Base class for deposit ceiling violations."""
    pass


class TransactionLimitExceeded(LimitExceeded):
    """Raised when a single deposit exceeds the per-transaction ceiling."""
    pass


class AggregateLimitExceeded(LimitExceeded):
    """Raised when a deposit would push an asset's aggregate above its ceiling."""
    pass


class OracleError(LedgerError):
    """Base class for price source failures. Callers may retry once the feed recovers."""
    pass


class InvalidPrice(OracleError):
    """Raised when a price reading is non-positive or timestamped in the future."""
    pass


class StalePrice(OracleError):
    """Raised when a price reading is older than the staleness window."""
    pass


class InvalidPriceSource(OracleError):
    """Raised when a price source cannot be queried while being configured."""
    pass


class ArithmeticOverflow(LedgerError):
    """Raised when a fixed-point computation leaves the uint256 range."""
    pass


class ArithmeticUnderflow(ArithmeticOverflow):
    """Raised when a subtraction would drive an unsigned value below zero."""
    pass


class TransferFailed(LedgerError):
    """Raised when the transfer adapter reports failure. No state is retained."""
    pass


class ReentrantCall(LedgerError):
    """Raised when a mutating operation is entered while another is in flight."""
    pass


class Unauthorized(LedgerError):
    """Raised when the AccessGate denies a caller."""
    pass


# ============================================================================
# CHECKED ARITHMETIC
# ============================================================================

def _check_range(value: int, what: str) -> int:
    if value < 0:
        raise ArithmeticUnderflow(f"{what} underflows: {value}")
    if value > UINT256_MAX:
        raise ArithmeticOverflow(f"{what} overflows uint256")
    return value


def checked_add(a: int, b: int) -> int:
    """Add two unsigned amounts, failing closed above UINT256_MAX."""
    return _check_range(a + b, "addition")


def checked_sub(a: int, b: int) -> int:
    """Subtract two unsigned amounts, failing closed below zero."""
    return _check_range(a - b, "subtraction")


def checked_mul(a: int, b: int) -> int:
    """Multiply two unsigned amounts, failing closed above UINT256_MAX."""
    return _check_range(a * b, "multiplication")


def pow10(exponent: int) -> int:
    """Return 10**exponent, failing closed if it does not fit in uint256."""
    if exponent < 0:
        raise ValueError(f"Negative exponent: {exponent}")
    if exponent > MAX_PRECISION:
        raise ArithmeticOverflow(f"10**{exponent} overflows uint256")
    return 10 ** exponent


def rescale(amount: int, from_decimals: int, to_decimals: int) -> int:
    """
    Rescale an integer amount between two fixed-point precisions.

    Scaling up multiplies exactly. Scaling down floor-divides, so dust below
    the target resolution is dropped.

    Example:
        rescale(1_500_000, 6, 18) == 1_500_000_000_000_000_000
        rescale(1_999_999, 7, 6) == 199_999
    """
    if from_decimals == to_decimals:
        return amount
    if from_decimals < to_decimals:
        return checked_mul(amount, pow10(to_decimals - from_decimals))
    return amount // pow10(from_decimals - to_decimals)


def validate_amount(amount: int, what: str = "amount") -> int:
    """Reject non-integers and values outside the uint256 range."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"{what} must be int, got {type(amount).__name__}")
    return _check_range(amount, what)


def same_awareness(a: datetime, b: datetime) -> bool:
    """True if both datetimes are naive or both are timezone-aware."""
    return (a.utcoffset() is None) == (b.utcoffset() is None)


def validate_identifier(identifier: str, what: str) -> str:
    """Reject empty identifiers."""
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidAddress(f"{what} cannot be empty")
    return identifier


# ============================================================================
# PROTOCOLS
# ============================================================================

@dataclass(frozen=True, slots=True)
class PriceReading:
    """
    One observation from a price source.

    Attributes:
        price: Integer price in units of 10**-decimals of the accounting unit.
        timestamp: When the price was observed.
        decimals: Number of fractional digits in `price`.
    """
    price: int
    timestamp: datetime
    decimals: int

    def __post_init__(self):
        if isinstance(self.price, bool) or not isinstance(self.price, int):
            raise ValueError(f"PriceReading price must be int, got {type(self.price)}")
        if not isinstance(self.timestamp, datetime):
            raise ValueError(f"PriceReading timestamp must be datetime, got {type(self.timestamp)}")
        if not isinstance(self.decimals, int) or self.decimals < 0:
            raise ValueError(f"PriceReading decimals must be a non-negative int, got {self.decimals!r}")


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for live price feeds.

    A price source quotes one asset in the common accounting unit.
    """

    def latest(self) -> PriceReading:
        """Return the most recent price reading."""
        ...


@runtime_checkable
class AccessGate(Protocol):
    """Capability check consulted before privileged operations."""

    def is_authorized(self, caller: str, operation: str) -> bool:
        ...


@runtime_checkable
class AssetTransferAdapter(Protocol):
    """
    Moves value in and out of custody.

    Both methods return True on success and False on failure. The adapter is
    untrusted: it may raise, or try to call back into the ledger.
    """

    def pull_in(self, asset_id: str, source: str, raw_amount: int) -> bool:
        """Move raw_amount of a token from `source` into custody."""
        ...

    def accept_native(self, source: str, raw_amount: int) -> bool:
        """Accept native value attached to a deposit call from `source`."""
        ...

    def push_out(self, asset_id: str, dest: str, raw_amount: int) -> bool:
        """Move raw_amount of an asset out of custody to `dest`."""
        ...


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class AssetDescriptor:
    """
    Per-asset metadata.

    Attributes:
        native_precision: Fractional digits the asset natively uses.
                          Zero means the asset is not configured.
        price_source: Live feed, or None for 1:1 parity after rescaling.
    """
    native_precision: int
    price_source: Optional[PriceSource] = None

    @property
    def is_configured(self) -> bool:
        return self.native_precision != 0

    @property
    def has_price_source(self) -> bool:
        return self.price_source is not None


@dataclass(frozen=True, slots=True)
class BalanceEntry:
    """
    Balance of one holder in one asset.

    Attributes:
        raw_amount: Amount in the asset's native precision.
        normalized_amount: Running total in the common accounting unit.
    """
    raw_amount: int = 0
    normalized_amount: int = 0

    def __post_init__(self):
        validate_amount(self.raw_amount, "raw_amount")
        validate_amount(self.normalized_amount, "normalized_amount")

    def credit(self, raw_amount: int, normalized_amount: int) -> BalanceEntry:
        return BalanceEntry(
            checked_add(self.raw_amount, raw_amount),
            checked_add(self.normalized_amount, normalized_amount),
        )

    def debit(self, raw_amount: int, normalized_amount: int) -> BalanceEntry:
        return BalanceEntry(
            checked_sub(self.raw_amount, raw_amount),
            checked_sub(self.normalized_amount, normalized_amount),
        )

    def as_tuple(self) -> Tuple[int, int]:
        return (self.raw_amount, self.normalized_amount)


EMPTY_ENTRY = BalanceEntry()


@dataclass(frozen=True, slots=True)
class DepositRecord:
    """Observation record of a settled deposit."""
    sequence_number: int
    timestamp: datetime
    asset_id: str
    depositor: str
    raw_amount: int
    normalized_amount: int

    def __repr__(self) -> str:
        return (f"Deposit(#{self.sequence_number} {self.raw_amount} {self.asset_id} "
                f"from {self.depositor} = {self.normalized_amount})")


@dataclass(frozen=True, slots=True)
class WithdrawalRecord:
    """Observation record of a settled withdrawal."""
    sequence_number: int
    timestamp: datetime
    asset_id: str
    recipient: str
    raw_amount: int
    normalized_amount: int
    caller: str

    def __repr__(self) -> str:
        return (f"Withdrawal(#{self.sequence_number} {self.raw_amount} {self.asset_id} "
                f"to {self.recipient} = {self.normalized_amount})")


@dataclass(frozen=True, slots=True)
class AssetConfigChange:
    """
    Before/after record of an asset descriptor overwrite.

    Attributes:
        asset_id: Asset whose descriptor changed
        old: Descriptor before the change (None if the asset was new)
        new: Descriptor after the change
        timestamp: Ledger time of the change
        caller: Who made the change
    """
    asset_id: str
    old: Optional[AssetDescriptor]
    new: AssetDescriptor
    timestamp: datetime
    caller: str

    @property
    def price_source_changed(self) -> bool:
        old_source = self.old.price_source if self.old else None
        return old_source is not self.new.price_source

    def changed_fields(self) -> Dict[str, Tuple[object, object]]:
        """Return {field: (old, new)} for the fields that differ."""
        changes = {}
        old_precision = self.old.native_precision if self.old else 0
        if old_precision != self.new.native_precision:
            changes['native_precision'] = (old_precision, self.new.native_precision)
        if self.price_source_changed:
            changes['price_source'] = (
                self.old.price_source if self.old else None,
                self.new.price_source,
            )
        return changes
