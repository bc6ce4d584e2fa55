"""
custody_ledger - Multi-Asset Custodial Ledger

Tracks per-holder balances of a native currency and fungible tokens, converts
every deposit and withdrawal into a common accounting unit, and enforces
per-transaction and aggregate ceilings in that unit.

Usage:
    from datetime import datetime
    from custody_ledger import (
        LedgerEngine, LimitPolicy, RoleAccessGate, InMemoryTransferAdapter,
        StaticPriceSource, NATIVE_ASSET,
    )

    t0 = datetime(2025, 1, 1)
    adapter = InMemoryTransferAdapter()
    engine = LedgerEngine(
        "vault",
        transfer_adapter=adapter,
        access_gate=RoleAccessGate({"withdraw": {"ops"}, "configure": {"admin"}}),
        limits=LimitPolicy(per_transaction_limit=10_000 * 10**6,
                           aggregate_limit=1_000_000 * 10**6),
        initial_time=t0,
    )

    # Native currency priced at 3000.00000000
    engine.configure_native(StaticPriceSource(3000 * 10**8, 8, t0), caller="admin")
    engine.deposit(NATIVE_ASSET, 10**18, "alice")         # -> 3_000_000_000

    # A 6-decimal token at parity
    engine.configure_asset("0xUSDC", 6, caller="admin")
    adapter.fund("alice", "0xUSDC", 5_000_000)
    engine.deposit("0xUSDC", 1_000_000, "alice")          # -> 1_000_000

    engine.withdraw("0xUSDC", 400_000, "alice", caller="ops")
    engine.quote_balance("0xUSDC", "alice")                # (600_000, 600_000)
"""

# Core types
from .core import (
    AssetDescriptor,
    BalanceEntry,
    PriceReading,
    DepositRecord,
    WithdrawalRecord,
    AssetConfigChange,
    WithdrawalNormalization,
    PriceSource,
    AccessGate,
    AssetTransferAdapter,
    LedgerError,
    ZeroAmount,
    InvalidAddress,
    InvalidPrecision,
    AssetNotConfigured,
    InsufficientBalance,
    LimitExceeded,
    TransactionLimitExceeded,
    AggregateLimitExceeded,
    OracleError,
    InvalidPrice,
    StalePrice,
    InvalidPriceSource,
    ArithmeticOverflow,
    ArithmeticUnderflow,
    TransferFailed,
    ReentrantCall,
    Unauthorized,
    checked_add,
    checked_sub,
    checked_mul,
    pow10,
    rescale,
    same_awareness,
    NATIVE_ASSET,
    COMMON_DECIMALS,
    INTERMEDIATE_DECIMALS,
    NATIVE_DECIMALS,
    MAX_PRECISION,
    MAX_PRICE_AGE,
    UINT256_MAX,
    OP_WITHDRAW,
    OP_CONFIGURE,
)

# Components
from .registry import AssetRegistry, probe_price_source
from .price_converter import PriceConverter
from .limits import LimitPolicy
from .ledger import LedgerEngine, LedgerState, LedgerSnapshot

# Price sources
from .price_source import StaticPriceSource, TimeSeriesPriceSource

# Collaborators
from .collaborators import OpenAccessGate, RoleAccessGate, InMemoryTransferAdapter

__all__ = [
    # Core types
    'AssetDescriptor', 'BalanceEntry', 'PriceReading',
    'DepositRecord', 'WithdrawalRecord', 'AssetConfigChange',
    'WithdrawalNormalization',
    'PriceSource', 'AccessGate', 'AssetTransferAdapter',
    # Exceptions
    'LedgerError', 'ZeroAmount', 'InvalidAddress', 'InvalidPrecision',
    'AssetNotConfigured', 'InsufficientBalance',
    'LimitExceeded', 'TransactionLimitExceeded', 'AggregateLimitExceeded',
    'OracleError', 'InvalidPrice', 'StalePrice', 'InvalidPriceSource',
    'ArithmeticOverflow', 'ArithmeticUnderflow',
    'TransferFailed', 'ReentrantCall', 'Unauthorized',
    # Arithmetic
    'checked_add', 'checked_sub', 'checked_mul', 'pow10', 'rescale', 'same_awareness',
    # Constants
    'NATIVE_ASSET', 'COMMON_DECIMALS', 'INTERMEDIATE_DECIMALS', 'NATIVE_DECIMALS',
    'MAX_PRECISION', 'MAX_PRICE_AGE', 'UINT256_MAX', 'OP_WITHDRAW', 'OP_CONFIGURE',
    # Components
    'AssetRegistry', 'probe_price_source', 'PriceConverter', 'LimitPolicy',
    'LedgerEngine', 'LedgerState', 'LedgerSnapshot',
    # Price sources
    'StaticPriceSource', 'TimeSeriesPriceSource',
    # Collaborators
    'OpenAccessGate', 'RoleAccessGate', 'InMemoryTransferAdapter',
]

__version__ = '1.0.0'
