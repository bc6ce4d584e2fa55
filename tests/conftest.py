"""
conftest.py - Shared pytest fixtures for ledger tests

Provides common fixtures used across unit, conformance and functional tests:
- Collaborators (recording adapter, role gate, in-memory adapter)
- Engines (empty, with tokens configured, with a priced native asset)
- Price sources
"""

import pytest
from datetime import datetime, timedelta

from custody_ledger import (
    LedgerEngine, LimitPolicy, RoleAccessGate, InMemoryTransferAdapter,
    StaticPriceSource, NATIVE_ASSET, WithdrawalNormalization,
)

from tests.fakes import RecordingTransferAdapter


# =============================================================================
# CONSTANTS
# =============================================================================

T0 = datetime(2025, 1, 1)

USDC = "0xUSDC"     # 6 decimals, parity
WBTC = "0xWBTC"     # 8 decimals, parity (rescaled up)
DAI = "0xDAI"       # 18 decimals, parity (rescaled down)
WETH = "0xWETH"     # 18 decimals, priced

ADMIN = "admin"
OPS = "ops"

ONE_UNIT = 10 ** 6  # one common unit at 6 decimals

DEFAULT_PER_TX = 10_000 * ONE_UNIT
DEFAULT_AGGREGATE = 50_000 * ONE_UNIT

ETH_PRICE = 3000 * 10 ** 8
PRICE_DECIMALS = 8


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_engine(
    adapter=None,
    gate=None,
    per_tx: int = DEFAULT_PER_TX,
    aggregate: int = DEFAULT_AGGREGATE,
    **kwargs,
) -> LedgerEngine:
    """Create a quiet engine starting at T0."""
    kwargs.setdefault("initial_time", T0)
    kwargs.setdefault("verbose", False)
    return LedgerEngine(
        "test",
        transfer_adapter=adapter if adapter is not None else RecordingTransferAdapter(),
        access_gate=gate if gate is not None else default_gate(),
        limits=LimitPolicy(per_transaction_limit=per_tx, aggregate_limit=aggregate),
        **kwargs,
    )


def default_gate() -> RoleAccessGate:
    return RoleAccessGate({"withdraw": {OPS}, "configure": {ADMIN}})


def configure_tokens(engine: LedgerEngine) -> LedgerEngine:
    """Register the parity tokens used throughout the tests."""
    engine.configure_asset(USDC, 6, caller=ADMIN)
    engine.configure_asset(WBTC, 8, caller=ADMIN)
    engine.configure_asset(DAI, 18, caller=ADMIN)
    return engine


def state_of(engine: LedgerEngine, asset_id: str, holder: str):
    """(balance, aggregate, deposit_count, withdraw_count) for before/after comparisons."""
    return (
        engine.quote_balance(asset_id, holder),
        engine.aggregate_deposited(asset_id),
        engine.deposit_count,
        engine.withdraw_count,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def adapter():
    """Transfer adapter that succeeds and records calls."""
    return RecordingTransferAdapter()


@pytest.fixture
def gate():
    return default_gate()


@pytest.fixture
def empty_engine(adapter, gate):
    """Engine with only the native asset (unpriced)."""
    return make_engine(adapter, gate)


@pytest.fixture
def engine(adapter, gate):
    """Engine with USDC, WBTC and DAI configured at parity."""
    return configure_tokens(make_engine(adapter, gate))


@pytest.fixture
def eth_feed():
    """Native price feed at 3000.00000000, observed at T0."""
    return StaticPriceSource(ETH_PRICE, PRICE_DECIMALS, T0)


@pytest.fixture
def priced_engine(adapter, gate, eth_feed):
    """Engine with tokens configured and the native asset priced by eth_feed."""
    engine = configure_tokens(make_engine(adapter, gate))
    engine.configure_native(eth_feed, caller=ADMIN)
    return engine


@pytest.fixture
def proportional_engine(adapter, gate, eth_feed):
    """Priced engine that reduces normalized balances proportionally on withdrawal."""
    engine = configure_tokens(make_engine(
        adapter, gate,
        withdrawal_normalization=WithdrawalNormalization.PROPORTIONAL,
    ))
    engine.configure_native(eth_feed, caller=ADMIN)
    return engine


@pytest.fixture
def custody():
    """In-memory adapter with alice and bob funded in every token."""
    custody = InMemoryTransferAdapter()
    for holder in ("alice", "bob"):
        custody.fund(holder, USDC, 100_000 * ONE_UNIT)
        custody.fund(holder, DAI, 100_000 * 10 ** 18)
    return custody


@pytest.fixture
def custody_engine(custody, gate, eth_feed):
    """Priced engine backed by the in-memory custody adapter."""
    engine = configure_tokens(make_engine(custody, gate))
    engine.configure_native(eth_feed, caller=ADMIN)
    return engine


@pytest.fixture
def one_day():
    return timedelta(days=1)
