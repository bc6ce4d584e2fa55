#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Custodial Ledger Step by Step

This is a walkthrough of how the custodial ledger works.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-4:   Foundation      - The empty ledger, assets, first deposit, prices
  5-8:   Safety          - Limits, authorization, failed transfers, reentrancy
  9-11:  Operations      - Price drift, persistence, audit trails

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import sys

from custody_ledger import (
    # Engine
    LedgerEngine, LimitPolicy,
    # Collaborators
    RoleAccessGate, InMemoryTransferAdapter,
    # Prices
    TimeSeriesPriceSource,
    # Constants
    NATIVE_ASSET, WithdrawalNormalization,
    # Exceptions
    LedgerError, ReentrantCall,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    usdc: str = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
    dai: str = "0x6B175474E89094C44Da98b954EedeAC495271d0F"

    # Limits, in common units (6 decimals)
    per_transaction_limit: int = 600 * 10 ** 6
    aggregate_limit: int = 2_000 * 10 ** 6

    # Native price: 3000.00000000
    native_price: int = 3000 * 10 ** 8
    native_price_decimals: int = 8


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def fmt(normalized: int) -> str:
    """Render a common-unit amount as a decimal string."""
    return f"{normalized / 10 ** 6:,.6f}"


def attempt(label: str, fn):
    """Run fn and report the outcome instead of stopping the tutorial."""
    try:
        result = fn()
    except LedgerError as e:
        print(f"{label}: {type(e).__name__}")
        return None
    print(f"{label}: ok -> {result}")
    return result


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-4)
# ============================================================================

def step_01_empty_ledger():
    """Create an engine and look at its collaborators."""
    step_header(1, "The Empty Ledger",
        "An engine starts with only the native currency and three collaborators.")

    print("""
    The engine decides whether a deposit or withdrawal is admissible and
    keeps the books. Everything else is delegated:

    1. TRANSFER ADAPTER - actually moves value into and out of custody
    2. ACCESS GATE      - decides who may withdraw and who may configure
    3. LIMIT POLICY     - deposit ceilings, expressed in the common unit
    """)

    wait_for_enter()

    custody = InMemoryTransferAdapter()
    for holder in ("alice", "bob"):
        custody.fund(holder, CONFIG.usdc, 10_000 * 10 ** 6)
        custody.fund(holder, CONFIG.dai, 10_000 * 10 ** 18)

    print(">>> engine = LedgerEngine('vault', transfer_adapter=custody, ...)")
    engine = LedgerEngine(
        "vault",
        transfer_adapter=custody,
        access_gate=RoleAccessGate({"withdraw": {"ops"}, "configure": {"admin"}}),
        limits=LimitPolicy(
            per_transaction_limit=CONFIG.per_transaction_limit,
            aggregate_limit=CONFIG.aggregate_limit,
        ),
        initial_time=CONFIG.start_time,
        verbose=True,
    )

    section_header("Initial State")
    print(f"Ledger:              {engine!r}")
    print(f"Current time:        {engine.current_time}")
    print(f"Assets:              {engine.list_assets()}")
    print(f"Common decimals:     {engine.common_decimals}")
    print(f"Per-tx limit:        {fmt(engine.per_transaction_limit)}")
    print(f"Aggregate limit:     {fmt(engine.aggregate_limit)}")

    section_header("Key Insight")
    print("""
    The zero address is the native currency. It is always known to the
    registry and needs no configuration to accept deposits.
    """)

    return engine, custody


def step_02_configure_assets(engine: LedgerEngine):
    """Register tokens with their native precision."""
    step_header(2, "Configuring Assets",
        "Each token declares how many fractional digits its raw amounts carry.")

    print(">>> engine.configure_asset(USDC, 6, caller='admin')")
    engine.configure_asset(CONFIG.usdc, 6, caller="admin")
    print(">>> engine.configure_asset(DAI, 18, caller='admin')")
    engine.configure_asset(CONFIG.dai, 18, caller="admin")

    section_header("Key Insight")
    print("""
    Without a price source a token is treated at parity with the common unit:
    only the decimal places are rescaled. 1 DAI (10**18 raw) and 1 USDC
    (10**6 raw) both normalize to 1.000000.
    """)
    print(f"quote(DAI, 10**18)  = {fmt(engine.quote(CONFIG.dai, 10 ** 18))}")
    print(f"quote(USDC, 10**6)  = {fmt(engine.quote(CONFIG.usdc, 10 ** 6))}")
    return engine


def step_03_first_deposit(engine: LedgerEngine, custody: InMemoryTransferAdapter):
    """Deposit a token and watch both the ledger and custody move."""
    step_header(3, "The First Deposit",
        "A deposit is credited only after the adapter confirms the inbound transfer.")

    print(">>> engine.deposit(USDC, 250_000_000, 'alice')")
    engine.deposit(CONFIG.usdc, 250 * 10 ** 6, "alice")

    section_header("Result")
    raw, normalized = engine.quote_balance(CONFIG.usdc, "alice")
    print(f"alice USDC raw:         {raw}")
    print(f"alice USDC normalized:  {fmt(normalized)}")
    print(f"USDC aggregate:         {fmt(engine.aggregate_deposited(CONFIG.usdc))}")
    print(f"USDC held in custody:   {custody.custody[CONFIG.usdc]}")
    print(f"alice external wallet:  {custody.balance_of('alice', CONFIG.usdc)}")
    return engine


def step_04_priced_native(engine: LedgerEngine):
    """Attach a price source to the native currency."""
    step_header(4, "Priced Assets",
        "A price source turns a raw amount into its value in the common unit.")

    feed = TimeSeriesPriceSource(
        CONFIG.native_price_decimals, [(engine.current_time, CONFIG.native_price)]
    )
    print(">>> feed = TimeSeriesPriceSource(8, [(now, 3000 * 10**8)])")
    print(">>> engine.configure_native(feed, caller='admin')")
    engine.configure_native(feed, caller="admin")

    print(">>> engine.deposit(NATIVE_ASSET, 10**17, 'bob')   # 0.1 native units")
    engine.deposit(NATIVE_ASSET, 10 ** 17, "bob")
    raw, normalized = engine.quote_balance(NATIVE_ASSET, "bob")
    print(f"\nbob native: raw={raw} normalized={fmt(normalized)}")

    section_header("Key Insight")
    print("""
    Prices are validated on every read: a non-positive price, a reading from
    the future, or one older than 24 hours is refused and nothing changes.
    """)
    return engine, feed


# ============================================================================
# PHASE 2: SAFETY (Steps 5-8)
# ============================================================================

def step_05_limits(engine: LedgerEngine):
    """Watch the per-transaction ceiling reject a deposit."""
    step_header(5, "Deposit Limits",
        "Limits are checked in the common unit, so they apply across assets.")

    print(f"Per-transaction limit: {fmt(engine.per_transaction_limit)}")
    attempt(">>> deposit(USDC, 500, 'bob')",
            lambda: engine.deposit(CONFIG.usdc, 500 * 10 ** 6, "bob"))
    attempt(">>> deposit(USDC, 700, 'bob')",
            lambda: engine.deposit(CONFIG.usdc, 700 * 10 ** 6, "bob"))
    attempt(">>> deposit(DAI, 700, 'bob')",
            lambda: engine.deposit(CONFIG.dai, 700 * 10 ** 18, "bob"))

    print(f"\nbob USDC: {engine.quote_balance(CONFIG.usdc, 'bob')}")
    print(f"USDC headroom: {fmt(engine.limits.headroom(engine.aggregate_deposited(CONFIG.usdc)))}")
    return engine


def step_06_authorization(engine: LedgerEngine):
    """Only authorized callers may withdraw."""
    step_header(6, "Authorization",
        "Withdrawals go through the access gate before anything else is checked.")

    attempt(">>> withdraw(USDC, 100, 'alice', caller='alice')",
            lambda: engine.withdraw(CONFIG.usdc, 100 * 10 ** 6, "alice", caller="alice"))
    attempt(">>> withdraw(USDC, 100, 'alice', caller='ops')",
            lambda: engine.withdraw(CONFIG.usdc, 100 * 10 ** 6, "alice", caller="ops"))
    print(f"\nalice USDC: {engine.quote_balance(CONFIG.usdc, 'alice')}")
    return engine


def step_07_failed_transfer(engine: LedgerEngine, custody: InMemoryTransferAdapter):
    """A withdrawal whose outbound transfer fails leaves no trace."""
    step_header(7, "Failed Transfers",
        "The debit is taken before value leaves custody, and undone if it cannot leave.")

    print(">>> custody.custody[USDC] = 0   # drained out of band")
    saved = custody.custody[CONFIG.usdc]
    custody.custody[CONFIG.usdc] = 0
    before = engine.quote_balance(CONFIG.usdc, "alice")
    attempt(">>> withdraw(USDC, 50, 'alice', caller='ops')",
            lambda: engine.withdraw(CONFIG.usdc, 50 * 10 ** 6, "alice", caller="ops"))
    custody.custody[CONFIG.usdc] = saved

    print(f"\nalice USDC before: {before}")
    print(f"alice USDC after:  {engine.quote_balance(CONFIG.usdc, 'alice')}")
    return engine


def step_08_reentrancy(engine: LedgerEngine):
    """A transfer adapter that calls back into the engine is refused."""
    step_header(8, "Reentrancy",
        "Only one mutating call may be in flight at a time.")

    class HostileAdapter(InMemoryTransferAdapter):
        """Re-enters withdraw from inside push_out, like a malicious recipient."""

        def __init__(self):
            super().__init__()
            self.target = None

        def push_out(self, asset_id, dest, raw_amount):
            try:
                self.target.withdraw(asset_id, raw_amount, dest, caller="ops")
            except ReentrantCall as e:
                print(f"    nested withdraw refused: {e}")
            return True

    # Work on a branch so the main ledger keeps its real custody adapter.
    branch = engine.clone()
    branch.verbose = False
    branch.transfer_adapter = HostileAdapter()
    branch.transfer_adapter.target = branch

    print(">>> branch.withdraw(USDC, 10, 'alice', caller='ops')")
    branch.withdraw(CONFIG.usdc, 10 * 10 ** 6, "alice", caller="ops")
    print(f"\nalice USDC on the branch: {branch.quote_balance(CONFIG.usdc, 'alice')}")
    print(f"alice USDC on the ledger: {engine.quote_balance(CONFIG.usdc, 'alice')}")
    return engine


# ============================================================================
# PHASE 3: OPERATIONS (Steps 9-11)
# ============================================================================

def step_09_price_drift(engine: LedgerEngine, feed: TimeSeriesPriceSource):
    """Compare the two withdrawal normalization modes after a price rise."""
    step_header(9, "Price Drift",
        "A withdrawal is valued when it happens, which may differ from the deposit.")

    proportional = engine.clone()
    proportional.verbose = False
    proportional.withdrawal_normalization = WithdrawalNormalization.PROPORTIONAL
    proportional.transfer_adapter = InMemoryTransferAdapter()
    proportional.transfer_adapter.custody[NATIVE_ASSET] = 10 ** 17

    engine.advance_time(engine.current_time + timedelta(minutes=5))
    proportional.advance_time(engine.current_time)
    feed.add_price(engine.current_time, 3500 * 10 ** 8)
    print(">>> feed.add_price(now + 5min, 3500 * 10**8)")

    attempt(">>> LIVE_PRICE:   withdraw(NATIVE, 10**17, 'bob')",
            lambda: engine.withdraw(NATIVE_ASSET, 10 ** 17, "bob", caller="ops"))
    attempt(">>> PROPORTIONAL: withdraw(NATIVE, 10**17, 'bob')",
            lambda: proportional.withdraw(NATIVE_ASSET, 10 ** 17, "bob", caller="ops"))

    section_header("Key Insight")
    print("""
    LIVE_PRICE values the debit at today's price; if that exceeds what was
    credited the withdrawal fails closed. PROPORTIONAL removes the same share
    of the normalized amount as of the raw amount, so a full exit always clears.
    """)
    engine.advance_time(engine.current_time + timedelta(minutes=5))
    feed.add_price(engine.current_time, CONFIG.native_price)
    return engine


def step_10_persistence(engine: LedgerEngine):
    """Snapshot the ledger and restore it into a new engine."""
    step_header(10, "Persistence",
        "A snapshot holds balances, aggregates, counters and descriptors.")

    snap = engine.snapshot()
    print(f"Snapshot balances:   {len(snap.balances)} entries")
    print(f"Snapshot aggregates: {snap.aggregates}")

    restored = LedgerEngine(
        "restored",
        transfer_adapter=engine.transfer_adapter,
        access_gate=engine.access_gate,
        limits=engine.limits,
        initial_time=engine.current_time,
        verbose=False,
    )
    restored.load_snapshot(snap)
    print(f"\nRestored: {restored!r}")
    print(f"Aggregates valid: {restored.verify_aggregates()['valid']}")
    return engine


def step_11_audit(engine: LedgerEngine, feed: TimeSeriesPriceSource):
    """Read the event and configuration logs."""
    step_header(11, "Audit Trail",
        "Every settled operation and configuration change is recorded.")

    engine.advance_time(engine.current_time + timedelta(hours=1))

    section_header("Event Log")
    for record in engine.event_log:
        reading = feed.price_at(record.timestamp)
        price = f"{reading.price / 10 ** reading.decimals:,.2f}" if reading else "-"
        print(f"  {record!r}  native price {price}")

    section_header("Native Price History")
    for timestamp in feed.get_all_timestamps():
        print(f"  {timestamp}  {feed.price_at(timestamp).price}")

    section_header("Config Log")
    for change in engine.config_log:
        print(f"  {change.timestamp} {change.asset_id} by {change.caller}: "
              f"{sorted(change.changed_fields())}")

    print(f"\nDeposits: {engine.deposit_count}  Withdrawals: {engine.withdraw_count}")
    return engine


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       CUSTODIAL LEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)
    print("""
    PHASES:
      1-4:   Foundation      - Empty ledger, assets, deposits, prices
      5-8:   Safety          - Limits, authorization, failed transfers, reentrancy
      9-11:  Operations      - Price drift, persistence, audit trails
    """)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    engine, custody = step_01_empty_ledger()
    wait_for_enter()

    engine = step_02_configure_assets(engine)
    wait_for_enter()

    engine = step_03_first_deposit(engine, custody)
    wait_for_enter()

    engine, feed = step_04_priced_native(engine)
    wait_for_enter()

    engine = step_05_limits(engine)
    wait_for_enter()

    engine = step_06_authorization(engine)
    wait_for_enter()

    engine = step_07_failed_transfer(engine, custody)
    wait_for_enter()

    engine = step_08_reentrancy(engine)
    wait_for_enter()

    engine = step_09_price_drift(engine, feed)
    wait_for_enter()

    engine = step_10_persistence(engine)
    wait_for_enter()

    step_11_audit(engine, feed)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - Run tests: pytest tests/
      - Conformance suite: pytest tests/conformance/
    """)


if __name__ == "__main__":
    main()
