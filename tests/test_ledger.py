"""
test_ledger.py - Unit tests for ledger.py

Tests:
- Engine creation and read accessors
- deposit(): conversion, limits, inbound transfer ordering, rejections
- withdraw(): authorization, balance sufficiency, outbound transfer failure
- quote_balance() and quote()
- Configuration through the engine and the config log
- snapshot(), load_snapshot(), clone(), verify_aggregates()
"""

import pytest
from datetime import timedelta, timezone

from custody_ledger import (
    LedgerSnapshot, StaticPriceSource, DepositRecord, WithdrawalRecord,
    OpenAccessGate, InMemoryTransferAdapter,
    ZeroAmount, InvalidAddress, AssetNotConfigured, InsufficientBalance,
    TransactionLimitExceeded, AggregateLimitExceeded, StalePrice,
    TransferFailed, Unauthorized, InvalidPriceSource,
    NATIVE_ASSET,
)

from tests.conftest import (
    make_engine, configure_tokens, state_of,
    T0, USDC, WBTC, DAI, ADMIN, OPS, ONE_UNIT, DEFAULT_PER_TX, DEFAULT_AGGREGATE,
)
from tests.fakes import RecordingTransferAdapter, RaisingTransferAdapter, BrokenPriceSource


class TestLedgerCreation:

    def test_create(self, empty_engine):
        assert empty_engine.name == "test"
        assert empty_engine.current_time == T0
        assert empty_engine.deposit_count == 0
        assert empty_engine.withdraw_count == 0
        assert not empty_engine.is_busy

    def test_limit_accessors(self, empty_engine):
        assert empty_engine.per_transaction_limit == DEFAULT_PER_TX
        assert empty_engine.aggregate_limit == DEFAULT_AGGREGATE

    def test_default_common_decimals(self, empty_engine):
        assert empty_engine.common_decimals == 6

    def test_native_listed(self, empty_engine):
        assert empty_engine.list_assets() == [NATIVE_ASSET]

    def test_advance_time(self, empty_engine):
        empty_engine.advance_time(T0 + timedelta(hours=1))
        assert empty_engine.current_time == T0 + timedelta(hours=1)

    def test_time_cannot_move_backwards(self, empty_engine):
        with pytest.raises(ValueError, match="backwards"):
            empty_engine.advance_time(T0 - timedelta(seconds=1))

    def test_repr(self, empty_engine):
        assert "LedgerEngine('test'" in repr(empty_engine)


class TestDeposit:

    def test_parity_deposit(self, engine):
        normalized = engine.deposit(USDC, 1_000_000, "alice")
        assert normalized == 1_000_000
        assert engine.quote_balance(USDC, "alice") == (1_000_000, 1_000_000)
        assert engine.aggregate_deposited(USDC) == 1_000_000
        assert engine.deposit_count == 1

    def test_token_deposit_pulls_in(self, engine, adapter):
        engine.deposit(USDC, 1_000_000, "alice")
        assert adapter.calls == [("pull_in", USDC, "alice", 1_000_000)]

    def test_native_deposit_at_price(self, priced_engine, adapter):
        normalized = priced_engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        assert normalized == 3_000_000_000
        assert priced_engine.quote_balance(NATIVE_ASSET, "alice") == (10 ** 18, 3_000_000_000)
        assert adapter.calls == [("accept_native", "native", "alice", 10 ** 18)]

    def test_unpriced_native_deposit_rescales(self, empty_engine):
        assert empty_engine.deposit(NATIVE_ASSET, 2 * 10 ** 18, "alice") == 2 * ONE_UNIT

    def test_rescale_up(self, engine):
        # WBTC has 8 decimals -> divide by 100
        assert engine.deposit(WBTC, 12_345, "alice") == 123

    def test_dust_deposit_credits_raw_only(self, engine):
        assert engine.deposit(DAI, 999, "alice") == 0
        assert engine.quote_balance(DAI, "alice") == (999, 0)
        assert engine.aggregate_deposited(DAI) == 0

    def test_sequential_deposits_accumulate(self, engine):
        engine.deposit(USDC, 300_000, "alice")
        engine.deposit(USDC, 200_000, "alice")
        engine.deposit(USDC, 100_000, "bob")
        assert engine.quote_balance(USDC, "alice") == (500_000, 500_000)
        assert engine.aggregate_deposited(USDC) == 600_000
        assert engine.deposit_count == 3

    def test_deposit_record(self, engine):
        engine.deposit(USDC, 1_000_000, "alice")
        record = engine.event_log[-1]
        assert isinstance(record, DepositRecord)
        assert (record.asset_id, record.depositor, record.raw_amount, record.normalized_amount) == \
            (USDC, "alice", 1_000_000, 1_000_000)
        assert record.timestamp == T0
        assert record.sequence_number == 0

    def test_zero_amount(self, engine, adapter):
        with pytest.raises(ZeroAmount):
            engine.deposit(USDC, 0, "alice")
        assert adapter.calls == []

    def test_unconfigured_asset(self, engine, adapter):
        with pytest.raises(AssetNotConfigured):
            engine.deposit("0xNOPE", 1, "alice")
        assert adapter.calls == []

    @pytest.mark.parametrize("depositor", ["", "   ", NATIVE_ASSET])
    def test_invalid_depositor(self, engine, depositor):
        with pytest.raises(InvalidAddress):
            engine.deposit(USDC, 1, depositor)

    def test_transaction_limit_scenario(self, adapter, gate):
        """500 then 700 against a ceiling of 600: 700 rejected, 500 stays."""
        engine = configure_tokens(make_engine(adapter, gate, per_tx=600 * ONE_UNIT))
        engine.deposit(USDC, 500 * ONE_UNIT, "alice")
        with pytest.raises(TransactionLimitExceeded):
            engine.deposit(USDC, 700 * ONE_UNIT, "alice")
        assert engine.quote_balance(USDC, "alice") == (500 * ONE_UNIT, 500 * ONE_UNIT)
        assert engine.aggregate_deposited(USDC) == 500 * ONE_UNIT
        assert engine.deposit_count == 1

    def test_aggregate_limit(self, adapter, gate):
        engine = configure_tokens(make_engine(adapter, gate, per_tx=600, aggregate=1000))
        engine.deposit(USDC, 600, "alice")
        engine.deposit(USDC, 400, "bob")
        with pytest.raises(AggregateLimitExceeded):
            engine.deposit(USDC, 1, "carol")
        assert engine.aggregate_deposited(USDC) == 1000

    def test_aggregate_limit_is_per_asset(self, adapter, gate):
        engine = configure_tokens(make_engine(adapter, gate, per_tx=600, aggregate=1000))
        engine.deposit(USDC, 600, "alice")
        engine.deposit(USDC, 400, "alice")
        engine.deposit(WBTC, 600 * 100, "alice")
        assert engine.aggregate_deposited(WBTC) == 600

    def test_stale_price_rejected(self, priced_engine):
        priced_engine.advance_time(T0 + timedelta(hours=25))
        with pytest.raises(StalePrice):
            priced_engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        assert priced_engine.quote_balance(NATIVE_ASSET, "alice") == (0, 0)

    def test_failed_pull_in_changes_nothing(self, gate):
        adapter = RecordingTransferAdapter(pull_ok=False)
        engine = configure_tokens(make_engine(adapter, gate))
        before = state_of(engine, USDC, "alice")
        with pytest.raises(TransferFailed):
            engine.deposit(USDC, 1_000_000, "alice")
        assert state_of(engine, USDC, "alice") == before
        assert engine.event_log == []

    def test_failed_native_accept_changes_nothing(self, gate):
        adapter = RecordingTransferAdapter(native_ok=False)
        engine = make_engine(adapter, gate)
        with pytest.raises(TransferFailed):
            engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        assert engine.quote_balance(NATIVE_ASSET, "alice") == (0, 0)

    def test_raising_pull_in_wrapped(self, gate):
        engine = configure_tokens(make_engine(RaisingTransferAdapter(), gate))
        with pytest.raises(TransferFailed) as excinfo:
            engine.deposit(USDC, 1_000_000, "alice")
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert engine.deposit_count == 0

    def test_guard_released_after_failure(self, engine):
        with pytest.raises(ZeroAmount):
            engine.deposit(USDC, 0, "alice")
        assert not engine.is_busy
        engine.deposit(USDC, 1, "alice")


class TestWithdraw:

    @pytest.fixture
    def funded(self, engine):
        engine.deposit(USDC, 1_000_000, "alice")
        return engine

    def test_withdraw(self, funded, adapter):
        normalized = funded.withdraw(USDC, 400_000, "alice", caller=OPS)
        assert normalized == 400_000
        assert funded.quote_balance(USDC, "alice") == (600_000, 600_000)
        assert funded.aggregate_deposited(USDC) == 600_000
        assert funded.withdraw_count == 1
        assert adapter.calls[-1] == ("push_out", USDC, "alice", 400_000)

    def test_full_withdraw_leaves_zeroed_entry(self, funded):
        funded.withdraw(USDC, 1_000_000, "alice", caller=OPS)
        assert funded.quote_balance(USDC, "alice") == (0, 0)
        assert funded.get_positions(USDC) == {}

    def test_withdrawal_record(self, funded):
        funded.withdraw(USDC, 400_000, "alice", caller=OPS)
        record = funded.event_log[-1]
        assert isinstance(record, WithdrawalRecord)
        assert (record.recipient, record.raw_amount, record.normalized_amount, record.caller) == \
            ("alice", 400_000, 400_000, OPS)
        assert record.sequence_number == 1

    def test_unauthorized(self, funded, adapter):
        calls_before = list(adapter.calls)
        with pytest.raises(Unauthorized):
            funded.withdraw(USDC, 1, "alice", caller="alice")
        assert adapter.calls == calls_before
        assert funded.quote_balance(USDC, "alice") == (1_000_000, 1_000_000)

    def test_unauthorized_checked_before_amount(self, funded):
        with pytest.raises(Unauthorized):
            funded.withdraw(USDC, 0, "alice", caller="mallory")

    def test_zero_amount(self, funded):
        with pytest.raises(ZeroAmount):
            funded.withdraw(USDC, 0, "alice", caller=OPS)

    def test_insufficient_balance(self, funded):
        before = state_of(funded, USDC, "alice")
        with pytest.raises(InsufficientBalance):
            funded.withdraw(USDC, 1_000_001, "alice", caller=OPS)
        assert state_of(funded, USDC, "alice") == before

    def test_insufficient_for_other_holder(self, funded):
        with pytest.raises(InsufficientBalance):
            funded.withdraw(USDC, 1, "bob", caller=OPS)

    def test_failed_push_out_restores_state(self, funded, adapter):
        before = state_of(funded, USDC, "alice")
        adapter.push_ok = False
        with pytest.raises(TransferFailed):
            funded.withdraw(USDC, 400_000, "alice", caller=OPS)
        assert state_of(funded, USDC, "alice") == before
        assert not any(isinstance(r, WithdrawalRecord) for r in funded.event_log)

    def test_raising_push_out_restores_state(self, gate):
        adapter = RaisingTransferAdapter()
        engine = configure_tokens(make_engine(adapter, gate))
        engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        before = state_of(engine, NATIVE_ASSET, "alice")
        with pytest.raises(TransferFailed) as excinfo:
            engine.withdraw(NATIVE_ASSET, 10 ** 18, "alice", caller=OPS)
        assert isinstance(excinfo.value.__cause__, ConnectionError)
        assert state_of(engine, NATIVE_ASSET, "alice") == before

    def test_withdraw_not_subject_to_limits(self, adapter, gate):
        engine = configure_tokens(make_engine(adapter, gate, per_tx=600, aggregate=1000))
        engine.deposit(USDC, 600, "alice")
        engine.deposit(USDC, 400, "alice")
        assert engine.withdraw(USDC, 1000, "alice", caller=OPS) == 1000

    def test_withdraw_stale_price_rejected(self, priced_engine):
        priced_engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        priced_engine.advance_time(T0 + timedelta(days=2))
        with pytest.raises(StalePrice):
            priced_engine.withdraw(NATIVE_ASSET, 10 ** 18, "alice", caller=OPS)
        assert priced_engine.quote_balance(NATIVE_ASSET, "alice") == (10 ** 18, 3_000_000_000)


class TestQuotes:

    def test_untouched_entry_is_zero(self, engine):
        assert engine.quote_balance(USDC, "nobody") == (0, 0)
        assert engine.quote_balance(NATIVE_ASSET, "nobody") == (0, 0)

    def test_quote_balance_unconfigured(self, engine):
        with pytest.raises(AssetNotConfigured):
            engine.quote_balance("0xNOPE", "alice")

    def test_quote_has_no_side_effects(self, priced_engine):
        assert priced_engine.quote(NATIVE_ASSET, 10 ** 18) == 3_000_000_000
        assert priced_engine.deposit_count == 0
        assert priced_engine.aggregate_deposited(NATIVE_ASSET) == 0

    def test_get_positions(self, engine):
        engine.deposit(USDC, 5, "alice")
        engine.deposit(USDC, 7, "bob")
        assert engine.get_positions(USDC) == {"alice": (5, 5), "bob": (7, 7)}


class TestConfiguration:

    def test_configure_asset_logged(self, empty_engine):
        change = empty_engine.configure_asset(USDC, 6, caller=ADMIN)
        assert change.old is None
        assert change.new.native_precision == 6
        assert change.caller == ADMIN
        assert empty_engine.config_log == [change]

    def test_price_source_change_auditable(self, engine):
        feed = StaticPriceSource(10 ** 8, 8, T0)
        change = engine.configure_asset(USDC, 6, feed, caller=ADMIN)
        assert change.price_source_changed
        assert change.old.price_source is None
        assert change.new.price_source is feed

    def test_configure_native_logged(self, empty_engine, eth_feed):
        change = empty_engine.configure_native(eth_feed, caller=ADMIN)
        assert change.asset_id == NATIVE_ASSET
        assert change.changed_fields() == {'price_source': (None, eth_feed)}

    def test_configure_unauthorized(self, empty_engine):
        with pytest.raises(Unauthorized):
            empty_engine.configure_asset(USDC, 6, caller=OPS)
        assert empty_engine.config_log == []

    def test_configure_native_unauthorized(self, empty_engine, eth_feed):
        with pytest.raises(Unauthorized):
            empty_engine.configure_native(eth_feed, caller="mallory")

    def test_invalid_price_source_not_logged(self, empty_engine):
        with pytest.raises(InvalidPriceSource):
            empty_engine.configure_asset(USDC, 6, BrokenPriceSource(), caller=ADMIN)
        assert empty_engine.config_log == []

    def test_timezone_mismatch_rejected_at_configuration(self, empty_engine):
        aware_feed = StaticPriceSource(3000 * 10 ** 8, 8, T0.replace(tzinfo=timezone.utc))
        with pytest.raises(InvalidPriceSource, match="timezone awareness"):
            empty_engine.configure_native(aware_feed, caller=ADMIN)
        with pytest.raises(InvalidPriceSource, match="timezone awareness"):
            empty_engine.configure_asset(USDC, 6, aware_feed, caller=ADMIN)
        assert empty_engine.config_log == []

    def test_aware_engine_with_aware_feed(self):
        aware = T0.replace(tzinfo=timezone.utc)
        engine = make_engine(initial_time=aware)
        engine.configure_native(StaticPriceSource(3000 * 10 ** 8, 8, aware), caller=ADMIN)
        assert engine.deposit(NATIVE_ASSET, 10 ** 18, "alice") == 3_000_000_000

    def test_open_access_gate(self):
        engine = make_engine(gate=OpenAccessGate())
        engine.configure_asset(USDC, 6, caller="anyone")
        engine.deposit(USDC, 10, "alice")
        assert engine.withdraw(USDC, 10, "alice", caller="anyone") == 10


class TestPersistence:

    def test_snapshot_layout(self, priced_engine):
        priced_engine.deposit(USDC, 100, "alice")
        priced_engine.deposit(NATIVE_ASSET, 10 ** 18, "bob")
        priced_engine.withdraw(USDC, 40, "alice", caller=OPS)
        snap = priced_engine.snapshot()
        assert isinstance(snap, LedgerSnapshot)
        assert snap.balances == {
            (USDC, "alice"): (60, 60),
            (NATIVE_ASSET, "bob"): (10 ** 18, 3_000_000_000),
        }
        assert snap.aggregates == {USDC: 60, NATIVE_ASSET: 3_000_000_000}
        assert (snap.deposit_count, snap.withdraw_count) == (2, 1)
        assert set(snap.descriptors) == {NATIVE_ASSET, USDC, WBTC, DAI}

    def test_load_snapshot_round_trip(self, priced_engine, adapter, gate):
        priced_engine.deposit(USDC, 100, "alice")
        priced_engine.deposit(NATIVE_ASSET, 10 ** 18, "bob")
        snap = priced_engine.snapshot()

        restored = make_engine(adapter, gate)
        restored.load_snapshot(snap)
        assert restored.quote_balance(USDC, "alice") == (100, 100)
        assert restored.quote(NATIVE_ASSET, 10 ** 18) == 3_000_000_000
        assert restored.deposit_count == 2
        assert restored.verify_aggregates()['valid']

    def test_snapshot_is_detached(self, engine):
        engine.deposit(USDC, 100, "alice")
        snap = engine.snapshot()
        engine.deposit(USDC, 50, "alice")
        assert snap.balances[(USDC, "alice")] == (100, 100)

    def test_clone_is_independent(self, engine):
        engine.deposit(USDC, 100, "alice")
        cloned = engine.clone()
        cloned.deposit(USDC, 50, "alice")
        engine.configure_asset("0xNEW", 6, caller=ADMIN)
        assert engine.quote_balance(USDC, "alice") == (100, 100)
        assert cloned.quote_balance(USDC, "alice") == (150, 150)
        assert not cloned.registry.is_configured("0xNEW")
        assert len(cloned.event_log) == 2
        assert len(engine.event_log) == 1


class TestVerifyAggregates:

    def test_valid_after_activity(self, engine):
        engine.deposit(USDC, 100, "alice")
        engine.deposit(USDC, 200, "bob")
        engine.withdraw(USDC, 50, "bob", caller=OPS)
        result = engine.verify_aggregates()
        assert result['valid']
        assert result['aggregates'] == {USDC: 250}

    def test_detects_corruption(self, engine):
        engine.deposit(USDC, 100, "alice")
        engine._state.aggregates[USDC] = 99
        result = engine.verify_aggregates()
        assert not result['valid']
        assert result['discrepancies'] == [{'asset': USDC, 'recorded': 99, 'computed': 100}]


class TestVerboseOutput:

    def test_prints_when_verbose(self, capsys):
        engine = make_engine(verbose=True)
        engine.configure_asset(USDC, 6, caller=ADMIN)
        engine.deposit(USDC, 10, "alice")
        with pytest.raises(ZeroAmount):
            engine.deposit(USDC, 0, "alice")
        out = capsys.readouterr().out
        assert "Configured: 0xUSDC" in out
        assert "APPLIED" in out
        assert "REJECTED DEPOSIT: ZeroAmount" in out

    def test_silent_when_not_verbose(self, engine, capsys):
        engine.deposit(USDC, 10, "alice")
        assert capsys.readouterr().out == ""


class TestInMemoryCustody:

    def test_value_moves_with_balances(self, custody_engine, custody):
        custody_engine.deposit(USDC, 1_000 * ONE_UNIT, "alice")
        assert custody.balance_of("alice", USDC) == 99_000 * ONE_UNIT
        assert custody.custody[USDC] == 1_000 * ONE_UNIT

        custody_engine.withdraw(USDC, 250 * ONE_UNIT, "alice", caller=OPS)
        assert custody.balance_of("alice", USDC) == 99_250 * ONE_UNIT
        assert custody.custody[USDC] == 750 * ONE_UNIT

    def test_unfunded_depositor_rejected(self, custody_engine):
        with pytest.raises(TransferFailed):
            custody_engine.deposit(USDC, 1, "carol")
        assert custody_engine.quote_balance(USDC, "carol") == (0, 0)

    def test_native_round_trip(self, custody_engine, custody):
        custody_engine.deposit(NATIVE_ASSET, 10 ** 18, "alice")
        custody_engine.withdraw(NATIVE_ASSET, 10 ** 18, "alice", caller=OPS)
        assert custody.custody[NATIVE_ASSET] == 0
        assert custody.balance_of("alice", NATIVE_ASSET) == 10 ** 18

    def test_custody_shortfall_fails_withdrawal(self, gate):
        custody = InMemoryTransferAdapter()
        engine = configure_tokens(make_engine(custody, gate))
        custody.fund("alice", USDC, 100)
        engine.deposit(USDC, 100, "alice")
        custody.custody[USDC] = 0  # drained out of band
        with pytest.raises(TransferFailed):
            engine.withdraw(USDC, 100, "alice", caller=OPS)
        assert engine.quote_balance(USDC, "alice") == (100, 100)
