"""
ledger.py - Stateful custodial balance engine

LedgerEngine is the central state manager of the custodial ledger. It is the
only component that mutates balances, aggregates and counters, so every
invariant is enforced at one choke point.

Key responsibilities:
    - Orchestrates AssetRegistry, PriceConverter and LimitPolicy for deposits
      and withdrawals
    - Orders state mutation against the external transfer step: inbound value
      is confirmed before crediting, outbound value is debited before pushing
      and restored if the push fails
    - Rejects nested mutating calls with a non-reentrant guard
    - Records every settled operation and configuration change
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .core import (
    # Types
    AssetDescriptor, BalanceEntry, EMPTY_ENTRY,
    DepositRecord, WithdrawalRecord, AssetConfigChange,
    AccessGate, AssetTransferAdapter, PriceSource,
    WithdrawalNormalization,
    # Constants
    NATIVE_ASSET, COMMON_DECIMALS, MAX_PRICE_AGE,
    OP_WITHDRAW, OP_CONFIGURE,
    # Exceptions
    LedgerError, ZeroAmount, InvalidAddress, InsufficientBalance,
    AssetNotConfigured, TransferFailed, ReentrantCall, Unauthorized,
    # Helpers
    checked_add, checked_sub, validate_amount, validate_identifier,
)
from .limits import LimitPolicy
from .price_converter import PriceConverter
from .registry import AssetRegistry


LedgerRecord = Union[DepositRecord, WithdrawalRecord]


@dataclass
class LedgerState:
    """
    Mutable state container owned by a single LedgerEngine.

    Attributes:
        balances: asset_id -> holder -> BalanceEntry
        aggregates: asset_id -> total normalized amount held
        deposit_count: Settled deposits
        withdraw_count: Settled withdrawals
    """
    balances: Dict[str, Dict[str, BalanceEntry]] = field(default_factory=dict)
    aggregates: Dict[str, int] = field(default_factory=dict)
    deposit_count: int = 0
    withdraw_count: int = 0

    def entry(self, asset_id: str, holder: str) -> BalanceEntry:
        return self.balances.get(asset_id, {}).get(holder, EMPTY_ENTRY)

    def set_entry(self, asset_id: str, holder: str, entry: BalanceEntry) -> None:
        self.balances.setdefault(asset_id, {})[holder] = entry

    def aggregate(self, asset_id: str) -> int:
        return self.aggregates.get(asset_id, 0)


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Persistable ledger state.

    Holds exactly what cannot be recomputed: per-(asset, holder) raw and
    normalized amounts, per-asset aggregates, both counters and the asset
    descriptors.
    """
    balances: Dict[Tuple[str, str], Tuple[int, int]]
    aggregates: Dict[str, int]
    deposit_count: int
    withdraw_count: int
    descriptors: Dict[str, AssetDescriptor]


class LedgerEngine:
    """
    Custodial multi-asset ledger with common-unit limits.

    Design Principles:
        - Always validates: zero amounts, unknown assets, bad prices and
          limit breaches are rejected before any state changes.
        - All-or-nothing: a failed transfer leaves balances, aggregates and
          counters exactly as they were.
        - Non-reentrant: a mutating call made while another is in flight
          fails with ReentrantCall and touches nothing.
        - Always logs: every settled operation lands in event_log and every
          descriptor overwrite in config_log.

    Thread Safety:
        Not thread-safe. Invocations are expected to be serialized by the
        caller; the guard only blocks reentry from collaborators.

    Example:
        engine = LedgerEngine(
            "vault",
            transfer_adapter=InMemoryTransferAdapter(),
            access_gate=RoleAccessGate({"withdraw": {"ops"}, "configure": {"admin"}}),
            limits=LimitPolicy(per_transaction_limit=10_000_000_000,
                               aggregate_limit=1_000_000_000_000),
        )
        engine.configure_asset("0xUSDC", 6, caller="admin")
        engine.deposit("0xUSDC", 1_000_000, "alice")
        engine.quote_balance("0xUSDC", "alice")   # (1_000_000, 1_000_000)
    """

    def __init__(
        self,
        name: str,
        transfer_adapter: AssetTransferAdapter,
        access_gate: AccessGate,
        limits: LimitPolicy,
        registry: Optional[AssetRegistry] = None,
        common_decimals: int = COMMON_DECIMALS,
        max_price_age: timedelta = MAX_PRICE_AGE,
        withdrawal_normalization: WithdrawalNormalization = WithdrawalNormalization.LIVE_PRICE,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
    ):
        """
        Create a ledger engine.

        Args:
            name: Ledger identifier
            transfer_adapter: Moves value in and out of custody
            access_gate: Authorizes withdrawals and configuration
            limits: Deposit ceilings in the common unit
            registry: Asset registry (default: fresh registry with native only)
            common_decimals: Precision of the common accounting unit
            max_price_age: Staleness window for price readings
            withdrawal_normalization: How withdrawals reduce normalized amounts
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print confirmations and rejections (default: True)
        """
        self.name = name
        self.transfer_adapter = transfer_adapter
        self.access_gate = access_gate
        self.limits = limits
        self.registry = registry if registry is not None else AssetRegistry()
        self.converter = PriceConverter(
            self.registry, lambda: self._current_time, common_decimals, max_price_age
        )
        self.withdrawal_normalization = withdrawal_normalization
        self.verbose = verbose
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._state = LedgerState()
        self._busy: Optional[str] = None
        # Pre-operation values of whatever an in-flight withdrawal has debited.
        self._settled_entries: Dict[Tuple[str, str], BalanceEntry] = {}
        self._settled_aggregates: Dict[str, int] = {}
        self._next_sequence: int = 0
        self.event_log: List[LedgerRecord] = []
        self.config_log: List[AssetConfigChange] = []

    # ========================================================================
    # READ ACCESSORS
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def common_decimals(self) -> int:
        return self.converter.common_decimals

    @property
    def per_transaction_limit(self) -> int:
        return self.limits.per_transaction_limit

    @property
    def aggregate_limit(self) -> int:
        return self.limits.aggregate_limit

    @property
    def deposit_count(self) -> int:
        return self._state.deposit_count

    @property
    def withdraw_count(self) -> int:
        return self._state.withdraw_count

    @property
    def is_busy(self) -> bool:
        """True while a mutating operation is in flight."""
        return self._busy is not None

    def _settled_entry(self, asset_id: str, holder: str) -> BalanceEntry:
        settled = self._settled_entries.get((asset_id, holder))
        return settled if settled is not None else self._state.entry(asset_id, holder)

    def _settled_aggregate(self, asset_id: str) -> int:
        settled = self._settled_aggregates.get(asset_id)
        return settled if settled is not None else self._state.aggregate(asset_id)

    def aggregate_deposited(self, asset_id: str) -> int:
        """Total normalized amount held for an asset, as of the last settled operation."""
        return self._settled_aggregate(asset_id)

    def quote_balance(self, asset_id: str, holder: str) -> Tuple[int, int]:
        """
        Return (raw_amount, normalized_amount) for a holder.

        Untouched entries read as (0, 0). While an operation is in flight
        the values it has not yet settled are not visible.

        Raises:
            AssetNotConfigured: If the asset is neither native nor configured
        """
        if not self.registry.is_configured(asset_id):
            raise AssetNotConfigured(f"Asset {asset_id} not configured")
        return self._settled_entry(asset_id, holder).as_tuple()

    def quote(self, asset_id: str, raw_amount: int) -> int:
        """Convert raw_amount to the common unit at the current price, without side effects."""
        return self.converter.to_common_unit(asset_id, raw_amount)

    def get_positions(self, asset_id: str) -> Dict[str, Tuple[int, int]]:
        """Return {holder: (raw, normalized)} for every non-zero entry of an asset."""
        positions = {}
        for holder in self._state.balances.get(asset_id, {}):
            entry = self._settled_entry(asset_id, holder)
            if entry.raw_amount or entry.normalized_amount:
                positions[holder] = entry.as_tuple()
        return positions

    def list_assets(self) -> List[str]:
        return self.registry.list_assets()

    def verify_aggregates(self) -> Dict[str, object]:
        """
        Check that each aggregate equals the sum of its holders' normalized amounts.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'aggregates': Dict[str, int] - recorded aggregate per asset
            - 'discrepancies': List[Dict] with asset, recorded, computed
        """
        discrepancies = []
        assets = set(self._state.aggregates) | set(self._state.balances)
        for asset_id in sorted(assets):
            computed = sum(
                self._settled_entry(asset_id, holder).normalized_amount
                for holder in sorted(self._state.balances.get(asset_id, {}))
            )
            recorded = self._settled_aggregate(asset_id)
            if computed != recorded:
                discrepancies.append({
                    'asset': asset_id,
                    'recorded': recorded,
                    'computed': computed,
                })
        return {
            'valid': len(discrepancies) == 0,
            'aggregates': {a: self._settled_aggregate(a) for a in self._state.aggregates},
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # CONFIGURATION (Mutating)
    # ========================================================================

    def configure_asset(
        self,
        asset_id: str,
        precision: int,
        price_source: Optional[PriceSource] = None,
        *,
        caller: str,
    ) -> AssetConfigChange:
        """
        Configure or overwrite a token's descriptor.

        Raises:
            Unauthorized: If caller may not configure
            InvalidAddress, InvalidPrecision, InvalidPriceSource: from the registry
        """
        with self._non_reentrant(OP_CONFIGURE):
            self._authorize(caller, OP_CONFIGURE)
            old, new = self.registry.configure(asset_id, precision, price_source, self._current_time)
            return self._record_config(asset_id, old, new, caller)

    def configure_native(self, price_source: Optional[PriceSource], *, caller: str) -> AssetConfigChange:
        """Set or clear the native currency's price source."""
        with self._non_reentrant(OP_CONFIGURE):
            self._authorize(caller, OP_CONFIGURE)
            old, new = self.registry.configure_native(price_source, self._current_time)
            return self._record_config(NATIVE_ASSET, old, new, caller)

    def _record_config(
        self,
        asset_id: str,
        old: Optional[AssetDescriptor],
        new: AssetDescriptor,
        caller: str,
    ) -> AssetConfigChange:
        change = AssetConfigChange(asset_id, old, new, self._current_time, caller)
        self.config_log.append(change)
        if self.verbose:
            source = f", price_source={new.price_source!r}" if new.price_source else ""
            print(f"📝 Configured: {asset_id} precision={new.native_precision}{source}")
        return change

    # ========================================================================
    # DEPOSIT / WITHDRAW (Mutating)
    # ========================================================================

    @contextmanager
    def _non_reentrant(self, operation: str) -> Iterator[None]:
        """
        Hold the busy flag for the lifetime of one top-level call.

        A nested entry fails before touching the flag, so the outer call keeps
        ownership until its own exit.
        """
        if self._busy is not None:
            raise ReentrantCall(f"{operation} entered while {self._busy} is in flight")
        self._busy = operation
        try:
            yield
        finally:
            self._settled_entries.clear()
            self._settled_aggregates.clear()
            self._busy = None

    def _authorize(self, caller: str, operation: str) -> None:
        if not self.access_gate.is_authorized(caller, operation):
            raise Unauthorized(f"{caller!r} is not authorized to {operation}")

    @staticmethod
    def _validate_holder(holder: str, what: str) -> None:
        validate_identifier(holder, what)
        if holder == NATIVE_ASSET:
            raise InvalidAddress(f"{what} cannot be the zero address")

    @staticmethod
    def _validate_raw_amount(raw_amount: int) -> None:
        validate_amount(raw_amount, "raw_amount")
        if raw_amount == 0:
            raise ZeroAmount("Amount must be greater than zero")

    def deposit(self, asset_id: str, raw_amount: int, depositor: str) -> int:
        """
        Credit a deposit.

        Steps: validate, resolve, convert, check limits, confirm the inbound
        transfer, then credit balance, aggregate and counter.

        Args:
            asset_id: Asset being deposited (NATIVE_ASSET for native currency)
            raw_amount: Amount in the asset's native precision
            depositor: Holder to credit

        Returns:
            The normalized amount credited

        Raises:
            ReentrantCall, ZeroAmount, InvalidAddress, AssetNotConfigured,
            InvalidPrice, StalePrice, ArithmeticOverflow,
            TransactionLimitExceeded, AggregateLimitExceeded, TransferFailed
        """
        with self._non_reentrant("deposit"):
            try:
                record = self._deposit(asset_id, raw_amount, depositor)
            except LedgerError as e:
                self._print_rejection("DEPOSIT", e)
                raise
        if self.verbose:
            print(f"✓ APPLIED: {record!r}")
        return record.normalized_amount

    def _deposit(self, asset_id: str, raw_amount: int, depositor: str) -> DepositRecord:
        self._validate_raw_amount(raw_amount)
        self._validate_holder(depositor, "depositor")
        descriptor = self.registry.resolve(asset_id)
        normalized = self.converter.convert(descriptor, raw_amount)

        aggregate = self._state.aggregate(asset_id)
        self.limits.check_deposit(asset_id, normalized, aggregate)

        # Compute the post-state first so arithmetic faults abort before value moves.
        new_entry = self._state.entry(asset_id, depositor).credit(raw_amount, normalized)
        new_aggregate = checked_add(aggregate, normalized)

        self._receive(asset_id, depositor, raw_amount)

        self._state.set_entry(asset_id, depositor, new_entry)
        self._state.aggregates[asset_id] = new_aggregate
        self._state.deposit_count += 1

        record = DepositRecord(
            sequence_number=self._take_sequence(),
            timestamp=self._current_time,
            asset_id=asset_id,
            depositor=depositor,
            raw_amount=raw_amount,
            normalized_amount=normalized,
        )
        self.event_log.append(record)
        return record

    def _receive(self, asset_id: str, depositor: str, raw_amount: int) -> None:
        """Confirm inbound value. Raises TransferFailed on any adapter failure."""
        try:
            if asset_id == NATIVE_ASSET:
                ok = self.transfer_adapter.accept_native(depositor, raw_amount)
            else:
                ok = self.transfer_adapter.pull_in(asset_id, depositor, raw_amount)
        except Exception as e:
            raise TransferFailed(f"Inbound transfer of {raw_amount} {asset_id} from {depositor} raised: {e}") from e
        if not ok:
            raise TransferFailed(f"Inbound transfer of {raw_amount} {asset_id} from {depositor} failed")

    def withdraw(self, asset_id: str, raw_amount: int, recipient: str, caller: str) -> int:
        """
        Debit a withdrawal and push the value out of custody.

        State is debited before the transfer is attempted. If the transfer
        fails the debit is undone and TransferFailed is raised, so nothing
        from this call is retained.

        Args:
            asset_id: Asset being withdrawn
            raw_amount: Amount in the asset's native precision
            recipient: Holder whose balance is debited and who receives the value
            caller: Identity checked against the AccessGate

        Returns:
            The normalized amount debited

        Raises:
            ReentrantCall, Unauthorized, ZeroAmount, InvalidAddress,
            InsufficientBalance, InvalidPrice, StalePrice, ArithmeticOverflow,
            ArithmeticUnderflow, TransferFailed
        """
        with self._non_reentrant(OP_WITHDRAW):
            try:
                record = self._withdraw(asset_id, raw_amount, recipient, caller)
            except LedgerError as e:
                self._print_rejection("WITHDRAW", e)
                raise
        if self.verbose:
            print(f"✓ APPLIED: {record!r}")
        return record.normalized_amount

    def _withdraw(self, asset_id: str, raw_amount: int, recipient: str, caller: str) -> WithdrawalRecord:
        self._authorize(caller, OP_WITHDRAW)
        self._validate_raw_amount(raw_amount)
        self._validate_holder(recipient, "recipient")

        entry = self._state.entry(asset_id, recipient)
        if entry.raw_amount < raw_amount:
            raise InsufficientBalance(
                f"{recipient} holds {entry.raw_amount} {asset_id}, requested {raw_amount}"
            )
        normalized = self._withdrawal_normalized(asset_id, entry, raw_amount)

        aggregate = self._state.aggregate(asset_id)
        new_entry = entry.debit(raw_amount, normalized)
        new_aggregate = checked_sub(aggregate, normalized)

        # Effects before interaction. Readers keep the settled values until
        # the push confirms.
        self._settled_entries[(asset_id, recipient)] = entry
        self._settled_aggregates[asset_id] = aggregate
        self._state.set_entry(asset_id, recipient, new_entry)
        self._state.aggregates[asset_id] = new_aggregate
        try:
            ok = self.transfer_adapter.push_out(asset_id, recipient, raw_amount)
        except Exception as e:
            self._undo_debit(asset_id, recipient, entry, aggregate)
            raise TransferFailed(f"Outbound transfer of {raw_amount} {asset_id} to {recipient} raised: {e}") from e
        if not ok:
            self._undo_debit(asset_id, recipient, entry, aggregate)
            raise TransferFailed(f"Outbound transfer of {raw_amount} {asset_id} to {recipient} failed")

        self._state.withdraw_count += 1
        record = WithdrawalRecord(
            sequence_number=self._take_sequence(),
            timestamp=self._current_time,
            asset_id=asset_id,
            recipient=recipient,
            raw_amount=raw_amount,
            normalized_amount=normalized,
            caller=caller,
        )
        self.event_log.append(record)
        return record

    def _withdrawal_normalized(self, asset_id: str, entry: BalanceEntry, raw_amount: int) -> int:
        if self.withdrawal_normalization is WithdrawalNormalization.PROPORTIONAL:
            if raw_amount == entry.raw_amount:
                return entry.normalized_amount
            return entry.normalized_amount * raw_amount // entry.raw_amount
        return self.converter.to_common_unit(asset_id, raw_amount)

    def _undo_debit(self, asset_id: str, holder: str, entry: BalanceEntry, aggregate: int) -> None:
        self._state.set_entry(asset_id, holder, entry)
        self._state.aggregates[asset_id] = aggregate

    def _take_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def _print_rejection(self, operation: str, error: LedgerError) -> None:
        if self.verbose:
            print(f"✗ REJECTED {operation}: {type(error).__name__}: {error}")

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        """Capture the persistable state. Never taken mid-operation."""
        if self._busy is not None:
            raise ReentrantCall(f"snapshot requested while {self._busy} is in flight")
        balances = {
            (asset_id, holder): entry.as_tuple()
            for asset_id, holders in self._state.balances.items()
            for holder, entry in holders.items()
        }
        return LedgerSnapshot(
            balances=balances,
            aggregates=dict(self._state.aggregates),
            deposit_count=self._state.deposit_count,
            withdraw_count=self._state.withdraw_count,
            descriptors=self.registry.descriptors(),
        )

    def load_snapshot(self, snapshot: LedgerSnapshot) -> None:
        """
        Replace all balance state and descriptors with a snapshot.

        Logs are left untouched; they are not part of the persisted layout.
        """
        with self._non_reentrant("load_snapshot"):
            state = LedgerState(
                aggregates=dict(snapshot.aggregates),
                deposit_count=snapshot.deposit_count,
                withdraw_count=snapshot.withdraw_count,
            )
            for (asset_id, holder), (raw, normalized) in snapshot.balances.items():
                state.set_entry(asset_id, holder, BalanceEntry(raw, normalized))
            self.registry.load(dict(snapshot.descriptors))
            self._state = state

    def clone(self) -> LedgerEngine:
        """
        Create an independent copy of this engine.

        Balance state, descriptors and logs are copied; collaborators
        (transfer adapter, access gate, price sources) are shared.
        """
        registry = AssetRegistry(self.registry.resolve(NATIVE_ASSET).native_precision)
        registry.load(self.registry.descriptors())
        cloned = LedgerEngine(
            self.name,
            transfer_adapter=self.transfer_adapter,
            access_gate=self.access_gate,
            limits=self.limits,
            registry=registry,
            common_decimals=self.converter.common_decimals,
            max_price_age=self.converter.max_price_age,
            withdrawal_normalization=self.withdrawal_normalization,
            initial_time=self._current_time,
            verbose=self.verbose,
        )
        cloned._state = LedgerState(
            balances={asset_id: dict(holders) for asset_id, holders in self._state.balances.items()},
            aggregates=dict(self._state.aggregates),
            deposit_count=self._state.deposit_count,
            withdraw_count=self._state.withdraw_count,
        )
        cloned._next_sequence = self._next_sequence
        cloned.event_log = list(self.event_log)
        cloned.config_log = list(self.config_log)
        return cloned

    def __repr__(self):
        return (f"LedgerEngine({self.name!r}, {len(self.registry.list_assets())} assets, "
                f"deposits={self.deposit_count}, withdrawals={self.withdraw_count})")
