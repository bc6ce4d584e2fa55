"""
collaborators.py - Reference AccessGate and AssetTransferAdapter implementations

The ledger engine only decides admissibility and balance state. Who may call
what, and how value actually moves, live behind these collaborators.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Iterable, Optional, Set

from .core import NATIVE_ASSET


class OpenAccessGate:
    """AccessGate that authorizes every caller for every operation."""

    def is_authorized(self, caller: str, operation: str) -> bool:
        return True

    def __repr__(self):
        return "OpenAccessGate()"


class RoleAccessGate:
    """
    AccessGate backed by per-operation grant sets.

    Example:
        gate = RoleAccessGate({"withdraw": {"operator"}, "configure": {"admin"}})
        gate.is_authorized("operator", "withdraw")   # True
        gate.is_authorized("operator", "configure")  # False
    """

    def __init__(self, grants: Optional[Dict[str, Iterable[str]]] = None):
        self._grants: Dict[str, Set[str]] = defaultdict(set)
        for operation, callers in (grants or {}).items():
            self._grants[operation].update(callers)

    def is_authorized(self, caller: str, operation: str) -> bool:
        return caller in self._grants.get(operation, ())

    def grant(self, caller: str, operation: str) -> None:
        self._grants[operation].add(caller)

    def revoke(self, caller: str, operation: str) -> None:
        self._grants[operation].discard(caller)

    def __repr__(self):
        return f"RoleAccessGate({ {op: sorted(c) for op, c in self._grants.items()} })"


class InMemoryTransferAdapter:
    """
    Transfer adapter that moves value between in-memory external wallets and
    a custody account.

    pull_in fails when the source wallet lacks funds; push_out fails when
    custody lacks funds. Native value arrives attached to the deposit call,
    so accept_native() only books it into custody.
    """

    def __init__(self):
        self.wallets: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.custody: Dict[str, int] = defaultdict(int)

    def fund(self, wallet: str, asset_id: str, raw_amount: int) -> None:
        """Give an external wallet a balance to deposit from."""
        self.wallets[wallet][asset_id] += raw_amount

    def balance_of(self, wallet: str, asset_id: str) -> int:
        return self.wallets.get(wallet, {}).get(asset_id, 0)

    def accept_native(self, source: str, raw_amount: int) -> bool:
        self.custody[NATIVE_ASSET] += raw_amount
        return True

    def pull_in(self, asset_id: str, source: str, raw_amount: int) -> bool:
        if self.balance_of(source, asset_id) < raw_amount:
            return False
        self.wallets[source][asset_id] -= raw_amount
        self.custody[asset_id] += raw_amount
        return True

    def push_out(self, asset_id: str, dest: str, raw_amount: int) -> bool:
        if self.custody.get(asset_id, 0) < raw_amount:
            return False
        self.custody[asset_id] -= raw_amount
        self.wallets[dest][asset_id] += raw_amount
        return True

    def __repr__(self):
        return f"InMemoryTransferAdapter({len(self.wallets)} wallets, {len(self.custody)} assets in custody)"
