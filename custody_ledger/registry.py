"""
registry.py - Per-asset metadata

The AssetRegistry holds one AssetDescriptor per supported asset. The native
currency is always present; every other asset must be configured before use.

The registry keeps no history. configure() returns the (old, new) pair so the
caller can record the transition.
"""

from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .core import (
    AssetDescriptor, PriceReading, PriceSource,
    NATIVE_ASSET, NATIVE_DECIMALS, MAX_PRECISION,
    AssetNotConfigured, InvalidAddress, InvalidPrecision, InvalidPriceSource,
    same_awareness, validate_identifier,
)


def probe_price_source(
    price_source: PriceSource,
    reference_time: Optional[datetime] = None,
) -> PriceReading:
    """
    Query a price source once to prove it is live.

    Any exception, or a reply that is not a PriceReading, surfaces as
    InvalidPriceSource. When reference_time is given the reading must agree
    with it on timezone awareness, so later staleness checks can compare them.
    """
    latest = getattr(price_source, "latest", None)
    if not callable(latest):
        raise InvalidPriceSource(f"{price_source!r} has no latest() method")
    try:
        reading = latest()
    except Exception as e:
        raise InvalidPriceSource(f"Price source {price_source!r} failed probe: {e}") from e
    if not isinstance(reading, PriceReading):
        raise InvalidPriceSource(
            f"Price source {price_source!r} returned {type(reading).__name__}, expected PriceReading"
        )
    if reference_time is not None and not same_awareness(reading.timestamp, reference_time):
        raise InvalidPriceSource(
            f"Price source {price_source!r} timestamp {reading.timestamp} and clock "
            f"{reference_time} disagree on timezone awareness"
        )
    return reading


class AssetRegistry:
    """
    Registry of asset descriptors.

    Example:
        registry = AssetRegistry()
        registry.configure("0xUSDC", 6)
        registry.resolve("0xUSDC")        # AssetDescriptor(6, None)
        registry.resolve(NATIVE_ASSET)    # AssetDescriptor(18, None)
    """

    def __init__(self, native_precision: int = NATIVE_DECIMALS):
        _validate_precision(native_precision)
        self._native = AssetDescriptor(native_precision)
        self._descriptors: Dict[str, AssetDescriptor] = {}

    def resolve(self, asset_id: str) -> AssetDescriptor:
        """
        Return the descriptor for an asset.

        Raises:
            AssetNotConfigured: If asset_id is not native and has no
                                descriptor with non-zero precision
        """
        if asset_id == NATIVE_ASSET:
            return self._native
        descriptor = self._descriptors.get(asset_id)
        if descriptor is None or not descriptor.is_configured:
            raise AssetNotConfigured(f"Asset {asset_id} not configured")
        return descriptor

    def is_configured(self, asset_id: str) -> bool:
        if asset_id == NATIVE_ASSET:
            return True
        descriptor = self._descriptors.get(asset_id)
        return descriptor is not None and descriptor.is_configured

    def list_assets(self) -> List[str]:
        """List configured asset ids, native first."""
        return [NATIVE_ASSET] + sorted(self._descriptors)

    def configure(
        self,
        asset_id: str,
        precision: int,
        price_source: Optional[PriceSource] = None,
        reference_time: Optional[datetime] = None,
    ) -> Tuple[Optional[AssetDescriptor], AssetDescriptor]:
        """
        Overwrite the descriptor of a token.

        Args:
            asset_id: Token identifier (must not be the native sentinel)
            precision: Native fractional digits, 1..MAX_PRECISION
            price_source: Optional live feed, probed before it is accepted
            reference_time: Clock reading the probe is checked against

        Returns:
            (old, new) descriptors; old is None for a first configuration

        Raises:
            InvalidAddress: If asset_id is empty or the native sentinel
            InvalidPrecision: If precision is out of range
            InvalidPriceSource: If the price source probe fails
        """
        validate_identifier(asset_id, "asset_id")
        if asset_id == NATIVE_ASSET:
            raise InvalidAddress(
                f"{NATIVE_ASSET} is reserved for the native currency; use configure_native()"
            )
        _validate_precision(precision)
        if price_source is not None:
            probe_price_source(price_source, reference_time)

        old = self._descriptors.get(asset_id)
        new = AssetDescriptor(precision, price_source)
        self._descriptors[asset_id] = new
        return old, new

    def configure_native(
        self,
        price_source: Optional[PriceSource],
        reference_time: Optional[datetime] = None,
    ) -> Tuple[AssetDescriptor, AssetDescriptor]:
        """Set or clear the native currency's price source. Precision is fixed."""
        if price_source is not None:
            probe_price_source(price_source, reference_time)
        old = self._native
        self._native = AssetDescriptor(old.native_precision, price_source)
        return old, self._native

    def descriptors(self) -> Dict[str, AssetDescriptor]:
        """Return a copy of all descriptors, native included."""
        result = {NATIVE_ASSET: self._native}
        result.update(self._descriptors)
        return result

    def load(self, descriptors: Dict[str, AssetDescriptor]) -> None:
        """
        Replace every descriptor without probing price sources.

        Used when restoring persisted state.
        """
        native = descriptors.get(NATIVE_ASSET, self._native)
        _validate_precision(native.native_precision)
        self._native = native
        self._descriptors = {k: v for k, v in descriptors.items() if k != NATIVE_ASSET}

    def __repr__(self):
        return f"AssetRegistry({len(self._descriptors)} tokens, native_precision={self._native.native_precision})"


def _validate_precision(precision: int) -> None:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise InvalidPrecision(f"Precision must be int, got {type(precision).__name__}")
    if not 1 <= precision <= MAX_PRECISION:
        raise InvalidPrecision(f"Precision {precision} outside 1..{MAX_PRECISION}")
