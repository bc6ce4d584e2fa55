"""
price_converter.py - Conversion of raw asset amounts into the common unit

PriceConverter is pure: it reads the registry, the price source and the clock
but never mutates anything, so it serves read-only quotes as well as deposits
and withdrawals.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Callable

from .core import (
    AssetDescriptor, PriceReading,
    COMMON_DECIMALS, INTERMEDIATE_DECIMALS, MAX_PRICE_AGE, MAX_PRECISION,
    InvalidPrice, StalePrice,
    checked_mul, pow10, rescale, same_awareness, validate_amount,
)
from .registry import AssetRegistry


class PriceConverter:
    """
    Converts raw amounts of any registered asset into the common unit.

    Without a price source the conversion is a decimal rescale only.
    With one, the raw amount is rescaled to INTERMEDIATE_DECIMALS, multiplied
    by the price, then brought down to the common precision:

        rescale(raw, native, 18) * price * 10**common // 10**(18 + price_decimals)

    Every intermediate step is checked against the uint256 bound.

    Example:
        # 1 native unit (18 decimals) at 3000.00000000 -> 3000.000000
        converter.to_common_unit(NATIVE_ASSET, 10**18)  # 3_000_000_000
    """

    def __init__(
        self,
        registry: AssetRegistry,
        clock: Callable[[], datetime],
        common_decimals: int = COMMON_DECIMALS,
        max_price_age: timedelta = MAX_PRICE_AGE,
    ):
        """
        Args:
            registry: Source of asset descriptors
            clock: Returns the current time used for staleness checks
            common_decimals: Precision of the common accounting unit
            max_price_age: Staleness window for price readings
        """
        if not 0 <= common_decimals <= MAX_PRECISION:
            raise ValueError(f"common_decimals {common_decimals} outside 0..{MAX_PRECISION}")
        self.registry = registry
        self.clock = clock
        self.common_decimals = common_decimals
        self.max_price_age = max_price_age

    def to_common_unit(self, asset_id: str, raw_amount: int) -> int:
        """
        Convert raw_amount of asset_id into the common unit.

        Raises:
            AssetNotConfigured: If the asset is not registered
            InvalidPrice: If the price is not positive or is from the future
            StalePrice: If the price is older than max_price_age
            ArithmeticOverflow: If any intermediate leaves the uint256 range
        """
        validate_amount(raw_amount, "raw_amount")
        descriptor = self.registry.resolve(asset_id)
        return self.convert(descriptor, raw_amount)

    def convert(self, descriptor: AssetDescriptor, raw_amount: int) -> int:
        """Convert using an already resolved descriptor."""
        if descriptor.price_source is None:
            return rescale(raw_amount, descriptor.native_precision, self.common_decimals)

        reading = self.read_price(descriptor)
        scaled = rescale(raw_amount, descriptor.native_precision, INTERMEDIATE_DECIMALS)
        valued = checked_mul(checked_mul(scaled, reading.price), pow10(self.common_decimals))
        return valued // pow10(INTERMEDIATE_DECIMALS + reading.decimals)

    def read_price(self, descriptor: AssetDescriptor) -> PriceReading:
        """
        Read and validate the descriptor's price source.

        Raises:
            InvalidPrice: read failed, price <= 0, timestamp after the current time,
                or timestamp and clock disagree on timezone awareness
            StalePrice: reading older than max_price_age
        """
        try:
            reading = descriptor.price_source.latest()
        except Exception as e:
            raise InvalidPrice(f"Price source read failed: {e}") from e
        if not isinstance(reading, PriceReading):
            raise InvalidPrice(f"Price source returned {type(reading).__name__}, expected PriceReading")
        if reading.price <= 0:
            raise InvalidPrice(f"Non-positive price {reading.price}")
        now = self.clock()
        if not same_awareness(reading.timestamp, now):
            raise InvalidPrice(
                f"Price timestamp {reading.timestamp} and current time {now} "
                f"disagree on timezone awareness"
            )
        if reading.timestamp > now:
            raise InvalidPrice(f"Price timestamp {reading.timestamp} is after current time {now}")
        age = now - reading.timestamp
        if age > self.max_price_age:
            raise StalePrice(f"Price is {age} old, limit {self.max_price_age}")
        return reading

    def __repr__(self):
        return f"PriceConverter(common_decimals={self.common_decimals}, max_price_age={self.max_price_age})"
