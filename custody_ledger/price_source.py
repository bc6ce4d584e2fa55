"""
price_source.py - Price feeds for common-unit conversion

Provides PriceSource implementations that the PriceConverter can consult.

Classes:
- StaticPriceSource: A single reading, replaced on update
- TimeSeriesPriceSource: Historical readings with point-in-time lookup

All prices are integers denominated in the common accounting unit, scaled by
10**decimals.
"""

from bisect import bisect_right
from datetime import datetime
from typing import List, Optional, Tuple

from .core import PriceReading


class StaticPriceSource:
    """
    Price source with one current reading.

    update_price() replaces the reading; the timestamp moves with it so the
    feed can be aged past the staleness window in tests and simulations.
    """

    def __init__(self, price: int, decimals: int, timestamp: datetime):
        """
        Args:
            price: Integer price scaled by 10**decimals
            decimals: Fractional digits of the price
            timestamp: Observation time of the price
        """
        self._reading = PriceReading(price, timestamp, decimals)

    @property
    def decimals(self) -> int:
        return self._reading.decimals

    def latest(self) -> PriceReading:
        return self._reading

    def update_price(self, price: int, timestamp: datetime) -> None:
        """Replace the current reading, keeping the same decimals."""
        self._reading = PriceReading(price, timestamp, self._reading.decimals)

    def __repr__(self):
        r = self._reading
        return f"StaticPriceSource(price={r.price}, decimals={r.decimals}, at={r.timestamp.isoformat()})"


class TimeSeriesPriceSource:
    """
    Price source with time-varying prices.

    latest() returns the observation with the greatest timestamp.
    price_at() returns the most recent observation at or before a time.

    Example:
        feed = TimeSeriesPriceSource(8)
        feed.add_price(datetime(2025, 1, 1), 3000 * 10**8)
        feed.add_price(datetime(2025, 1, 2), 3100 * 10**8)
        feed.latest().price  # 310000000000
    """

    def __init__(
        self,
        decimals: int,
        observations: Optional[List[Tuple[datetime, int]]] = None,
    ):
        self.decimals = decimals
        self.price_history: List[Tuple[datetime, int]] = sorted(
            observations or [], key=lambda x: x[0]
        )

    def add_price(self, timestamp: datetime, price: int) -> None:
        """Add an observation, keeping history in timestamp order."""
        self.price_history.append((timestamp, price))
        self.price_history.sort(key=lambda x: x[0])

    def latest(self) -> PriceReading:
        """
        Return the newest observation.

        Raises:
            LookupError: If no observations exist
        """
        if not self.price_history:
            raise LookupError("No price observations")
        timestamp, price = self.price_history[-1]
        return PriceReading(price, timestamp, self.decimals)

    def price_at(self, timestamp: datetime) -> Optional[PriceReading]:
        """
        Get the reading at or before the specified timestamp.

        Returns None if no observation precedes it. Uses binary search.
        """
        timestamps = [ts for ts, _ in self.price_history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        ts, price = self.price_history[idx - 1]
        return PriceReading(price, ts, self.decimals)

    def get_all_timestamps(self) -> List[datetime]:
        return [ts for ts, _ in self.price_history]

    def __repr__(self):
        return f"TimeSeriesPriceSource({len(self.price_history)} observations, decimals={self.decimals})"
