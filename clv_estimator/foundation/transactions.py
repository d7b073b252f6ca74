"""Transaction events and per-customer timelines.

The transaction log is the only raw input of the CLV pipeline. Each event
carries a customer identifier, a positive revenue amount and a timestamp.
Before any statistic is computed the log is collapsed into one
:class:`CustomerTimeline` per customer: events are sorted chronologically and
events sharing an identical timestamp are merged into a single event (amounts
summed), so a split order line never inflates the repeat-transaction count.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Union

from clv_estimator.errors import InvalidInputError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0  # 60 * 60 * 24
DAYS_PER_YEAR = 365.25

#: Accepted keys for the event timestamp in raw rows, in lookup order.
TIMESTAMP_KEYS = ("timestamp", "event_ts", "order_ts")


class TimeUnit(str, Enum):
    """Unit in which elapsed times (``t_x``, ``T_cal``, horizons) are expressed."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def seconds(self) -> float:
        """Fixed conversion factor from one unit to seconds."""
        days = {
            TimeUnit.DAY: 1.0,
            TimeUnit.WEEK: 7.0,
            TimeUnit.MONTH: DAYS_PER_YEAR / 12,
            TimeUnit.YEAR: DAYS_PER_YEAR,
        }[self]
        return days * SECONDS_PER_DAY

    def convert(self, delta: timedelta) -> float:
        """Express ``delta`` in this unit."""
        return delta.total_seconds() / self.seconds


@dataclass(frozen=True)
class TransactionEvent:
    """A single revenue event from the transaction log.

    Attributes
    ----------
    customer_id:
        Identifier of the purchasing customer. Must be non-empty.
    amount:
        Revenue of the event. Must be a finite number greater than zero;
        refunds and zero-value rows are filtered upstream.
    timestamp:
        When the event happened. All events of one log must be either
        timezone-aware or timezone-naive.
    """

    customer_id: str
    amount: float
    timestamp: datetime

    def __post_init__(self) -> None:
        if self.customer_id is None or not str(self.customer_id).strip():
            raise InvalidInputError(
                f"Transaction event is missing a customer identifier "
                f"(amount={self.amount}, timestamp={self.timestamp})"
            )
        if not isinstance(self.timestamp, datetime):
            raise InvalidInputError(
                f"timestamp must be a datetime instance, got "
                f"{type(self.timestamp).__name__} (customer_id={self.customer_id})"
            )
        try:
            amount = float(self.amount)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(
                f"amount must be numeric, got {self.amount!r} "
                f"(customer_id={self.customer_id})"
            ) from exc
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError(
                f"amount must be positive (>0): {self.amount} "
                f"(customer_id={self.customer_id})"
            )
        object.__setattr__(self, "customer_id", str(self.customer_id))
        object.__setattr__(self, "amount", amount)

    @classmethod
    def from_mapping(
        cls, record: Mapping[str, Any], index: int | None = None
    ) -> "TransactionEvent":
        """Build an event from a raw row as returned by the log source.

        ``timestamp`` may also be supplied as ``event_ts`` or ``order_ts``;
        ISO-8601 strings (including a trailing ``Z``) are parsed.
        """
        location = f"row {index}" if index is not None else "row"
        customer_id = record.get("customer_id")
        if customer_id is None:
            raise InvalidInputError(f"Transaction {location} missing key customer_id")
        if "amount" not in record:
            raise InvalidInputError(f"Transaction {location} missing key amount")

        raw_ts = next((record[key] for key in TIMESTAMP_KEYS if key in record), None)
        if isinstance(raw_ts, str):
            try:
                raw_ts = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
            except ValueError as exc:
                raise InvalidInputError(
                    f"Transaction {location}: failed to parse timestamp {raw_ts!r}"
                ) from exc
        if raw_ts is None:
            raise InvalidInputError(
                f"Transaction {location} must provide one of {TIMESTAMP_KEYS}"
            )
        return cls(customer_id=customer_id, amount=record["amount"], timestamp=raw_ts)


@dataclass(frozen=True)
class CustomerTimeline:
    """Chronological, de-duplicated events of one customer.

    ``timestamps`` are strictly increasing; ``amounts[i]`` is the (merged)
    revenue at ``timestamps[i]``.
    """

    customer_id: str
    timestamps: tuple[datetime, ...]
    amounts: tuple[float, ...]

    @property
    def first_ts(self) -> datetime:
        return self.timestamps[0]

    @property
    def last_ts(self) -> datetime:
        return self.timestamps[-1]

    def __len__(self) -> int:
        return len(self.timestamps)


EventLike = Union[TransactionEvent, Mapping[str, Any]]


def collapse_transactions(events: Iterable[EventLike]) -> list[CustomerTimeline]:
    """Group events by customer and merge same-timestamp events.

    Parameters
    ----------
    events:
        :class:`TransactionEvent` instances or raw mappings accepted by
        :meth:`TransactionEvent.from_mapping`, in any order.

    Returns
    -------
    list[CustomerTimeline]
        One timeline per distinct customer, sorted by ``customer_id``.
        Empty when ``events`` is empty.

    Raises
    ------
    InvalidInputError:
        If an event is malformed (missing customer, non-positive amount) or
        the log mixes timezone-aware and naive timestamps.
    """
    grouped: dict[str, dict[datetime, Decimal]] = {}
    tz_aware: bool | None = None
    n_events = 0
    n_merged = 0

    for idx, raw in enumerate(events):
        event = (
            raw
            if isinstance(raw, TransactionEvent)
            else TransactionEvent.from_mapping(raw, index=idx)
        )
        aware = event.timestamp.tzinfo is not None
        if tz_aware is None:
            tz_aware = aware
        elif aware != tz_aware:
            raise InvalidInputError(
                f"Transaction {idx} mixes timezone-aware and naive timestamps "
                f"(customer_id={event.customer_id}). Use one convention, "
                "preferably UTC, for the whole log."
            )

        n_events += 1
        bucket = grouped.setdefault(event.customer_id, {})
        if event.timestamp in bucket:
            n_merged += 1
            bucket[event.timestamp] += Decimal(str(event.amount))
        else:
            bucket[event.timestamp] = Decimal(str(event.amount))

    timelines: list[CustomerTimeline] = []
    for customer_id in sorted(grouped):
        bucket = grouped[customer_id]
        ordered = sorted(bucket)
        timelines.append(
            CustomerTimeline(
                customer_id=customer_id,
                timestamps=tuple(ordered),
                amounts=tuple(float(bucket[ts]) for ts in ordered),
            )
        )

    logger.info(
        f"Collapsed {n_events} transaction events into {len(timelines)} customer "
        f"timelines ({n_merged} same-timestamp events merged)"
    )
    return timelines
