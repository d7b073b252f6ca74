from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import random
from typing import List, Optional

from clv_estimator.foundation.transactions import TimeUnit, TransactionEvent
from clv_estimator.models.bg_nbd import BGNBDParameters
from clv_estimator.models.gamma_gamma import GammaGammaParameters


DEFAULT_SPEND_PARAMS = GammaGammaParameters(p=6.0, q=4.0, gamma=16.0)


@dataclass(frozen=True)
class SimulatedCustomer:
    """Latent traits drawn for one simulated customer.

    Attributes
    ----------
    customer_id: Identifier used on the generated events.
    acquisition_ts: Time of the first purchase.
    purchase_rate: Transactions per time unit while active (lambda).
    dropout_probability: Chance of becoming inactive after each repeat purchase.
    spend_rate: Rate of the customer's Gamma spend distribution (nu).
    """

    customer_id: str
    acquisition_ts: datetime
    purchase_rate: float
    dropout_probability: float
    spend_rate: float


def _draw_customer(
    rng: random.Random,
    index: int,
    acquisition_ts: datetime,
    params: BGNBDParameters,
    spend_params: GammaGammaParameters,
) -> SimulatedCustomer:
    # random.gammavariate takes (shape, scale)
    return SimulatedCustomer(
        customer_id=f"C-{index + 1}",
        acquisition_ts=acquisition_ts,
        purchase_rate=rng.gammavariate(params.r, 1.0 / params.alpha),
        dropout_probability=rng.betavariate(params.a, params.b),
        spend_rate=rng.gammavariate(spend_params.q, 1.0 / spend_params.gamma),
    )


def _sample_amount(
    rng: random.Random, spend_params: GammaGammaParameters, spend_rate: float
) -> float:
    amount = rng.gammavariate(spend_params.p, 1.0 / spend_rate)
    return round(max(amount, 0.01), 2)


def simulate_customer(
    rng: random.Random,
    customer: SimulatedCustomer,
    end: datetime,
    spend_params: GammaGammaParameters,
    time_unit: TimeUnit = TimeUnit.WEEK,
) -> List[TransactionEvent]:
    """Simulate one customer's purchases from acquisition up to ``end``.

    The first purchase happens at acquisition. While active the customer buys
    with exponential gaps at ``purchase_rate``; after every repeat purchase
    they drop out with ``dropout_probability``.
    """

    horizon = time_unit.convert(end - customer.acquisition_ts)
    events = [
        TransactionEvent(
            customer_id=customer.customer_id,
            amount=_sample_amount(rng, spend_params, customer.spend_rate),
            timestamp=customer.acquisition_ts,
        )
    ]
    elapsed = 0.0
    while customer.purchase_rate > 0:
        elapsed += rng.expovariate(customer.purchase_rate)
        if elapsed > horizon:
            break
        events.append(
            TransactionEvent(
                customer_id=customer.customer_id,
                amount=_sample_amount(rng, spend_params, customer.spend_rate),
                timestamp=customer.acquisition_ts
                + timedelta(seconds=elapsed * time_unit.seconds),
            )
        )
        if rng.random() < customer.dropout_probability:
            break
    return events


def generate_bg_nbd_transactions(
    n_customers: int,
    params: BGNBDParameters,
    start: datetime,
    end: datetime,
    *,
    spend_params: Optional[GammaGammaParameters] = None,
    acquisition_end: Optional[datetime] = None,
    time_unit: TimeUnit = TimeUnit.WEEK,
    seed: Optional[int] = None,
) -> List[TransactionEvent]:
    """Generate a transaction log following the BG/NBD and Gamma-Gamma models.

    Customers are acquired uniformly between ``start`` and ``acquisition_end``
    (a single cohort at ``start`` by default) and observed until ``end``.
    ``params.alpha`` is interpreted in ``time_unit``. Events are returned in
    chronological order per customer, customers in id order.
    """

    if n_customers <= 0:
        return []
    if start >= end:
        raise ValueError("start must be earlier than end")
    acquisition_end = acquisition_end or start
    if not start <= acquisition_end <= end:
        raise ValueError("acquisition_end must lie between start and end")
    spend_params = spend_params or DEFAULT_SPEND_PARAMS

    rng = random.Random(seed)
    window = (acquisition_end - start).total_seconds()
    events: List[TransactionEvent] = []
    for i in range(n_customers):
        acquisition_ts = start + timedelta(seconds=rng.uniform(0.0, window))
        customer = _draw_customer(rng, i, acquisition_ts, params, spend_params)
        events.extend(simulate_customer(rng, customer, end, spend_params, time_unit))
    return events
