"""Synthetic data generation utilities.

This package produces transaction logs that follow the BG/NBD purchase
process and Gamma-Gamma spend, to exercise the CLV pipeline without
production data and to check parameter recovery.
"""

from .generator import (
    DEFAULT_SPEND_PARAMS,
    SimulatedCustomer,
    generate_bg_nbd_transactions,
    simulate_customer,
)

__all__ = [
    "DEFAULT_SPEND_PARAMS",
    "SimulatedCustomer",
    "generate_bg_nbd_transactions",
    "simulate_customer",
]
