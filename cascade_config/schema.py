"""
Configuration schema (``cascade_config.schema``).

Every runtime knob of the cascade is a field on a frozen dataclass here.
Defaults reproduce the production setup, so ``CascadeConfig()`` is a
valid configuration on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class PoolAccountConfig:
    """Bookkeeping account prefixes that make up the overhead pool.

    An account number matches a prefix when it starts with it, so ``7``
    covers every 7xx account. Ignored prefixes win over excluded ones,
    which win over included ones.
    """

    included: tuple[str, ...] = (
        "401", "402-03", "402-04", "403", "404", "405", "406", "409", "550",
    )
    excluded: tuple[str, ...] = ("402-01", "402-02")
    ignored: tuple[str, ...] = ("7",)


@dataclass(frozen=True)
class CascadeConfig:
    """Top-level cascade configuration."""

    # Change-gate: absolute currency tolerance, strictly-greater-than.
    change_tolerance: Decimal = Decimal("0.005")

    # Document store limits
    in_query_limit: int = 10
    write_batch_limit: int = 400

    # Exchange rates for the accounting overhead pool
    rate_lookback_days: int = 7
    pool_currency: str = "PLN"
    base_currency: str = "EUR"
    pool_accounts: PoolAccountConfig = field(default_factory=PoolAccountConfig)

    # Notifications
    alert_user_ids: tuple[str, ...] = ()

    # Orchestration
    max_cascade_rounds: int = 25
    poll_interval_seconds: int = 30
    dispatch_batch_size: int = 100
