"""
Config -> Kernel bridge.

The kernel must never import stock_config, so the translation from the
parsed YAML shape to the kernel's StockPolicy lives here.
"""

from __future__ import annotations

from stock_config.schema import StockConfig
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import MovementReason


def to_policy(config: StockConfig) -> StockPolicy:
    return StockPolicy(
        backoff_base_seconds=config.sync.backoff_base_seconds,
        backoff_multiplier=config.sync.backoff_multiplier,
        backoff_cap_seconds=config.sync.backoff_cap_seconds,
        default_sync_frequency_seconds=config.sync.default_frequency_seconds,
        lease_timeout_seconds=config.sync.lease_timeout_seconds,
        default_batch_size=config.sync.default_batch_size,
        recompute_lookback_days=config.snapshot.recompute_lookback_days,
        auto_recompute_late_movements=config.snapshot.auto_recompute_late_movements,
        fuzzy_matching_enabled=config.resolver.fuzzy_matching_enabled,
        max_conflict_retries=config.resolver.max_conflict_retries,
        reasons_warn_on_negative=frozenset(
            MovementReason(r) for r in config.ledger.reasons_warn_on_negative
        ),
    )
