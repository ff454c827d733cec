"""
StockPolicy -- the runtime tuning knobs the kernel reads.

Responsibility:
    A frozen value object handed to services by their caller.  The kernel
    never reads configuration files itself; ``stock_config`` builds a
    StockPolicy from YAML and passes it in.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from stock_kernel.domain.types import MovementReason


@dataclass(frozen=True)
class StockPolicy:
    """Kernel-facing policy values. Defaults mirror stock_config/defaults.yaml."""

    # Sync cursor scheduling
    backoff_base_seconds: int = 60
    backoff_multiplier: int = 2
    backoff_cap_seconds: int = 3600
    default_sync_frequency_seconds: int = 300
    lease_timeout_seconds: int = 900
    default_batch_size: int = 100

    # Snapshots
    recompute_lookback_days: int = 31
    auto_recompute_late_movements: bool = True

    # Identity resolution
    fuzzy_matching_enabled: bool = False
    max_conflict_retries: int = 3

    # Reasons that raise a NegativeBalance warning when on_hand drops below 0
    reasons_warn_on_negative: frozenset[MovementReason] = field(
        default_factory=lambda: frozenset(MovementReason)
    )

    def __post_init__(self) -> None:
        if self.backoff_base_seconds <= 0:
            raise ValueError("backoff_base_seconds must be positive")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        if self.lease_timeout_seconds <= 0:
            raise ValueError("lease_timeout_seconds must be positive")
        if self.recompute_lookback_days < 1:
            raise ValueError("recompute_lookback_days must be >= 1")
        if self.max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")
