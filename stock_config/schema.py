"""
Configuration schema (``stock_config.schema``).

Frozen dataclasses mirroring the sections of ``defaults.yaml``.  They hold
plain values only; ``stock_config.bridges`` turns a StockConfig into the
kernel's StockPolicy.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ALL_REASONS: tuple[str, ...] = (
    "sale",
    "refund",
    "receipt",
    "adjustment",
    "transfer_out",
    "transfer_in",
    "stocktake",
    "sync",
)


@dataclass(frozen=True)
class SyncConfig:
    backoff_base_seconds: int = 60
    backoff_multiplier: int = 2
    backoff_cap_seconds: int = 3600
    default_frequency_seconds: int = 300
    lease_timeout_seconds: int = 900
    default_batch_size: int = 100


@dataclass(frozen=True)
class SnapshotConfig:
    recompute_lookback_days: int = 31
    auto_recompute_late_movements: bool = True


@dataclass(frozen=True)
class ResolverConfig:
    fuzzy_matching_enabled: bool = False
    max_conflict_retries: int = 3


@dataclass(frozen=True)
class LedgerConfig:
    reasons_warn_on_negative: tuple[str, ...] = ALL_REASONS


@dataclass(frozen=True)
class StockConfig:
    """Fully parsed configuration plus the checksum of its source."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    checksum: str = ""
    source_path: str | None = None
