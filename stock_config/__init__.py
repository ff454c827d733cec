"""
stock_config -- single public entrypoint for stock engine configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains settings.
    It loads YAML (``defaults.yaml`` next to this file unless a path is
    given), validates it, and returns the kernel's frozen StockPolicy.

Architecture position:
    Sits above ``stock_kernel`` and below ``stock_batch``.  The kernel
    never imports this package; ``bridges`` translates into kernel types.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``ValueError`` -- a section or key is unknown or has a bad value;
      the message starts with the dotted key.
"""

from __future__ import annotations

import logging
from pathlib import Path

from stock_config.bridges import to_policy
from stock_config.loader import load_config
from stock_config.schema import StockConfig
from stock_kernel.domain.policy import StockPolicy

_logger = logging.getLogger("stock_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> StockPolicy:
    """Load, validate and bridge configuration into a StockPolicy.

    Emits one ``stock_config_loaded`` log entry carrying the checksum so
    every run can be tied back to the exact settings that governed it.
    """
    config = load_active_stock_config(path)
    policy = to_policy(config)
    _logger.info(
        "stock_config_loaded",
        extra={
            "config_path": config.source_path,
            "checksum": config.checksum,
            "lease_timeout_seconds": policy.lease_timeout_seconds,
            "recompute_lookback_days": policy.recompute_lookback_days,
            "fuzzy_matching_enabled": policy.fuzzy_matching_enabled,
        },
    )
    return policy


def load_active_stock_config(path: Path | str | None = None) -> StockConfig:
    """Parsed StockConfig without bridging; used by tooling and tests."""
    return load_config(Path(path) if path is not None else DEFAULT_CONFIG_PATH)


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "StockConfig",
    "get_active_config",
    "load_active_stock_config",
]
