"""
Configuration Loader (``stock_config.loader``).

Reads a YAML file and parses it into ``stock_config.schema`` dataclasses.
Callers should go through ``stock_config.get_active_config()``; the loader
is exposed for tests and tooling.

Invariants enforced
-------------------
* Unknown sections or keys are rejected, so a typo never silently falls
  back to a default.
* Type errors raise ``ValueError`` naming the dotted key
  (``sync.backoff_cap_seconds``).
* ``compute_checksum`` is deterministic for equal parsed content,
  independent of key order or comments in the file.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    ALL_REASONS,
    LedgerConfig,
    ResolverConfig,
    SnapshotConfig,
    StockConfig,
    SyncConfig,
)
from stock_kernel.utils.hashing import hash_payload

_SECTIONS: dict[str, type] = {
    "sync": SyncConfig,
    "snapshot": SnapshotConfig,
    "resolver": ResolverConfig,
    "ledger": LedgerConfig,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields ``{}``."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _parse_int(key: str, value: Any, minimum: int) -> int:
    # bool is an int subclass; "true" is never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{key}: must be >= {minimum}, got {value}")
    return value


def _parse_bool(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{key}: expected true/false, got {value!r}")
    return value


def _parse_reasons(key: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"{key}: expected a list of movement reasons")
    reasons: list[str] = []
    for item in value:
        if item not in ALL_REASONS:
            raise ValueError(f"{key}: unknown movement reason {item!r}")
        if item not in reasons:
            reasons.append(item)
    return tuple(sorted(reasons))


_MINIMUMS: dict[str, int] = {
    "sync.backoff_base_seconds": 1,
    "sync.backoff_multiplier": 1,
    "sync.backoff_cap_seconds": 1,
    "sync.default_frequency_seconds": 1,
    "sync.lease_timeout_seconds": 1,
    "sync.default_batch_size": 1,
    "snapshot.recompute_lookback_days": 1,
    "resolver.max_conflict_retries": 0,
}


def _parse_section(name: str, data: Any) -> Any:
    section_cls = _SECTIONS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValueError(f"{name}: expected a mapping")

    known = {f.name: f for f in fields(section_cls)}
    values: dict[str, Any] = {}
    for key, raw in data.items():
        dotted = f"{name}.{key}"
        if key not in known:
            raise ValueError(f"{dotted}: unknown setting")
        default = getattr(section_cls(), key)
        if isinstance(default, bool):
            values[key] = _parse_bool(dotted, raw)
        elif isinstance(default, int):
            values[key] = _parse_int(dotted, raw, _MINIMUMS.get(dotted, 0))
        else:
            values[key] = _parse_reasons(dotted, raw)
    return section_cls(**values)


def parse_config(data: dict[str, Any], source_path: str | None = None) -> StockConfig:
    """
    Parse a raw mapping into a StockConfig.

    Raises:
        ValueError: Unknown section or key, wrong type, out-of-range value,
            or ``sync.backoff_cap_seconds`` below ``sync.backoff_base_seconds``.
    """
    for section in data:
        if section not in _SECTIONS:
            raise ValueError(f"{section}: unknown configuration section")

    config = StockConfig(
        sync=_parse_section("sync", data.get("sync")),
        snapshot=_parse_section("snapshot", data.get("snapshot")),
        resolver=_parse_section("resolver", data.get("resolver")),
        ledger=_parse_section("ledger", data.get("ledger")),
        source_path=source_path,
    )
    if config.sync.backoff_cap_seconds < config.sync.backoff_base_seconds:
        raise ValueError(
            "sync.backoff_cap_seconds: must be >= sync.backoff_base_seconds"
        )
    return replace(config, checksum=compute_checksum(config))


def compute_checksum(config: StockConfig) -> str:
    """SHA-256 over the parsed sections (checksum and path excluded)."""
    content = {name: asdict(getattr(config, name)) for name in _SECTIONS}
    return hash_payload(content)


def load_config(path: Path) -> StockConfig:
    return parse_config(load_yaml_file(path), source_path=str(path))
