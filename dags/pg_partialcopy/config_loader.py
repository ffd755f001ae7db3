from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Dict

from pg_partialcopy.CopyConfig import CopyConfig, DestinationConfig, SourceConfig, Step

LOG = logging.getLogger(__name__)

_SOURCE_KEYS = {"database_url", "before_transaction_sql"}
_DESTINATION_KEYS = {"database_url", "prepare_command"}
_STEP_KEYS = {"table_name", "select_sql", "before_copy_sql", "after_copy_sql"}

# ------------------------ Helpers ------------------------

def _opt_str(section: str, data: Dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{section}.{key} must be a string, got {type(value).__name__}")
    return value if value.strip() else None

def _req_str(section: str, data: Dict[str, Any], key: str) -> str:
    value = _opt_str(section, data, key)
    if value is None:
        raise ValueError(f"{section}.{key} is required")
    return value

def _table(section: str, data: Any, allowed: set) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{section} must be a table")
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown key(s) in {section}: {', '.join(unknown)}")
    return data

# ------------------------ Configuration helpers ------------------------

def config_from_dict(data: Dict[str, Any]) -> CopyConfig:
    root = _table("config", data, {"source", "destination", "steps"})
    src = _table("source", root.get("source", {}), _SOURCE_KEYS)
    dst = _table("destination", root.get("destination", {}), _DESTINATION_KEYS)

    raw_steps = root.get("steps", [])
    if not isinstance(raw_steps, list):
        raise ValueError("steps must be an array of tables")

    steps = []
    for i, raw in enumerate(raw_steps):
        section = f"steps[{i}]"
        st = _table(section, raw, _STEP_KEYS)
        steps.append(
            Step(
                table_name=_req_str(section, st, "table_name"),
                select_sql=_opt_str(section, st, "select_sql"),
                before_copy_sql=_opt_str(section, st, "before_copy_sql"),
                after_copy_sql=_opt_str(section, st, "after_copy_sql"),
            )
        )

    return CopyConfig(
        source=SourceConfig(
            database_url=_req_str("source", src, "database_url"),
            before_transaction_sql=_opt_str("source", src, "before_transaction_sql"),
        ),
        destination=DestinationConfig(
            database_url=_req_str("destination", dst, "database_url"),
            prepare_command=_opt_str("destination", dst, "prepare_command"),
        ),
        steps=tuple(steps),
    )

def parse_config(text: str) -> CopyConfig:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in config: {e}") from e
    return config_from_dict(data)

def load_config(path: str | Path) -> CopyConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        raise ValueError(f"Config file {path} is empty")
    try:
        cfg = parse_config(raw)
    except ValueError as e:
        raise ValueError(f"Error reading config file {path}: {e}") from e
    LOG.info("Loaded config from %s (%d step(s))", path, len(cfg.steps))
    return cfg
