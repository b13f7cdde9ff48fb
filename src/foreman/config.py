"""Coordinator and DAG executor configuration.

Values resolve as defaults < ``~/.config/foreman/config.toml`` < environment::

    [coordinator]
    max_concurrent_agents = 5
    default_max_turns = 100
    default_agent = "augment"
    auto_qc = true
    auto_merge_on_qc_pass = false

    [dag]
    max_concurrency = 6
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from foreman.paths import CONFIG_PATH

log = logging.getLogger(__name__)

DEFAULT_DAG_MAX_CONCURRENCY = 6

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _int_env(name: str, default: int, *, min_value: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, int(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    log.warning("Invalid %s=%r; falling back to %s", name, raw, default)
    return default


@dataclass
class CoordinatorConfig:
    max_concurrent_agents: int = 5
    default_max_turns: int = 100
    default_agent: str = "augment"
    auto_qc: bool = True
    auto_merge_on_qc_pass: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def merged(self, partial: dict[str, Any]) -> CoordinatorConfig:
        """Return a copy with *partial* applied; rejects unknown keys and bad values."""
        names = {f.name for f in dataclasses.fields(self)}
        unknown = set(partial) - names
        if unknown:
            raise ValueError(f"Unknown coordinator config keys: {sorted(unknown)}")
        merged = dataclasses.replace(self, **partial)
        merged.validate()
        return merged

    def validate(self) -> None:
        for name in ("max_concurrent_agents", "default_max_turns"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.default_agent, str) or not self.default_agent.strip():
            raise ValueError("default_agent must be a non-empty string")
        for name in ("auto_qc", "auto_merge_on_qc_pass"):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"{name} must be a boolean")


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to read config file %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _section(document: dict[str, Any], name: str) -> dict[str, Any]:
    section = document.get(name)
    return section if isinstance(section, dict) else {}


def load_coordinator_config(path: Path | None = None) -> CoordinatorConfig:
    """Resolve the effective coordinator config."""
    config = CoordinatorConfig()
    file_values = _section(_read_toml_file(path or CONFIG_PATH), "coordinator")
    if file_values:
        try:
            config = config.merged(file_values)
        except ValueError:
            log.warning("Ignoring invalid [coordinator] section in config", exc_info=True)

    return dataclasses.replace(
        config,
        max_concurrent_agents=_int_env(
            "FOREMAN_MAX_CONCURRENT_AGENTS", config.max_concurrent_agents, min_value=1
        ),
        default_max_turns=_int_env(
            "FOREMAN_DEFAULT_MAX_TURNS", config.default_max_turns, min_value=1
        ),
        default_agent=os.environ.get("FOREMAN_DEFAULT_AGENT") or config.default_agent,
        auto_qc=_bool_env("FOREMAN_AUTO_QC", config.auto_qc),
        auto_merge_on_qc_pass=_bool_env(
            "FOREMAN_AUTO_MERGE_ON_QC_PASS", config.auto_merge_on_qc_pass
        ),
    )


def load_dag_max_concurrency(path: Path | None = None) -> int:
    """Resolve the global DAG concurrency cap."""
    value = _section(_read_toml_file(path or CONFIG_PATH), "dag").get("max_concurrency")
    default = DEFAULT_DAG_MAX_CONCURRENCY
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        default = value
    elif value is not None:
        log.warning("Invalid [dag] max_concurrency=%r; using %d", value, default)
    return _int_env("FOREMAN_DAG_MAX_CONCURRENCY", default, min_value=1)
