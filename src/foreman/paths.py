"""Canonical filesystem paths for foreman configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

FOREMAN_CONFIG_DIR = Path.home() / ".config" / "foreman"

CONFIG_PATH = FOREMAN_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("FOREMAN_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else FOREMAN_CONFIG_DIR / "foreman.db"

SYSTEM_PROMPT_FILENAME = "AGENT_SYSTEM_PROMPT.md"
MANIFEST_FILENAME = "MANIFEST.md"
QUALITY_GATE_PATH = Path(".foreman") / "quality_gate.json"
