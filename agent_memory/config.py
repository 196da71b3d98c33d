"""
Memory layer configuration.

Loaded from config/memory.yaml. Every field has a default; a missing file
means all defaults, and a bad value only resets that one field.

Example:
    backend:
      base_url: http://localhost:8000
      api_key: ${MEMORY_BACKEND_API_KEY}
    recall:
      max_results: 6
      search_type: GRAPH_COMPLETION
    consolidation:
      threshold: 10
"""

import logging
import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .backend import DEFAULT_BASE_URL, SEARCH_TYPES
from .memory.decay import DEFAULT_DECAY_RATE, MEMORY_TYPES
from .scopes.types import ScopeConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/memory.yaml"
DEFAULT_STATE_DIR = Path.home() / ".agent-memory"
API_KEY_ENV = "MEMORY_BACKEND_API_KEY"
STATE_DIR_ENV = "AGENT_MEMORY_DIR"

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

# yaml section -> {yaml key: field name}
SECTIONS = {
    "backend": {
        "base_url": "base_url",
        "api_key": "api_key",
        "request_timeout": "request_timeout",
    },
    "recall": {
        "search_type": "search_type",
        "max_results": "max_results",
        "min_score": "min_score",
        "timeout": "recall_timeout",
        "auto_recall": "auto_recall",
    },
    "index": {
        "auto_index": "auto_index",
        "auto_cognify": "auto_cognify",
    },
    "decay": {
        "rate": "decay_rate",
        "type_weights": "type_weights",
        "auto_prune": "auto_prune",
        "prune_threshold": "prune_threshold",
    },
    "consolidation": {
        "enabled": "consolidation_enabled",
        "threshold": "consolidation_threshold",
        "timeout": "consolidation_timeout",
        "stm_max_age_days": "stm_max_age_days",
    },
    "reflection": {
        "enabled": "reflection_enabled",
        "threshold": "reflection_threshold",
        "timeout": "reflection_timeout",
    },
}


@dataclass
class MemoryConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    user_id: str = "owner"
    request_timeout: float = 60.0

    search_type: str = "GRAPH_COMPLETION"
    max_results: int = 6
    min_score: float = 0.0
    recall_timeout: float = 30.0
    auto_recall: bool = True

    auto_index: bool = True
    auto_cognify: bool = True

    decay_rate: float = DEFAULT_DECAY_RATE
    type_weights: dict = field(default_factory=dict)
    auto_prune: bool = False
    prune_threshold: float = 0.05

    consolidation_enabled: bool = True
    consolidation_threshold: int = 10
    consolidation_timeout: float = 60.0
    stm_max_age_days: float = 7.0

    reflection_enabled: bool = True
    reflection_threshold: int = 50
    reflection_timeout: float = 120.0

    maintenance_interval_hours: float = 24.0
    state_dir: Path = field(default_factory=lambda: Path(os.environ.get(STATE_DIR_ENV, DEFAULT_STATE_DIR)))
    workspace_dir: Optional[Path] = None

    scopes: ScopeConfig = field(default_factory=ScopeConfig)


def resolve_env_vars(value: str) -> str:
    """Expand ${VAR} from the environment. Unknown variables are left as-is."""
    return ENV_VAR_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)


def _valid(name: str, value, default) -> bool:
    """Does value have the right shape for this field?"""
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0
    if isinstance(default, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0
    if isinstance(default, str):
        if not isinstance(value, str):
            return False
        if name == "search_type":
            return value in SEARCH_TYPES
        return True
    if name == "type_weights":
        return isinstance(value, dict) and all(
            k in MEMORY_TYPES and isinstance(v, (int, float)) and not isinstance(v, bool)
            for k, v in value.items()
        )
    return True


def config_from_dict(raw) -> MemoryConfig:
    """Build a MemoryConfig from parsed YAML."""
    config = MemoryConfig()
    if not isinstance(raw, dict):
        raw = {}
    defaults = {f.name: getattr(config, f.name) for f in fields(config)}

    values = {}
    for section, keys in SECTIONS.items():
        section_data = raw.get(section)
        if not isinstance(section_data, dict):
            continue
        for key, name in keys.items():
            if key in section_data:
                values[name] = section_data[key]
    for name in ("user_id", "maintenance_interval_hours"):
        if name in raw:
            values[name] = raw[name]

    for name, value in values.items():
        default = defaults[name]
        if isinstance(value, str):
            value = resolve_env_vars(value)
        if not _valid(name, value, default):
            logger.warning(f"Invalid config value for {name}: {value!r}, using default")
            continue
        if isinstance(default, float) and not isinstance(default, bool):
            value = float(value)
        setattr(config, name, value)

    config.base_url = config.base_url.strip() or DEFAULT_BASE_URL
    # Unresolved ${VAR} means the variable isn't set
    if not config.api_key or "${" in config.api_key:
        config.api_key = os.environ.get(API_KEY_ENV, "")

    if raw.get("state_dir"):
        config.state_dir = Path(resolve_env_vars(str(raw["state_dir"]))).expanduser()
    if raw.get("workspace_dir"):
        config.workspace_dir = Path(resolve_env_vars(str(raw["workspace_dir"]))).expanduser()

    config.scopes = ScopeConfig.from_dict(raw.get("scopes"))
    return config


def load_memory_config(config_path: str = DEFAULT_CONFIG_PATH) -> MemoryConfig:
    """Load memory configuration from YAML."""
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config not found at {config_path}, using defaults")
        return config_from_dict({})

    with open(path) as f:
        raw = yaml.safe_load(f)

    return config_from_dict(raw or {})


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Console logging, plus a UTF-8 log file when one is given."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )
