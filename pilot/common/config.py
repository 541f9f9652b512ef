"""Pipeline configuration — environment variables with an optional YAML overlay."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from pilot.common.errors import ConfigError

logger = logging.getLogger(__name__)

# Model chains per generation strategy, cheapest first. The last entry of each
# chain is the robust fallback the ranking service always keeps.
DEFAULT_MODEL_CHAINS: dict[str, list[str]] = {
    "economy": ["deepseek-chat", "claude-3-5-haiku-latest", "claude-sonnet-4-20250514"],
    "standard": ["deepseek-chat", "claude-sonnet-4-20250514"],
    "strongest": ["claude-opus-4", "claude-sonnet-4-20250514"],
}


@dataclass
class PipelineConfig:
    db_path: str = "data/taskpilot.db"
    cost_ceiling_usd: float = 2.00
    retry_backoff_s: float = 1.0
    step_timeout_s: float = 30.0
    cascade_threshold_pct: float = 70.0
    method_min_samples: int = 3
    model_min_samples: int = 5
    demote_below_pct: float = 20.0
    demote_min_attempts: int = 5
    reorder_gap_pct: float = 5.0
    learning_max_age_days: int = 14
    learning_min_success_pct: float = 90.0
    llm_timeout_s: float = 60.0
    max_concurrent_tasks: int = 4
    default_channel: str = "email"
    model_chains: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MODEL_CHAINS.items()}
    )

    @classmethod
    def from_env(cls, config_path: str | Path | None = None) -> "PipelineConfig":
        """Build config from TASKPILOT_* env vars, then overlay a YAML file if one is given."""
        cfg = cls()
        for f in fields(cls):
            if f.name == "model_chains":
                continue
            raw = os.environ.get(f"TASKPILOT_{f.name.upper()}")
            if raw is None:
                continue
            setattr(cfg, f.name, _coerce(f.name, raw, type(getattr(cfg, f.name))))

        config_path = config_path or os.environ.get("TASKPILOT_CONFIG")
        if config_path:
            cfg.apply_file(config_path)
        return cfg

    def apply_file(self, config_path: str | Path) -> None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as fh:
                data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        self.apply(data)
        logger.info(f"Loaded pipeline config from {path}")

    def apply(self, data: dict[str, Any]) -> None:
        known = {f.name for f in fields(self)}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if key == "model_chains":
                self.model_chains.update({k: list(v) for k, v in value.items()})
                continue
            setattr(self, key, _coerce(key, value, type(getattr(self, key))))


def _coerce(name: str, raw: Any, kind: type) -> Any:
    try:
        if kind is bool:
            return str(raw).lower() in ("1", "true", "yes", "on")
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
