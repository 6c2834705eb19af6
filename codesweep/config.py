"""
Engine configuration.

Settings live in <workspace>/.codesweep/config.yaml and are merged over the
defaults below (user values take precedence). A few values can also be
overridden through environment variables:

- CODESWEEP_STATE_DIR: name of the state directory under the workspace root
- CODESWEEP_RETENTION_DAYS: age after which idle sessions are cleaned up
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".codesweep"
CONFIG_FILENAME = "config.yaml"

ENV_STATE_DIR = "CODESWEEP_STATE_DIR"
ENV_RETENTION_DAYS = "CODESWEEP_RETENTION_DAYS"


class EngineConfig(BaseModel):
    """Typed engine settings."""
    state_dir: str = DEFAULT_STATE_DIR
    retention_days: int = Field(default=7, ge=0)
    scan_timeout_ms: int = Field(default=30000, ge=0)
    sample_size: int = Field(default=5, ge=0)
    token_ttl_seconds: int = Field(default=600, ge=1)
    max_tokens: int = Field(default=100, ge=1)
    instance_description_length: int = Field(default=50, ge=1)

    @classmethod
    def get_default(cls) -> dict:
        """Get the default configuration as a plain dict."""
        return cls().model_dump()


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_overrides() -> dict:
    overrides = {}
    state_dir = os.environ.get(ENV_STATE_DIR)
    if state_dir:
        overrides["state_dir"] = state_dir
    retention = os.environ.get(ENV_RETENTION_DAYS)
    if retention:
        try:
            overrides["retention_days"] = int(retention)
        except ValueError:
            logger.warning(f"Ignoring non-integer {ENV_RETENTION_DAYS}={retention!r}")
    return overrides


def config_path(workspace_root: Path, state_dir: Optional[str] = None) -> Path:
    """Location of the workspace config file."""
    return Path(workspace_root) / (state_dir or DEFAULT_STATE_DIR) / CONFIG_FILENAME


def load_config(workspace_root: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration for a workspace.

    Returns defaults (plus environment overrides) when no workspace is given,
    the config file is missing, or its YAML cannot be read.
    """
    data = EngineConfig.get_default()
    env = _env_overrides()

    if workspace_root is not None:
        path = config_path(workspace_root, env.get("state_dir"))
        if path.exists():
            try:
                with open(path) as f:
                    user_data = yaml.safe_load(f) or {}
                if not isinstance(user_data, dict):
                    raise ValueError("top-level YAML value must be a mapping")
                data = _deep_merge(data, user_data)
            except (OSError, yaml.YAMLError, ValueError) as e:
                logger.warning(f"Failed to read config {path}, using defaults: {e}")

    data = _deep_merge(data, env)
    return EngineConfig(**data)
