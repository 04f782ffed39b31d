"""
Converge - Settings

Engine settings are validated with Pydantic. Values come from an optional
YAML file and can be overridden by ``CONVERGE_*`` environment variables.

Example ``converge.yaml``:
```
workspace: staging
state_dir: ./state
parallelism: 10
retry:
  max_attempts: 5
  base_delay: 0.5
provider:
  type: fake
  region: us-west-2
```
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging
import os
import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_FILE = "converge.yaml"
CONFIG_FILE_ENV = "CONVERGE_CONFIG"

# Environment variable -> dotted settings path
ENV_OVERRIDES = {
    "CONVERGE_WORKSPACE": "workspace",
    "CONVERGE_STATE_DIR": "state_dir",
    "CONVERGE_ARTIFACTS_DIR": "artifacts_dir",
    "CONVERGE_PARALLELISM": "parallelism",
    "CONVERGE_LOG_LEVEL": "log_level",
    "CONVERGE_MAX_ATTEMPTS": "retry.max_attempts",
    "CONVERGE_PROVIDER": "provider.type",
    "CONVERGE_REGION": "provider.region",
    "CONVERGE_PROVIDER_STATE_FILE": "provider.state_file",
    "CONVERGE_SIMULATE_LATENCY": "provider.simulate_latency",
}


class RetrySettings(BaseModel):
    """Retry policy for transient provider errors."""
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.5, ge=0.0, description="Seconds before the first retry")
    max_delay: float = Field(default=10.0, ge=0.0)


class ProviderSettings(BaseModel):
    """Provider adapter selection and simulation knobs."""
    type: str = "fake"
    region: str = "us-west-2"
    simulate_latency: bool = True
    latency_scale: float = Field(default=1.0, ge=0.0)
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    state_file: Optional[str] = None


class EngineSettings(BaseModel):
    """
    Complete engine configuration.

    Attributes:
        workspace: State workspace name
        state_dir: Directory holding state and lock files
        artifacts_dir: Directory holding per-run plans and summaries
        parallelism: Maximum concurrent provider calls
        log_level: Root logging level
    """
    workspace: str = "default"
    state_dir: str = "./state"
    artifacts_dir: str = "./artifacts"
    parallelism: int = Field(default=10, ge=1)
    log_level: str = "INFO"
    retry: RetrySettings = Field(default_factory=RetrySettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level


def _set_path(data: Dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineSettings:
    """
    Load settings from YAML and environment.

    Precedence (lowest to highest): defaults, YAML file, environment,
    explicit ``overrides`` (dotted keys).

    Args:
        path: YAML file; defaults to $CONVERGE_CONFIG or ./converge.yaml if present
        environ: Environment mapping (defaults to os.environ)
        overrides: Dotted-key overrides, e.g. {"provider.region": "eu-west-1"}
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    config_path = path or environ.get(CONFIG_FILE_ENV)
    if config_path is None and Path(DEFAULT_CONFIG_FILE).exists():
        config_path = DEFAULT_CONFIG_FILE

    if config_path:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"Loaded settings file: {config_path}")

    for env_name, dotted in ENV_OVERRIDES.items():
        if env_name in environ:
            _set_path(data, dotted, environ[env_name])

    for dotted, value in (overrides or {}).items():
        if value is not None:
            _set_path(data, dotted, value)

    return EngineSettings(**data)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
