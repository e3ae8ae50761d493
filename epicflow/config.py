"""
Configuration for epicflow.

Sources are layered, lowest priority first:
1. Model defaults
2. YAML file (epicflow.yaml / .epicflow.yaml, or EPICFLOW_CONFIG_FILE)
3. EPICFLOW_* environment variables
4. Programmatic overrides

The merged result is validated once. Invalid values raise
ConfigurationError naming the offending field; nothing is coerced except
the bool/number parsing of raw environment strings.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError

logger = logging.getLogger("epicflow_config")

CONFIG_FILE_NAMES = ("epicflow.yaml", ".epicflow.yaml")
WEIGHT_TOLERANCE = 0.01
LOW_THRESHOLD_WARNING = 30
LONG_TTL_WARNING_SECONDS = 30 * 24 * 60 * 60

# env var -> dotted config path
ENV_MAPPING: Dict[str, str] = {
    "EPICFLOW_ENABLED": "enabled",
    "EPICFLOW_AUTO_ASSIGNMENT": "agents.auto_assignment",
    "EPICFLOW_ASSIGNMENT_THRESHOLD": "agents.assignment_threshold",
    "EPICFLOW_ALLOW_BELOW_THRESHOLD": "agents.allow_below_threshold",
    "EPICFLOW_MAX_HISTORY": "state_machine.max_history",
    "EPICFLOW_CACHE_TTL_SECONDS": "progress.cache_ttl_seconds",
    "EPICFLOW_VELOCITY_DROP_PERCENT": "progress.velocity_drop_percent",
    "EPICFLOW_MEMORY_TTL": "memory.ttl_seconds",
    "EPICFLOW_NAMESPACE_PREFIX": "memory.namespace_prefix",
}

# passed through as raw strings
ENV_STRING_FIELDS = {"EPICFLOW_NAMESPACE_PREFIX"}


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------

class ScoringWeights(BaseModel):
    """Relative weight of each scoring factor. Must sum to 1.0."""
    capability_match: float = Field(default=0.4, ge=0, le=1, strict=True)
    performance_history: float = Field(default=0.2, ge=0, le=1, strict=True)
    availability: float = Field(default=0.2, ge=0, le=1, strict=True)
    specialization: float = Field(default=0.1, ge=0, le=1, strict=True)
    experience: float = Field(default=0.1, ge=0, le=1, strict=True)

    @model_validator(mode="after")
    def _check_total(self) -> "ScoringWeights":
        total = self.total()
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"weights must sum to 1.0, got {total:.3f}")
        return self

    def total(self) -> float:
        return (
            self.capability_match
            + self.performance_history
            + self.availability
            + self.specialization
            + self.experience
        )


class AgentSettings(BaseModel):
    auto_assignment: bool = Field(default=True, strict=True)
    assignment_threshold: float = Field(default=50.0, ge=0, le=100, strict=True)
    allow_below_threshold: bool = Field(default=False, strict=True)
    max_tasks_auto: int = Field(default=5, ge=1, strict=True)
    max_tasks_manual: int = Field(default=3, ge=1, strict=True)

    @property
    def max_tasks_per_agent(self) -> int:
        return self.max_tasks_auto if self.auto_assignment else self.max_tasks_manual


class StateMachineSettings(BaseModel):
    max_history: int = Field(default=100, ge=1, strict=True)


class ProgressSettings(BaseModel):
    cache_ttl_seconds: float = Field(default=300.0, ge=0, strict=True)
    velocity_drop_percent: float = Field(default=30.0, gt=0, le=100, strict=True)


class MemorySettings(BaseModel):
    ttl_seconds: int = Field(default=7 * 24 * 60 * 60, ge=0, strict=True)
    namespace_prefix: str = Field(default="epic", min_length=1, strict=True)


class EpicFlowConfig(BaseModel):
    enabled: bool = Field(default=False, strict=True)
    agents: AgentSettings = Field(default_factory=AgentSettings)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    state_machine: StateMachineSettings = Field(default_factory=StateMachineSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

def read_yaml_file(file_path: Path) -> dict:
    """Read and parse a YAML file."""
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, "r") as f:
        return yaml.safe_load(f) or {}


def parse_env_value(raw: str) -> Any:
    """Parse a raw environment string into bool, int, float or str."""
    value = raw.strip()
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def _set_path(target: Dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    node = target
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def _deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _find_config_file(config_file: Optional[Path], environ: Mapping[str, str]) -> Optional[Path]:
    if config_file is not None:
        path = Path(config_file)
        if not path.exists():
            raise ConfigurationError("config_file", f"file not found: {path}")
        return path

    env_path = environ.get("EPICFLOW_CONFIG_FILE")
    if env_path:
        path = Path(env_path)
        if not path.exists():
            raise ConfigurationError("EPICFLOW_CONFIG_FILE", f"file not found: {path}")
        return path

    for name in CONFIG_FILE_NAMES:
        candidate = Path.cwd() / name
        if candidate.exists():
            return candidate
    return None


def load_file_config(path: Path) -> Dict[str, Any]:
    try:
        data = read_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigurationError("config_file", f"invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError("config_file", f"{path} must contain a mapping")
    # Optional top-level "epicflow:" namespace
    if isinstance(data.get("epicflow"), dict):
        data = data["epicflow"]
    return data


def load_env_config(environ: Mapping[str, str]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for env_name, dotted in ENV_MAPPING.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        value = raw if env_name in ENV_STRING_FIELDS else parse_env_value(raw)
        _set_path(result, dotted, value)
    return result


def load_config(
    config_file: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EpicFlowConfig:
    """
    Build a validated EpicFlowConfig from defaults, file, env and overrides.

    Raises ConfigurationError on any invalid value.
    """
    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = EpicFlowConfig().model_dump()

    path = _find_config_file(config_file, environ)
    if path is not None:
        merged = _deep_merge(merged, load_file_config(path))
        logger.debug(f"Loaded config file {path}")

    merged = _deep_merge(merged, load_env_config(environ))
    if overrides:
        merged = _deep_merge(merged, overrides)

    try:
        config = EpicFlowConfig.model_validate(merged)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first["loc"]) or "config"
        raise ConfigurationError(field_name, first["msg"]) from e

    for warning in validate_config(config):
        logger.warning(f"Config warning: {warning}")
    return config


def validate_config(config: EpicFlowConfig) -> List[str]:
    """
    Return non-fatal warnings for a config that already passed validation.
    """
    warnings = []
    if config.agents.assignment_threshold < LOW_THRESHOLD_WARNING:
        warnings.append(
            f"assignment_threshold {config.agents.assignment_threshold} is below "
            f"{LOW_THRESHOLD_WARNING}; low-quality assignments are likely"
        )
    if config.memory.ttl_seconds > LONG_TTL_WARNING_SECONDS:
        warnings.append(
            f"memory ttl of {config.memory.ttl_seconds}s exceeds 30 days"
        )
    return warnings
