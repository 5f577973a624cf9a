"""Runtime configuration: file loading, environment overrides and logging setup."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding agent working inside a sandboxed workspace. Use the available tools to inspect "
    "and change files, run commands, and keep the execution plan current. Answer concisely once the "
    "task is complete."
)


@dataclass
class RuntimeConfig:
    model: str = "openai/gpt-4o-mini"
    vision_model: Optional[str] = None
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: Optional[str] = None
    provider_name: str = "openrouter"
    temperature: float = 0.7
    thinking_enabled: bool = True
    force_thinking: bool = False
    context_profile: str = "default"
    context_limit_tokens: int = 128_000
    shell_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 90.0
    data_root: str = "~/.agentic_runtime"
    workspace_root: str = "."
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.model:
            raise ConfigError("model must not be empty")
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ConfigError(f"temperature must be between 0 and 2, got {self.temperature}")
        if float(self.shell_timeout_seconds) <= 0 or float(self.shell_timeout_seconds) > 300:
            raise ConfigError("shell_timeout_seconds must be in (0, 300]")
        if float(self.request_timeout_seconds) <= 0:
            raise ConfigError("request_timeout_seconds must be positive")
        if int(self.context_limit_tokens) <= 0:
            raise ConfigError("context_limit_tokens must be positive")

    @property
    def data_dir(self) -> str:
        return str(Path(self.data_root).expanduser())

    def to_dict(self) -> Dict[str, Any]:
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        payload.pop("api_key", None)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuntimeConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning("ignoring unknown config key %r", key)
                continue
            kwargs[key] = _coerce(key, known[key].type, value)
        return cls(**kwargs)


def _coerce(key: str, annotation: Any, value: Any) -> Any:
    kind = str(annotation)
    if value is None:
        if "Optional" in kind:
            return None
        raise ConfigError(f"config key {key} must not be null")
    try:
        if kind == "bool":
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in {"1", "true", "yes", "on"}:
                    return True
                if lowered in {"0", "false", "no", "off"}:
                    return False
                raise ValueError(value)
            return bool(value)
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {key}: {value!r}") from exc
    return str(value)


def _read_document(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot parse config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return data


ENV_OVERRIDES = {
    "AGENTIC_RUNTIME_MODEL": "model",
    "AGENTIC_RUNTIME_BASE_URL": "base_url",
    "AGENTIC_RUNTIME_DATA_ROOT": "data_root",
    "AGENTIC_RUNTIME_WORKSPACE": "workspace_root",
}


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> RuntimeConfig:
    """Build a ``RuntimeConfig`` from an optional YAML/JSON file plus environment overrides."""
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}
    if path:
        data.update(_read_document(Path(path).expanduser()))

    for env_name, key in ENV_OVERRIDES.items():
        if env.get(env_name):
            data[key] = env[env_name]
    api_key = env.get("AGENTIC_RUNTIME_API_KEY") or env.get("OPENROUTER_API_KEY")
    if api_key:
        data["api_key"] = api_key
    return RuntimeConfig.from_dict(data)


def configure_logging(level: Union[str, int] = "INFO", log_file: Optional[str] = None) -> None:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ConfigError(f"unknown log level {level!r}")
        level = resolved
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8"))
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)
