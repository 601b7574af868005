"""Settings for the CLI and editor: optional storyflow.yaml, then STORYFLOW_* environment overrides."""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from storyflow.errors import ConfigError
from storyflow.runtime.simulator import DEFAULT_MAX_STEPS

CONFIG_FILENAME = "storyflow.yaml"
ENV_PREFIX = "STORYFLOW_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Settings:
    """Defaults for simulation and emission. Every field can be set in YAML or as STORYFLOW_<FIELD>."""

    max_steps: int = DEFAULT_MAX_STEPS
    auto_advance_waits: bool = False
    log_level: str = "WARNING"
    executable: bool = False

    @classmethod
    def load(cls, path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``path`` (or ./storyflow.yaml if present) and the environment."""
        if environ is None:
            load_dotenv(Path.cwd() / ".env")
            environ = os.environ

        settings = cls()
        if path is None:
            candidate = Path.cwd() / CONFIG_FILENAME
            path = candidate if candidate.exists() else None
        elif not path.exists():
            raise ConfigError(f"Config file not found: {path}", path=str(path))

        if path is not None:
            settings = settings.merge(_read_yaml(path), source=str(path))

        overrides = {
            f.name: environ[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in environ
        }
        return settings.merge(overrides, source="environment")

    def merge(self, values: Mapping[str, Any], source: str = "settings") -> "Settings":
        known = {f.name: f for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, raw in values.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ConfigError(f"Unknown setting {key!r} in {source}")
            changes[name] = _coerce(name, raw, source)
        return replace(self, **changes)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", path=str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping", path=str(path))
    # Accept either top-level keys or a "storyflow:" section.
    section = data.get("storyflow", data)
    if not isinstance(section, dict):
        raise ConfigError("'storyflow' section must be a mapping", path=str(path))
    return section


def _coerce(name: str, raw: Any, source: str) -> Any:
    if name == "max_steps":
        try:
            value = int(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"max_steps must be an integer in {source}, got {raw!r}") from e
        if value < 1:
            raise ConfigError(f"max_steps must be positive in {source}, got {value}")
        return value
    if name in ("auto_advance_waits", "executable"):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"{name} must be true or false in {source}, got {raw!r}")
    if name == "log_level":
        level = str(raw).strip().upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {sorted(_LOG_LEVELS)} in {source}, got {raw!r}")
        return level
    return raw
