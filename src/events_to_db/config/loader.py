"""YAML + environment variable config loader."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import TypeAdapter, ValidationError

from events_to_db.config.defaults import build_pipeline_config
from events_to_db.config.models import PipelineConfig, SubscriptionFilter
from events_to_db.errors import ConfigError

# Matches ${VAR} or ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")

_SUBSCRIPTIONS = TypeAdapter(list[SubscriptionFilter])


def _resolve_env_str(value: str) -> str:
    """Replace all ${VAR} / ${VAR:-default} references in a string."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default.replace("\\}", "}")
        msg = f"Environment variable '{var_name}' is not set and no default provided"
        raise ConfigError(msg)

    return _ENV_PATTERN.sub(_replace, value)


def resolve_env_vars(data: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:-default} in parsed YAML data."""
    if isinstance(data, str):
        return _resolve_env_str(data)
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise ConfigError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        msg += f": {exc}"
        raise ConfigError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise ConfigError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def parse_subscriptions(raw: str) -> list[SubscriptionFilter]:
    """Parse a JSON list of subscription filters, e.g. ``[{"semantics": "x"}]``."""
    try:
        filters = _SUBSCRIPTIONS.validate_json(raw)
    except ValidationError as exc:
        msg = f"Invalid subscriptions {raw!r}:\n{exc}"
        raise ConfigError(msg) from exc
    if not filters:
        msg = "At least one subscription filter is required; use [{}] to match everything"
        raise ConfigError(msg)
    return filters


def load_pipeline_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> PipelineConfig:
    """Load config from built-in defaults, an optional YAML file and overrides.

    Precedence, lowest first: defaults, YAML file, *overrides* (CLI flags).
    """
    data = load_yaml(path) if path is not None else {}
    try:
        return build_pipeline_config(data, overrides or {})
    except ValidationError as exc:
        source = path or "command line"
        msg = f"Invalid pipeline config ({source}):\n{exc}"
        raise ConfigError(msg) from exc


def dump_subscriptions(filters: list[SubscriptionFilter]) -> str:
    return json.dumps([f.to_wire() for f in filters])
