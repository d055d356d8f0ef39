"""Built-in connector defaults and the merge that layers config sources.

Layers, lowest first: ``defaults/pipeline.yaml``, the user's YAML file,
command-line options. Mappings merge key by key; any other value, the
``subscriptions`` list included, replaces what the lower layer had.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from events_to_db.config.models import PipelineConfig
from events_to_db.errors import ConfigError

DEFAULTS_FILE = Path(__file__).parent / "defaults" / "pipeline.yaml"


def load_defaults(path: Path = DEFAULTS_FILE) -> dict[str, Any]:
    """Read the built-in defaults layer."""
    try:
        text = path.read_text()
    except FileNotFoundError as exc:
        msg = f"Built-in defaults missing at {path}; the package is incomplete"
        raise ConfigError(msg) from exc
    return yaml.safe_load(text) or {}


def _merge_pair(lower: dict[str, Any], upper: dict[str, Any]) -> dict[str, Any]:
    merged = dict(lower)
    for key, value in upper.items():
        below = merged.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            merged[key] = _merge_pair(below, value)
        else:
            merged[key] = value
    return merged


def merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *layers*, later ones winning; no layer is mutated."""
    merged: dict[str, Any] = {}
    for layer in layers:
        merged = _merge_pair(merged, layer)
    return merged


def build_pipeline_config(*layers: dict[str, Any]) -> PipelineConfig:
    """Validate the built-in defaults overlaid with *layers*."""
    return PipelineConfig.model_validate(merge_configs(load_defaults(), *layers))
