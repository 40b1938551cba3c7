"""Configuration management for Nadi telemetry.

This module handles configuration from environment variables, config files,
and package defaults following the priority order:
1. Environment variables (highest priority)
2. Configuration file (~/.config/nadi/telemetry.json)
3. Package defaults (lowest priority)

The ``sampling``, ``tracing`` and ``privacy`` sections of the config file map
onto the configuration of the respective engines.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .privacy import DEFAULT_SENSITIVE_FIELDS, DEFAULT_SENSITIVE_URL_PARAMS, PrivacyConfig
from .sampling import (
    DEFAULT_SLOW_SESSION_THRESHOLD_MS,
    SamplingConfig,
    SamplingRule,
    clamp_rate,
    rule_from_dict,
)
from .tracing import PropagationTarget, TracingConfig

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULTS: Dict[str, Any] = {
    "enabled": True,
    "dsn": None,  # Must be provided via env or config
    "environment": "production",
    "traces_sample_rate": 0.01,
    "send_default_pii": False,
    "sampling": {
        "global_rate": 1.0,
        "rules": [],
        "always_sample_errors": True,
        "always_sample_slow_sessions": True,
        "slow_session_threshold_ms": DEFAULT_SLOW_SESSION_THRESHOLD_MS,
        "adaptive_sampling": False,
    },
    "tracing": {
        "enabled": False,
        "propagate_trace_urls": [],
        "include_in_payloads": True,
        "trace_state": None,
        "origin": None,
    },
    "privacy": {
        "enabled": True,
        "sensitive_url_params": DEFAULT_SENSITIVE_URL_PARAMS,
        "masking_strategy": "redact",
        "custom_pii_patterns": {},
        "sensitive_fields": DEFAULT_SENSITIVE_FIELDS,
        "validate_card_numbers": False,
        "origin": None,
    },
}

SECTIONS = ("sampling", "tracing", "privacy")

# Config file location
CONFIG_DIR = Path.home() / ".config" / "nadi"
CONFIG_FILE = CONFIG_DIR / "telemetry.json"


@dataclass
class TelemetryConfig:
    """Configuration for telemetry collection."""

    enabled: bool = True
    dsn: Optional[str] = None
    environment: str = "production"
    traces_sample_rate: float = 0.01
    send_default_pii: bool = False
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)

    _loaded: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        """Clamp out-of-range rates."""
        self.traces_sample_rate = clamp_rate(self.traces_sample_rate, "traces_sample_rate")


def _parse_bool(value: str) -> bool:
    """Parse a boolean from a string value."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, value)
        return None


def _load_config_file() -> dict[str, Any]:
    """Load configuration from file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        with open(CONFIG_FILE) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        logger.warning("Ignoring unreadable telemetry config file %s", CONFIG_FILE)
        return {}

    return data if isinstance(data, dict) else {}


def _get_env_config() -> dict[str, Any]:
    """Get configuration from environment variables."""
    config: dict[str, Any] = {}

    # Universal opt-out (DO_NOT_TRACK standard)
    if os.getenv("DO_NOT_TRACK", "").lower() in ("1", "true"):
        config["enabled"] = False

    # Package-specific opt-out
    enabled_env = os.getenv("NADI_TELEMETRY_ENABLED", "")
    if enabled_env:
        config["enabled"] = _parse_bool(enabled_env)

    dsn = os.getenv("NADI_TELEMETRY_DSN")
    if dsn:
        config["dsn"] = dsn

    env = os.getenv("NADI_TELEMETRY_ENVIRONMENT")
    if env:
        config["environment"] = env

    traces_sample_rate = _parse_float("NADI_TELEMETRY_TRACES_SAMPLE_RATE")
    if traces_sample_rate is not None:
        config["traces_sample_rate"] = traces_sample_rate

    sampling: dict[str, Any] = {}
    sample_rate = _parse_float("NADI_TELEMETRY_SAMPLE_RATE")
    if sample_rate is not None:
        sampling["global_rate"] = sample_rate
    adaptive = os.getenv("NADI_TELEMETRY_ADAPTIVE_SAMPLING", "")
    if adaptive:
        sampling["adaptive_sampling"] = _parse_bool(adaptive)
    if sampling:
        config["sampling"] = sampling

    tracing_enabled = os.getenv("NADI_TELEMETRY_TRACING_ENABLED", "")
    if tracing_enabled:
        config["tracing"] = {"enabled": _parse_bool(tracing_enabled)}

    strategy = os.getenv("NADI_TELEMETRY_MASKING_STRATEGY")
    if strategy:
        config["privacy"] = {"masking_strategy": strategy.lower()}

    return config


def _merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Merge ``override`` into ``base``, one level deep for engine sections."""
    for key, value in override.items():
        if key in SECTIONS:
            if isinstance(value, dict):
                base[key].update(value)
        else:
            base[key] = value


def _parse_propagation_targets(targets: List[Any]) -> List[PropagationTarget]:
    """Parse propagation targets: strings, or ``{"pattern": "<regex>"}`` objects."""
    result: List[PropagationTarget] = []
    for target in targets:
        if isinstance(target, dict) and "pattern" in target:
            try:
                result.append(re.compile(target["pattern"]))
            except re.error as e:
                logger.warning("Ignoring invalid propagation pattern %r: %s", target["pattern"], e)
        elif isinstance(target, (str, re.Pattern)):
            result.append(target)
    return result


def _known_fields(cls: type, values: dict[str, Any]) -> dict[str, Any]:
    """Drop keys that are not fields of ``cls``."""
    names = {f.name for f in fields(cls) if not f.name.startswith("_")}
    unknown = set(values) - names
    if unknown:
        logger.warning("Ignoring unknown %s options: %s", cls.__name__, sorted(unknown))
    return {k: v for k, v in values.items() if k in names}


def _as_list(section: str, name: str, value: Any) -> List[Any]:
    """Coerce a list option; a bare string is a one-element list.

    Any other non-list value falls back to the default with a warning.
    """
    if value is None:
        return list(DEFAULTS[section][name])
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    logger.warning("Ignoring %s.%s: expected a list, got %r", section, name, value)
    return list(DEFAULTS[section][name])


def _build_config(merged: dict[str, Any]) -> TelemetryConfig:
    sampling = _known_fields(SamplingConfig, merged["sampling"])
    sampling["rules"] = [
        rule if not isinstance(rule, dict) else rule_from_dict(rule)
        for rule in _as_list("sampling", "rules", sampling.get("rules"))
        if isinstance(rule, (dict, SamplingRule))
    ]

    tracing = _known_fields(TracingConfig, merged["tracing"])
    tracing["propagate_trace_urls"] = _parse_propagation_targets(
        _as_list("tracing", "propagate_trace_urls", tracing.get("propagate_trace_urls"))
    )

    privacy = _known_fields(PrivacyConfig, merged["privacy"])
    for name in ("sensitive_url_params", "sensitive_fields"):
        privacy[name] = _as_list("privacy", name, privacy.get(name))
    privacy["custom_pii_patterns"] = dict(privacy.get("custom_pii_patterns") or {})

    top_level = _known_fields(
        TelemetryConfig, {k: v for k, v in merged.items() if k not in SECTIONS}
    )
    # Remove None values for fields that should use defaults
    top_level = {k: v for k, v in top_level.items() if v is not None or k == "dsn"}

    return TelemetryConfig(
        **top_level,
        sampling=SamplingConfig(**sampling),
        tracing=TracingConfig(**tracing),
        privacy=PrivacyConfig(**privacy),
        _loaded=True,
    )


def load_config() -> TelemetryConfig:
    """Load telemetry configuration from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Package defaults

    Returns:
        TelemetryConfig: The merged configuration.
    """
    merged = copy.deepcopy(DEFAULTS)
    _merge(merged, _load_config_file())
    _merge(merged, _get_env_config())
    return _build_config(merged)


def save_config(config: TelemetryConfig) -> None:
    """Save configuration to file.

    Sampling rules hold arbitrary predicates and are not saved.

    Args:
        config: The configuration to save.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    config_dict = {
        "enabled": config.enabled,
        "dsn": config.dsn,
        "environment": config.environment,
        "traces_sample_rate": config.traces_sample_rate,
        "send_default_pii": config.send_default_pii,
        "sampling": {
            "global_rate": config.sampling.global_rate,
            "always_sample_errors": config.sampling.always_sample_errors,
            "always_sample_slow_sessions": config.sampling.always_sample_slow_sessions,
            "slow_session_threshold_ms": config.sampling.slow_session_threshold_ms,
            "adaptive_sampling": config.sampling.adaptive_sampling,
        },
        "tracing": {
            "enabled": config.tracing.enabled,
            "propagate_trace_urls": [
                target if isinstance(target, str) else {"pattern": target.pattern}
                for target in config.tracing.propagate_trace_urls
            ],
            "include_in_payloads": config.tracing.include_in_payloads,
            "trace_state": config.tracing.trace_state,
            "origin": config.tracing.origin,
        },
        "privacy": {
            "enabled": config.privacy.enabled,
            "sensitive_url_params": config.privacy.sensitive_url_params,
            "masking_strategy": config.privacy.masking_strategy.value,
            "custom_pii_patterns": {
                name: pattern if isinstance(pattern, str) else pattern.pattern
                for name, pattern in config.privacy.custom_pii_patterns.items()
            },
            "sensitive_fields": config.privacy.sensitive_fields,
            "validate_card_numbers": config.privacy.validate_card_numbers,
            "origin": config.privacy.origin,
        },
    }

    with open(CONFIG_FILE, "w") as f:
        json.dump(config_dict, f, indent=2)
