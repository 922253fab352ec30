"""YAML configuration loader with environment variable overrides.

``config/config.yaml`` holds the data that is awkward to express as flat
environment variables: plan tiers (rate-limit bucket, message credits,
storage quota) and the default guardrail fallback templates.  Values taken
from :class:`Settings` are merged on top, so an env var always wins where
keys overlap.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ragdesk.config.settings import Settings
from ragdesk.utils.errors import ConfigurationError

# Used when the YAML file is absent (tests, fresh checkouts).
_DEFAULT_PLANS: dict[str, dict[str, Any]] = {
    "free": {
        "rate_limit_capacity": 20,
        "rate_limit_refill_per_second": 0.5,
        "message_credits": 1000,
        "storage_limit_kb": 100_000,
    },
    "starter": {
        "rate_limit_capacity": 60,
        "rate_limit_refill_per_second": 1.0,
        "message_credits": 5000,
        "storage_limit_kb": 500_000,
    },
    "pro": {
        "rate_limit_capacity": 200,
        "rate_limit_refill_per_second": 5.0,
        "message_credits": 25000,
        "storage_limit_kb": 2_000_000,
    },
    "enterprise": {
        "rate_limit_capacity": 1000,
        "rate_limit_refill_per_second": 20.0,
        "message_credits": 100000,
        "storage_limit_kb": 10_000_000,
    },
}


_DEFAULT_GUARDRAILS: dict[str, Any] = {
    "crisis_template": (
        "It sounds like you may be going through something really difficult. "
        "If you are in immediate danger, please call your local emergency number. "
        "In the US you can call or text 988 to reach the Suicide & Crisis Lifeline."
    ),
    "redirect_template": (
        "This sounds like something the proper authorities should handle. Please "
        "contact your local emergency services or the relevant official agency."
    ),
    "disclaimer_template": (
        "I can't give professional advice on this topic. Please consult a "
        "qualified professional for guidance specific to your situation."
    ),
    "decline_template": "I'm sorry, I can't help with that.",
}


def load_config(settings: Settings, path: str | None = None) -> dict[str, Any]:
    """Load YAML config and merge with environment-based Settings.

    Args:
        settings: The process-wide settings instance.
        path: Path to the YAML configuration file; defaults to
            ``settings.config_path``.

    Returns:
        Fully resolved configuration dictionary with at least ``plans``,
        ``guardrails``, ``app`` and ``logging`` keys.

    Raises:
        ConfigurationError: If the file exists but is not a YAML mapping.
    """
    config_path = Path(path or settings.config_path)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(
                message=f"{config_path} must contain a mapping at the top level"
            )
    else:
        yaml_config = {}

    yaml_config.setdefault("plans", {})
    for plan, limits in _DEFAULT_PLANS.items():
        yaml_config["plans"].setdefault(plan, dict(limits))
    guardrails = yaml_config.setdefault("guardrails", {})
    for key, template in _DEFAULT_GUARDRAILS.items():
        guardrails.setdefault(key, template)

    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "models": {
            "chat": settings.chat_model,
            "judge": settings.judge_model,
            "embedding": settings.embedding_model,
            "embedding_dimensions": settings.embedding_dimensions,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
