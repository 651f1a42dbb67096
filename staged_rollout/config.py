import json
import os
from dataclasses import fields

from .errors import ConfigurationInvalid
from .models import AutoscalePolicy, HealthPolicy, RolloutConfig
from .prober import validate_policy

ENV_PREFIX = "STAGED_ROLLOUT_"

# Environment overrides for the health policy: variable suffix -> (field, type)
ENV_OVERRIDES = {
    "ENDPOINT": ("endpoint", str),
    "INTERVAL_S": ("interval_s", float),
    "TIMEOUT_S": ("timeout_s", float),
    "REQUIRED_PASSES": ("required_passes", int),
    "FAILURE_THRESHOLD": ("failure_threshold", int),
    "WINDOW_INTERVALS": ("window_intervals", int),
}


def _build(cls, data, section):
    if not isinstance(data, dict):
        raise ConfigurationInvalid(f"'{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationInvalid(f"unknown keys in '{section}': {', '.join(sorted(unknown))}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigurationInvalid(f"invalid '{section}' section: {e}") from e


def config_from_dict(data):
    if not isinstance(data, dict):
        raise ConfigurationInvalid("config must be a JSON object")
    unknown = set(data) - {"health", "autoscale", "actor"}
    if unknown:
        raise ConfigurationInvalid(f"unknown config keys: {', '.join(sorted(unknown))}")
    if "health" not in data:
        raise ConfigurationInvalid("config is missing the 'health' section")

    health_data = data["health"]
    if isinstance(health_data, dict):
        # The endpoint may still arrive from the environment or the command line
        health_data = {"endpoint": "", **health_data}
    health = _build(HealthPolicy, health_data, "health")
    if isinstance(health.expected_status, int):
        health.expected_status = (health.expected_status,)
    health.expected_status = tuple(health.expected_status or ())

    autoscale = None
    if data.get("autoscale") is not None:
        autoscale = _build(AutoscalePolicy, data["autoscale"], "autoscale")
    return RolloutConfig(health=health, autoscale=autoscale, actor=data.get("actor", "controller"))


def apply_env_overrides(config, env=None):
    env = os.environ if env is None else env
    for suffix, (name, cast) in ENV_OVERRIDES.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        try:
            setattr(config.health, name, cast(raw))
        except ValueError as e:
            raise ConfigurationInvalid(f"{ENV_PREFIX + suffix}={raw!r} is not a valid {cast.__name__}") from e
    actor = env.get(ENV_PREFIX + "ACTOR")
    if actor:
        config.actor = actor
    return config


def load_config(path=None, env=None, endpoint=None, validate=True):
    """Load a rollout config from a JSON file plus environment overrides"""
    if path:
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationInvalid(f"{path} is not valid JSON: {e}") from e
    else:
        data = {"health": {"endpoint": endpoint or ""}}
    config = apply_env_overrides(config_from_dict(data), env)
    if endpoint:
        config.health.endpoint = endpoint
    if validate:
        validate_config(config)
    return config


def validate_config(config):
    if config is None or config.health is None:
        raise ConfigurationInvalid("a health policy is required")
    validate_policy(config.health)
    autoscale = config.autoscale
    if autoscale is not None:
        if autoscale.ceiling_factor < 1:
            raise ConfigurationInvalid("ceiling_factor must be >= 1")
        if autoscale.scale_down_threshold > autoscale.scale_up_threshold:
            raise ConfigurationInvalid("scale_down_threshold must not exceed scale_up_threshold")
        if bool(autoscale.prometheus_url) != bool(autoscale.query):
            raise ConfigurationInvalid("prometheus_url and query must be set together")
    if not config.actor:
        raise ConfigurationInvalid("actor must be a non-empty string")
