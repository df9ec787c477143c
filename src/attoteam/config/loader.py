"""YAML config loader for attoteam."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from attoteam.config.schema import (
    DispatchConfig,
    LoggingConfig,
    ScalingConfig,
    StateConfig,
    TaskConfig,
    TeamDefaults,
    TeamYamlConfig,
)
from attoteam.errors import ConfigurationError
from attoteam.protocol.locks import clamp_timeout_ms

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".attoteam/team.yaml"

ENV_SCALING_ENABLED = "ATTOTEAM_SCALING_ENABLED"
ENV_READY_TIMEOUT_MS = "ATTOTEAM_READY_TIMEOUT_MS"
ENV_SKIP_READY_WAIT = "ATTOTEAM_SKIP_READY_WAIT"
ENV_DISPATCH_LOCK_TIMEOUT_MS = "ATTOTEAM_DISPATCH_LOCK_TIMEOUT_MS"
ENV_DISPATCH_ACK_TIMEOUT_MS = "ATTOTEAM_DISPATCH_ACK_TIMEOUT_MS"
ENV_TEAM_STATE_ROOT = "ATTOTEAM_TEAM_STATE_ROOT"

_TRUTHY = {"1", "true", "yes", "on", "enabled"}

MIN_READY_TIMEOUT_MS = 5_000


def is_truthy_flag(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY


def load_team_yaml(path: str | Path) -> TeamYamlConfig:
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    state_raw = raw.get("state", {}) if isinstance(raw.get("state"), dict) else {}
    team_raw = raw.get("team", {}) if isinstance(raw.get("team"), dict) else {}
    tasks_raw = raw.get("tasks", {}) if isinstance(raw.get("tasks"), dict) else {}
    dispatch_raw = raw.get("dispatch", {}) if isinstance(raw.get("dispatch"), dict) else {}
    scaling_raw = raw.get("scaling", {}) if isinstance(raw.get("scaling"), dict) else {}
    logging_raw = raw.get("logging", {}) if isinstance(raw.get("logging"), dict) else {}

    config = TeamYamlConfig(
        version=int(raw.get("version", 1)),
        state=StateConfig(**_pick(state_raw, StateConfig)),
        team=TeamDefaults(**_pick(team_raw, TeamDefaults)),
        tasks=TaskConfig(**_pick(tasks_raw, TaskConfig)),
        dispatch=DispatchConfig(**_pick(dispatch_raw, DispatchConfig)),
        scaling=ScalingConfig(**_pick(scaling_raw, ScalingConfig)),
        logging=LoggingConfig(**_pick(logging_raw, LoggingConfig)),
    )
    if config.dispatch.mode not in (
        "hook_preferred_with_fallback", "transport_direct", "prompt_stdin",
    ):
        raise ConfigurationError(f"Unknown dispatch mode: {config.dispatch.mode!r}")
    return config


def apply_env_overrides(
    config: TeamYamlConfig, env: Mapping[str, str] | None = None,
) -> TeamYamlConfig:
    """Apply ``ATTOTEAM_*`` environment overrides in place and return *config*."""
    env = os.environ if env is None else env

    if ENV_SCALING_ENABLED in env:
        config.scaling.enabled = is_truthy_flag(env.get(ENV_SCALING_ENABLED))
    if ENV_SKIP_READY_WAIT in env:
        config.scaling.skip_ready_wait = is_truthy_flag(env.get(ENV_SKIP_READY_WAIT))
    if env.get(ENV_READY_TIMEOUT_MS):
        config.scaling.ready_timeout_ms = clamp_timeout_ms(
            env.get(ENV_READY_TIMEOUT_MS),
            default=config.scaling.ready_timeout_ms,
            minimum=MIN_READY_TIMEOUT_MS,
            maximum=10 * 60 * 1000,
        )
    config.dispatch.lock_timeout_ms = clamp_timeout_ms(
        env.get(ENV_DISPATCH_LOCK_TIMEOUT_MS),
        default=config.dispatch.lock_timeout_ms,
        minimum=1_000,
        maximum=120_000,
    )
    config.dispatch.ack_timeout_ms = clamp_timeout_ms(
        env.get(ENV_DISPATCH_ACK_TIMEOUT_MS),
        default=config.dispatch.ack_timeout_ms,
        minimum=100,
        maximum=10_000,
    )
    if env.get(ENV_TEAM_STATE_ROOT):
        config.state.team_state_root = env[ENV_TEAM_STATE_ROOT]
    return config


def load_config(
    cwd: str | Path = ".",
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> TeamYamlConfig:
    """Load ``.attoteam/team.yaml`` (or *path*) and apply env overrides."""
    config_path = Path(path) if path else Path(cwd) / DEFAULT_CONFIG_PATH
    config = load_team_yaml(config_path)
    logger.debug("Loaded team config from %s", config_path)
    return apply_env_overrides(config, env)


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
