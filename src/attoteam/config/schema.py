"""Configuration schema for attoteam YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class StateConfig:
    root_dir: str = ".attoteam/state"
    # Absolute override; when set, the working-directory walk is skipped.
    team_state_root: str | None = None
    # Guards config.json read-modify-write cycles across processes.
    config_lock_timeout_ms: int = 10_000
    config_lock_stale_seconds: float = 60.0


@dataclass(slots=True)
class TeamDefaults:
    max_workers: int = 6
    agent_type: str = "executor"
    session_prefix: str = "attoteam"


@dataclass(slots=True)
class TaskConfig:
    claim_lease_ms: int = 15 * 60 * 1000
    claim_lock_timeout_ms: int = 5_000
    claim_lock_stale_seconds: float = 300.0


@dataclass(slots=True)
class DispatchConfig:
    mode: str = "hook_preferred_with_fallback"  # | transport_direct | prompt_stdin
    ack_timeout_ms: int = 2_000
    poll_ms: int = 50
    lock_timeout_ms: int = 15_000
    lock_stale_seconds: float = 300.0
    max_unconfirmed_attempts: int = 3


@dataclass(slots=True)
class ScalingConfig:
    enabled: bool = False
    ready_timeout_ms: int = 45_000
    skip_ready_wait: bool = False
    drain_timeout_ms: int = 30_000
    drain_poll_ms: int = 2_000
    lock_poll_ms: int = 100
    lock_stale_seconds: float | None = 3600.0
    launch_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    debug: bool = False
    json_output: bool = False


@dataclass(slots=True)
class TeamYamlConfig:
    version: int = 1
    state: StateConfig = field(default_factory=StateConfig)
    team: TeamDefaults = field(default_factory=TeamDefaults)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
