"""
config.py - Harness configuration

All tunables are Pydantic-validated and loaded from:
1. Defaults declared here
2. An optional YAML file (load_settings(path))
3. Environment variables prefixed LEDGER_HARNESS_ (nested with "__",
   e.g. LEDGER_HARNESS_LOGGING__LEVEL=DEBUG)

Settings are passed explicitly to every component through the RunContext.
There is no module-level settings singleton.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict

from .core import DEFAULT_BASE_PORT


# Output fragments that identify a protocol-level rejection, matched
# case-insensitively against client output on a non-zero exit.
DEFAULT_REJECTION_PATTERNS = [
    r"is lower than the amount to be",
    r"rejected by VPs",
    r"Transaction is invalid",
    r"insufficient",
    r"not enough",
    r"was rejected",
]


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"

    @field_validator("format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError(f"unknown log format {value!r}")
        return value


class HarnessSettings(BaseSettings):
    """
    Root configuration for a harness process.

    Attributes:
        node_command: argv prefix launching a node
        client_command: argv prefix launching the client CLI
        relayer_command: argv prefix launching a relayer (defaults to node_command)
        wasm_dir: Directory holding prebuilt wasm artifacts
        poll_interval: Seconds between sync monitor polls
        sync_timeout: Default seconds to wait for a sync condition
        startup_timeout: Seconds to wait for a freshly spawned network to produce blocks
        command_timeout: Default seconds before a client command is abandoned
        kill_grace_period: Seconds between SIGTERM and SIGKILL
        scenario_timeout: Seconds before a whole scenario is cancelled (None = no limit)
        max_nodes: Largest network the harness will spawn
        base_port: First port used by the sequential port strategy
        port_strategy: "sequential" or "random"
        port_seed: Seed for the random port strategy
        keep_on_failure: Keep run directories of failed scenarios for diagnostics
        work_dir: Parent directory for run directories (None = system temp dir)
        use_pty: Attach nodes to a pseudo-terminal instead of pipes
        max_shrink_attempts: Upper bound on replays performed while shrinking
        rejection_patterns: Regexes marking protocol rejections
        log_level_env: Verbosity passed to nodes through LEDGER_LOG
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_HARNESS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    node_command: List[str] = Field(default_factory=lambda: ["namadan"])
    client_command: List[str] = Field(default_factory=lambda: ["namadac"])
    relayer_command: Optional[List[str]] = None
    wasm_dir: Optional[Path] = None

    poll_interval: float = 0.5
    sync_timeout: float = 60.0
    startup_timeout: float = 120.0
    command_timeout: float = 60.0
    kill_grace_period: float = 5.0
    scenario_timeout: Optional[float] = None

    max_nodes: int = 16
    base_port: int = DEFAULT_BASE_PORT
    port_strategy: str = "sequential"
    port_seed: int = 0

    keep_on_failure: bool = True
    work_dir: Optional[Path] = None
    use_pty: bool = False
    max_shrink_attempts: int = 500

    rejection_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_REJECTION_PATTERNS)
    )
    log_level_env: str = "info"

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("port_strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        if value not in ("sequential", "random"):
            raise ValueError(f"unknown port strategy {value!r}")
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> HarnessSettings:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_nodes < 1:
            raise ValueError("max_nodes must be at least 1")
        if not self.node_command or not self.client_command:
            raise ValueError("node_command and client_command cannot be empty")
        if not 1024 <= self.base_port <= 65000:
            raise ValueError(f"base_port {self.base_port} outside 1024..65000")
        return self

    @property
    def relayer(self) -> List[str]:
        return self.relayer_command or self.node_command


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> HarnessSettings:
    """
    Load settings from a YAML file, then apply environment and keyword overrides.

    Environment variables take precedence over the YAML file; explicit
    keyword overrides take precedence over both. Nested sections merge key
    by key: LEDGER_HARNESS_LOGGING__LEVEL replaces logging.level and keeps
    the other logging keys of the YAML file.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Init kwargs beat env vars in pydantic-settings, so the environment is
    # read here and merged over the YAML values before construction.
    env_values = EnvSettingsSource(HarnessSettings)()
    merged = _deep_merge(_deep_merge(raw, env_values), overrides)
    return HarnessSettings(**merged)


def _deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
