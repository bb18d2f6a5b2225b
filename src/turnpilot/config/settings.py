"""
config/settings.py — turnpilot Runtime Settings

One typed tree for everything an embedding application can tune. YAML
supplies the shape and the values checked into the repo; TURNPILOT_*
environment variables override individual leaves:

    TURNPILOT_AGENT__MAX_TURNS=5  →  settings.agent.max_turns == 5

Range checks live on the section models and fail at parse time with a
pydantic ValidationError. validate_all() looks at combinations of
sections and raises ConfigError once with every problem numbered.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from turnpilot.agent.types import Budget, ErrorHandlingPolicy
from turnpilot.exceptions import ConfigError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_ENV_VAR = "TURNPILOT_CONFIG"


# ─────────────────────────────────────────────────────────────────────────────
# Sections
# ─────────────────────────────────────────────────────────────────────────────


class AgentConfig(BaseModel):
    name: str = "turnpilot"
    max_turns: int = Field(default=20, ge=1)
    max_wall_clock_seconds: float = Field(default=300.0, gt=0)


class ErrorPolicyConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    base_backoff_seconds: float = Field(default=1.0, ge=0)
    use_fallbacks: bool = True
    ask_user_when_missing_fields: bool = True


class PlannerConfig(BaseModel):
    """Sampling for the planner's one call per turn. An empty model lets the client pick."""
    model: str = ""
    max_tokens: int = Field(default=500, ge=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    system_prompt: Optional[str] = None


class CriticConfig(PlannerConfig):
    max_tokens: int = Field(default=300, ge=1)


class ToolsConfig(BaseModel):
    default_timeout_seconds: float = Field(default=30.0, gt=0)
    repair_output: bool = False
    working_dir: str = "."
    max_result_chars: int = Field(default=8_000, ge=1)


class NormalizerConfig(BaseModel):
    max_key_facts: int = Field(default=10, ge=1)
    max_depth: int = Field(default=2, ge=1)
    max_fact_chars: int = Field(default=100, ge=10)
    max_summary_chars: int = Field(default=200, ge=20)


class StateConfig(BaseModel):
    max_memory_entries: int = Field(default=50, ge=1)
    max_memory_value_length: int = Field(default=500, ge=10)
    max_facts_in_memory: int = Field(default=10, ge=0)
    max_turn_summaries: int = Field(default=5, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = Field(default=100, ge=1)
    backup_count: int = Field(default=5, ge=0)
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}; got '{v}'")
        return level


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Sources, strongest first: environment variables, a .env file, the YAML
    file (passed in as init kwargs), then the defaults above.
    """

    model_config = SettingsConfigDict(
        env_prefix="TURNPILOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    error_policy: ErrorPolicyConfig = Field(default_factory=ErrorPolicyConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    critic: CriticConfig = Field(default_factory=CriticConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    def budget(self) -> Budget:
        return Budget(
            max_turns=self.agent.max_turns,
            max_wall_clock_seconds=self.agent.max_wall_clock_seconds,
        )

    def error_handling_policy(self) -> ErrorHandlingPolicy:
        return ErrorHandlingPolicy(**self.error_policy.model_dump())

    def validate_all(self) -> None:
        """Raise ConfigError naming every cross-section conflict, or return None."""
        problems: list[str] = []
        timeout = self.tools.default_timeout_seconds
        wall_clock = self.agent.max_wall_clock_seconds
        if timeout > wall_clock:
            problems.append(
                f"tools.default_timeout_seconds ({timeout}) exceeds "
                f"agent.max_wall_clock_seconds ({wall_clock})."
            )

        # Each retry consumes a turn.
        if self.error_policy.max_retries >= self.agent.max_turns:
            problems.append(
                f"error_policy.max_retries ({self.error_policy.max_retries}) must be "
                f"below agent.max_turns ({self.agent.max_turns})."
            )

        # Compression keeps facts, turn summaries and six bookkeeping keys.
        floor = self.state.max_facts_in_memory + self.state.max_turn_summaries + 6
        if floor > self.state.max_memory_entries:
            problems.append(
                f"state.max_memory_entries ({self.state.max_memory_entries}) is smaller "
                f"than the entries kept after compression ({floor})."
            )

        if not Path(self.tools.working_dir).expanduser().is_dir():
            problems.append(f"tools.working_dir '{self.tools.working_dir}' is not a directory.")

        if problems:
            listing = "\n".join(f"  {n}. {p}" for n, p in enumerate(problems, start=1))
            raise ConfigError(
                f"turnpilot configuration invalid, {len(problems)} problem(s) found:\n{listing}"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────

_SECTIONS = frozenset(Settings.model_fields)

_current: Optional[Settings] = None
_lock = threading.Lock()


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """Explicit argument, then $TURNPILOT_CONFIG, then config/config.yaml."""
    if config_path is not None:
        return Path(config_path)
    from_env = os.environ.get(CONFIG_ENV_VAR)
    return Path(from_env) if from_env else DEFAULT_CONFIG_PATH


def _settings_from_file(path: Path) -> Settings:
    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    # Unknown top-level keys in the file are ignored.
    return Settings(**{key: value for key, value in data.items() if key in _SECTIONS})


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Read the YAML file, apply the environment, and make the result current."""
    global _current
    settings = _settings_from_file(_resolve_config_path(config_path))
    with _lock:
        _current = settings
    return settings


def get_settings() -> Settings:
    """The current Settings, loaded from the default location on first use."""
    global _current
    with _lock:
        if _current is None:
            _current = _settings_from_file(_resolve_config_path(None))
        return _current


def reset_settings() -> None:
    """Forget the current Settings so the next get_settings() reloads."""
    global _current
    with _lock:
        _current = None
