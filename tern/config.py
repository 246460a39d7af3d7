import json
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tern.constants import (
    COMPRESSION_THRESHOLD,
    DEFAULT_CONTEXT_TOKENS,
    EXEC_TIMEOUT,
    MAX_DRIFT,
    MAX_TOOL_ROUNDS,
    TAIL_TOKEN_BUDGET,
    TERN_DIR_NAME,
)
from tern.logging import get_logger
from tern.permissions import PermissionsConfig

TERN_DIR = Path.home() / TERN_DIR_NAME
SETTINGS_PATH = TERN_DIR / "settings.json"

_logger = get_logger(__name__)


def load_settings_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load settings from %s", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        _logger.warning("Ignoring %s: top level must be an object", path)
        return {}
    return data


def merge_settings(base: dict, override: dict) -> dict:
    """Nested objects merge key by key; permission rules from `override` come first."""
    merged = dict(base)
    for key, value in override.items():
        if key == "rules" and isinstance(value, list) and isinstance(base.get(key), list):
            merged[key] = [*value, *base[key]]
        elif isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = merge_settings(base[key], value)
        else:
            merged[key] = value
    return merged


def project_settings_path(project_dir: Path | None = None) -> Path:
    return (project_dir or Path.cwd()) / TERN_DIR_NAME / "settings.json"


def load_user_settings(project_dir: Path | None = None) -> dict:
    """Global settings, then project settings on top."""
    return merge_settings(load_settings_file(SETTINGS_PATH), load_settings_file(project_settings_path(project_dir)))


class RemoteServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    url: str = Field(min_length=1)


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TERN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Model endpoint
    model: str = "gpt-4o-mini"
    api_base: str = "https://api.openai.com/v1"
    api_key: str | None = Field(default=None, validation_alias=AliasChoices("TERN_API_KEY", "OPENAI_API_KEY", "api_key"))
    request_timeout: float = 120.0

    # Storage
    data_dir: Path = TERN_DIR
    workspace: Path = Field(default_factory=Path.cwd)

    # Turn loop
    max_tool_rounds: int = MAX_TOOL_ROUNDS
    exec_timeout: float = EXEC_TIMEOUT
    context_tokens: int = DEFAULT_CONTEXT_TOKENS
    compaction_threshold: float = COMPRESSION_THRESHOLD
    tail_token_budget: int = TAIL_TOKEN_BUDGET

    # Patches
    max_drift: int = MAX_DRIFT
    allow_symlinks: bool = False

    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    remote_servers: list[RemoteServerConfig] = Field(default_factory=list)
    tool_call_overrides: dict[str, str] = Field(default_factory=dict)

    log_level: str = "WARNING"

    @field_validator("max_drift", "max_tool_rounds", "tail_token_budget")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("compaction_threshold")
    @classmethod
    def _validate_threshold(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError(f"compaction_threshold must be in (0, 1], got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("remote_servers")
    @classmethod
    def _unique_servers(cls, v: list[RemoteServerConfig]) -> list[RemoteServerConfig]:
        ids = [s.id for s in v]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"duplicate remote server ids: {', '.join(sorted(duplicates))}")
        return v

    @property
    def sessions_db_path(self) -> Path:
        return self.data_dir / "sessions.db"

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "audit.jsonl"


PERSIST_KEYS = frozenset(
    {
        "model",
        "api_base",
        "data_dir",
        "max_tool_rounds",
        "exec_timeout",
        "context_tokens",
        "compaction_threshold",
        "tail_token_budget",
        "max_drift",
        "allow_symlinks",
        "permissions",
        "remote_servers",
        "tool_call_overrides",
        "log_level",
    }
)


def get_config(project_dir: Path | None = None, **overrides) -> Config:
    settings = load_user_settings(project_dir)

    # Build config: explicit overrides > settings files > env vars > defaults
    values = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    if project_dir is not None:
        values.setdefault("workspace", project_dir)
    values.update(overrides)
    return Config(**values)
