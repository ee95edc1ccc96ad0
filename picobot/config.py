"""Configuration management for Picobot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME_DIR = Path("~/.picobot").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "sessions.db"
DEFAULT_CRONS_PATH = DEFAULT_HOME_DIR / "crons.json"
LOCAL_CONFIG_FILENAME = "config.yaml"

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ModelConfig(BaseModel):
    """LLM provider configuration."""

    provider: Literal["openrouter", "openai", "ollama"] = "openrouter"
    model: str = "x-ai/grok-4.1-fast"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout: float = 60.0
    allowed: list[str] = Field(
        default_factory=lambda: [
            "x-ai/grok-4.1-fast",
            "anthropic/claude-haiku-4.5",
            "anthropic/claude-sonnet-4.5",
            "openai/gpt-5-mini",
            "google/gemini-3-flash-preview",
        ]
    )


class AgentToolsConfig(BaseModel):
    """Tool filter for the main agent."""

    include: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=lambda: ["general"])
    exclude: list[str] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """Main agent loop configuration."""

    max_iterations: int = 15
    queue_poll_timeout: float = 1.0
    tools: AgentToolsConfig = Field(default_factory=AgentToolsConfig)


class SessionConfig(BaseModel):
    """Session configuration."""

    storage: Literal["sqlite", "memory"] = "sqlite"
    path: str = str(DEFAULT_DB_PATH)
    max_messages: int = 50
    ttl_seconds: int = 24 * 60 * 60
    cleanup_interval_seconds: int = 60 * 60
    expirable_prefixes: list[str] = Field(default_factory=lambda: ["subagent_", "job_"])


class AgentTypeConfig(BaseModel):
    """A specialised subagent: which tool categories it may use."""

    name: str
    description: str = ""
    categories: list[str] = Field(default_factory=list)
    model: str = ""


def _default_agent_types() -> dict[str, AgentTypeConfig]:
    return {
        "general": AgentTypeConfig(
            name="General",
            description="Core tools: files and web research.",
            categories=["filesystem", "web"],
        ),
        "research": AgentTypeConfig(
            name="Researcher",
            description="Web search and page reading.",
            categories=["web"],
        ),
        "files": AgentTypeConfig(
            name="File Worker",
            description="Reads and writes files inside the workspace.",
            categories=["filesystem"],
        ),
    }


class SubagentConfig(BaseModel):
    """Subagent coordination configuration."""

    agent_types: dict[str, AgentTypeConfig] = Field(default_factory=_default_agent_types)
    denied_tools: list[str] = Field(
        default_factory=lambda: ["subagent", "check_subagent", "message", "send_file"]
    )
    max_iterations: int = 15
    question_timeout_seconds: float = 600.0
    max_finished_tasks: int = 100


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""

    enabled: bool = True
    token: str = ""
    api_base_url: str = "https://api.telegram.org"
    allowed_users: list[str] = Field(default_factory=list)
    poll_timeout: int = 25
    typing_interval_seconds: float = 4.0


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 60
    max_output_chars: int = 10000
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        "format",
        ":(){:|:&};:",
    ]


class WebFetchToolConfig(BaseModel):
    """Web fetch tool configuration."""

    max_chars: int = 15000
    timeout: float = 30.0
    user_agent: str = "Mozilla/5.0 (compatible; Picobot/0.1)"


class WebSearchToolConfig(BaseModel):
    """Web search tool configuration."""

    provider: str = "brave"
    api_key: str = ""
    base_url: str = "https://api.search.brave.com/res/v1/web/search"
    max_results: int = 5
    timeout: int = 20
    safesearch: str = "moderate"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    web_fetch: WebFetchToolConfig = Field(default_factory=WebFetchToolConfig)
    web_search: WebSearchToolConfig = Field(default_factory=WebSearchToolConfig)


class WorkspaceConfig(BaseModel):
    """Workspace root and prompt directory configuration."""

    path: str = str(DEFAULT_HOME_DIR / "workspace")
    prompts_path: str = str(DEFAULT_HOME_DIR / "prompts")


class CronConfig(BaseModel):
    """Scheduler configuration."""

    enabled: bool = True
    path: str = str(DEFAULT_CRONS_PATH)
    tick_seconds: float = 30.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Picobot."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    subagents: SubagentConfig = Field(default_factory=SubagentConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="PICOBOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; pydantic-settings layers env vars on top."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> Path:
        """Save configuration to YAML file."""
        config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        return config_path

    def resolved_workspace_path(self) -> Path:
        """Resolve workspace path, anchoring relative paths to cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        return (Path.cwd() / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
