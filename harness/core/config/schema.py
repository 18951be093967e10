"""Harness configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers (LiteLLM multi-provider)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class AgentConfig(BaseModel):
    """Call driver settings (agent.*)."""

    name: str = "Harness"
    model: str = "anthropic/claude-sonnet-4-5-20250929"
    instructions: str = "You are a helpful autonomous agent."
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int = 4096
    max_steps: int = 20
    max_context_messages: int = 30
    max_retries: int = 2
    retry_backoff_ms: int = 100
    tools_requiring_approval: list[str] | dict[str, bool] = Field(default_factory=list)
    allowed_tools: list[str] | None = None
    blocked_tools: list[str] | None = None


class ContextConfig(BaseModel):
    """Context compaction (context.*)."""

    compression_threshold: int = 3000
    summarize_token_threshold: int = 100_000
    chars_per_token: int = 4
    file_read_tools: list[str] = Field(
        default_factory=lambda: ["readFile", "read_file"]
    )
    command_tools: list[str] = Field(
        default_factory=lambda: ["bash", "exec_command", "shell"]
    )
    error_markers: list[str] = Field(
        default_factory=lambda: ["error", "failed", "exception"]
    )
    digest_lines: int = 3
    digest_line_chars: int = 100
    transcript_max_chars: int = 2000
    summary_model: str = ""  # empty → falls back to agent.model
    summary_max_tokens: int = 1024


class ErrorLedgerConfig(BaseModel):
    """Error ledger (errors.*)."""

    dedup_window_s: float = 60.0
    max_entries: int = 20
    max_recent: int = 5


# Tools
class ShellToolConfig(BaseModel):
    timeout: int = 60
    restrict_to_workspace: bool = False


class ToolsConfig(BaseModel):
    workspace: str = "./workspace"
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


# Database
class DatabaseConfig(BaseModel):
    path: str = "data/harness.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings with env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        HARNESS_AGENT__MODEL=openai/gpt-4o
        HARNESS_CONTEXT__COMPRESSION_THRESHOLD=5000
        HARNESS_PROVIDERS__ANTHROPIC__API_KEY=sk-...
    """

    model_config = SettingsConfigDict(
        env_prefix="HARNESS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    errors: ErrorLedgerConfig = Field(default_factory=ErrorLedgerConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Env beats the YAML data that load_config passes as init kwargs
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed properties ─────────────────────────────────

    @property
    def workspace_path(self) -> Path:
        return Path(self.tools.workspace).expanduser().resolve()

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    @property
    def summary_model(self) -> str:
        return self.context.summary_model or self.agent.model

    # ── Provider helpers ────────────────────────────────────

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for model name."""
        model_name = (model or self.agent.model).lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None
