"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from execgate.exec.safe_bins import resolve_safe_bin_runtime_policy
from execgate.exec.types import PolicyConfig, SafeBinRuntimePolicy


class SafeBinProfileConfig(BaseModel):
    """Argument-shape profile for one safe bin."""
    min_positional: int | None = None
    max_positional: int | None = None
    allowed_positionals: list[str] | None = None
    denied_flags: list[str] = Field(default_factory=list)
    deny_path_args: bool = False


class ExecToolConfig(BaseModel):
    """Command execution tool configuration."""
    security: Literal["deny", "ask", "allowlist", "full"] = "deny"  # Denied by default
    ask: Literal["off", "on-miss", "always"] = "on-miss"
    auto_allow_skills: bool = False
    safe_bins: list[str] | None = None  # None uses the built-in set
    safe_bin_profiles: dict[str, SafeBinProfileConfig] = Field(default_factory=dict)
    trusted_dirs: list[str] = Field(default_factory=list)
    timeout_seconds: int = 30
    max_output_chars: int = 200000  # 200KB
    approvals_path: str = "~/.execgate/exec-approvals.json"
    host: Literal["local", "companion"] = "local"
    host_enforced: bool = False
    host_fallback_allowed: bool = True


class AgentExecOverrides(BaseModel):
    """Per-agent exec settings. Unset fields fall back to tools.exec."""
    security: Literal["deny", "ask", "allowlist", "full"] | None = None
    ask: Literal["off", "on-miss", "always"] | None = None
    auto_allow_skills: bool | None = None
    safe_bins: list[str] | None = None
    safe_bin_profiles: dict[str, SafeBinProfileConfig] | None = None
    trusted_dirs: list[str] | None = None


class AgentToolsConfig(BaseModel):
    """Tools configuration for one agent."""
    exec: AgentExecOverrides = Field(default_factory=AgentExecOverrides)


class AgentEntry(BaseModel):
    """An agent with its own tool overrides."""
    id: str
    tools: AgentToolsConfig = Field(default_factory=AgentToolsConfig)


class AgentsConfig(BaseModel):
    """Agent configuration."""
    model_config = ConfigDict(populate_by_name=True)

    agent_list: list[AgentEntry] = Field(default_factory=list, alias="list")


class ToolsConfig(BaseModel):
    """Tools configuration."""
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)


class Config(BaseSettings):
    """Root configuration for execgate."""
    model_config = SettingsConfigDict(env_prefix="EXECGATE_", env_nested_delimiter="__")

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @property
    def approvals_path(self) -> Path:
        """Get expanded approvals file path."""
        return Path(self.tools.exec.approvals_path).expanduser()

    def get_agent(self, agent_id: str | None) -> AgentEntry | None:
        """Find an agent entry by id (case-insensitive)."""
        if not agent_id or not agent_id.strip():
            return None
        wanted = agent_id.strip().lower()
        for entry in self.agents.agent_list:
            if entry.id.strip().lower() == wanted:
                return entry
        return None


def resolve_exec_policy(config: Config, agent_id: str | None = None) -> PolicyConfig:
    """Effective security/ask for an agent: agent overrides, then tools.exec."""
    base = config.tools.exec
    agent = config.get_agent(agent_id)
    local = agent.tools.exec if agent else AgentExecOverrides()
    return PolicyConfig(
        security=local.security or base.security,
        ask=local.ask or base.ask,
        auto_allow_skills=base.auto_allow_skills if local.auto_allow_skills is None else local.auto_allow_skills,
    )


def resolve_agent_runtime(config: Config, agent_id: str | None = None) -> SafeBinRuntimePolicy:
    """Safe-bin runtime policy for an agent."""
    agent = config.get_agent(agent_id)
    return resolve_safe_bin_runtime_policy(
        global_scope=config.tools.exec,
        local_scope=agent.tools.exec if agent else None,
    )
