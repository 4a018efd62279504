"""
Gateway settings.

Loading and migrating the on-disk configuration belongs to the admin layer; the
core only needs a validated view of it. Values come from an optional JSON file
and are then overridden from the environment.
"""

from typing import Dict, Any, Optional, List
from pathlib import Path
import json
import os

from pydantic import BaseModel, Field
import structlog

from gateway.domain.errors import AccessDeniedError

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ProviderConfig(BaseModel):
    """An OpenAI-compatible completion endpoint"""
    base_url: str = Field(description="Endpoint base URL, with or without the API version segment")
    model: str = Field(description="Model identifier sent with every request")
    api_key: Optional[str] = Field(None, description="Bearer token, if the provider needs one")
    description: str = ""


class ChatSettings(BaseModel):
    include_history: bool = True
    show_reasoning: bool = False
    generate_summaries: bool = True


class MemorySettings(BaseModel):
    use_embeddings: bool = False
    embeddings_model: str = ""
    chunk_size_chars: int = 1000
    sync_debounce_seconds: float = 1.0
    keyword_score: float = 0.5
    fallback_score: float = 0.1


class HeartbeatConfig(BaseModel):
    enabled: bool = False
    schedule: Optional[str] = Field(None, description="Cron expression")


class AgentProfile(BaseModel):
    """What the core needs to know about an agent"""
    id: str
    name: str = ""
    system_prompt: Optional[str] = None
    provider: Optional[str] = Field(None, description="Provider model or description to use")
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)


class GatewaySettings(BaseModel):
    """Complete gateway configuration"""
    port: int = 3808
    secret_token: str = ""
    agents_dir: Path = Path("agents")
    tools_dir: Optional[Path] = Path("tools")
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    providers: List[ProviderConfig] = Field(default_factory=list)
    agents: List[AgentProfile] = Field(default_factory=list)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    completion_timeout_seconds: Optional[float] = 300.0
    remote_tool_timeout_seconds: float = 30.0
    heartbeat_max_iterations: int = 10
    log_level: str = "INFO"
    log_format: str = "json"

    def resolve_provider(self, name: Optional[str] = None) -> Optional[ProviderConfig]:
        """Find a provider by model or description, falling back to the first one"""

        if name:
            for provider in self.providers:
                if name in (provider.model, provider.description):
                    return provider
        return self.providers[0] if self.providers else None

    def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def agent_dir(self, agent_id: str) -> Path:
        """Directory of one agent; ids that escape the agents directory are rejected"""

        root = self.agents_dir.resolve()
        resolved = (root / agent_id).resolve()
        if not agent_id or resolved.parent != root:
            raise AccessDeniedError(agent_id)
        return resolved

    def embedding_provider_config(self) -> Optional[ProviderConfig]:
        """Provider used for memory embeddings, if embeddings are enabled"""

        if not self.memory.use_embeddings:
            return None
        provider = self.resolve_provider()
        if provider is None:
            return None
        model = self.memory.embeddings_model or "text-embedding-3-small"
        return provider.model_copy(update={"model": model})


_ENV_OVERRIDES = {
    "GATEWAY_PORT": "port",
    "GATEWAY_SECRET_TOKEN": "secret_token",
    "GATEWAY_AGENTS_DIR": "agents_dir",
    "GATEWAY_TOOLS_DIR": "tools_dir",
    "LOG_LEVEL": "log_level",
    "LOG_FORMAT": "log_format",
}


def load_settings(path: Optional[str] = None) -> GatewaySettings:
    """Load settings from a JSON file (if any) and apply environment overrides"""

    data: Dict[str, Any] = {}
    config_path = path or os.getenv("GATEWAY_CONFIG")

    if config_path and Path(config_path).exists():
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        logger.info("Loaded gateway config", path=str(config_path))
    elif config_path:
        logger.warning("Gateway config not found, using defaults", path=str(config_path))

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[field_name] = value

    return GatewaySettings.model_validate(data)
