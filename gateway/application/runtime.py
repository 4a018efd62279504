"""
Service wiring shared by the websocket and REST surfaces.
"""

from typing import Callable, Optional
import structlog

from gateway.application.websocket.connection_manager import ConnectionManager
from gateway.application.websocket.schema.events import ChatRequest
from gateway.domain.context.context_manager import ContextManager
from gateway.domain.context.memory.embeddings import EmbeddingProvider
from gateway.domain.context.memory.manager_registry import MemoryManagerRegistry
from gateway.domain.errors import ProviderNotConfiguredError
from gateway.domain.models.conversation import LoopResult
from gateway.domain.models.tool import ToolContext
from gateway.domain.orchestration.core.main_agent import CompletionStream, DeltaCallback, ToolCallOrchestrator
from gateway.domain.orchestration.scheduler.heartbeat import HeartbeatScheduler
from gateway.domain.streaming.completion_client import CompletionClient
from gateway.domain.streaming.reasoning import strip_reasoning
from gateway.domain.streaming.streaming_handler import StreamingHandler
from gateway.domain.tool.builtin.memory_tools import register_memory_tools
from gateway.domain.tool.remote_bridge import RemoteToolBridge
from gateway.domain.tool.tool_discovery import discover_tools, register_discovered_tools
from gateway.domain.tool.tool_registry import ToolRegistry
from gateway.infrastructure.config.settings import GatewaySettings, ProviderConfig
from gateway.infrastructure.observability.logging import agent_logger, bind_turn_context

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_ID = "default"


class GatewayRuntime:
    """Owns the process-wide services and runs chat turns"""

    def __init__(
        self,
        settings: GatewaySettings,
        completion_client: Optional[CompletionStream] = None,
        embedding_factory: Optional[Callable[[], Optional[EmbeddingProvider]]] = None,
        watch_memory: bool = True,
        enable_heartbeats: bool = True
    ):
        self.settings = settings
        self.registry = ToolRegistry()
        self.completion_client = completion_client or CompletionClient(timeout=settings.completion_timeout_seconds)
        self.bridge = RemoteToolBridge(self.registry, timeout=settings.remote_tool_timeout_seconds)
        self.memory = MemoryManagerRegistry(settings, embedding_factory, watch=watch_memory)
        self.context_manager = ContextManager(settings)
        self.orchestrator = ToolCallOrchestrator(self.completion_client, self.registry)
        self.heartbeat = HeartbeatScheduler(settings, self.orchestrator, self.context_manager)
        self.connection_manager = ConnectionManager()
        self.streaming = StreamingHandler(self.connection_manager)
        self.enable_heartbeats = enable_heartbeats

    async def startup(self):
        register_memory_tools(self.registry, self.memory)
        loaded = register_discovered_tools(self.registry, discover_tools(self.settings.tools_dir))
        logger.info("Tools ready", builtin=len(self.registry.get_tools_by_source("builtin")), plugins=loaded)

        await self.memory.initialize_all()
        if self.enable_heartbeats:
            self.heartbeat.start()

    async def shutdown(self):
        self.heartbeat.stop_all()
        await self.memory.close_all()
        aclose = getattr(self.completion_client, "aclose", None)
        if aclose is not None:
            await aclose()

    def resolve_agent_id(self, agent_id: Optional[str]) -> str:
        if agent_id:
            return agent_id
        if self.settings.agents:
            return self.settings.agents[0].id
        return DEFAULT_AGENT_ID

    def resolve_provider(self, agent_id: str) -> ProviderConfig:
        agent = self.settings.get_agent(agent_id)
        provider = self.settings.resolve_provider(agent.provider if agent else None)
        if provider is None:
            raise ProviderNotConfiguredError()
        if agent and agent.provider and agent.provider not in (provider.model, provider.description):
            logger.warning("Configured provider not found, using default", agent_id=agent_id,
                           requested=agent.provider, provider=provider.model)
        return provider

    async def run_chat(self, request: ChatRequest, on_delta: Optional[DeltaCallback] = None) -> LoopResult:
        """Run one interactive turn; completion failures propagate"""

        agent_id = self.resolve_agent_id(request.agent_id)
        provider = self.resolve_provider(agent_id)
        history = self.context_manager.build_history(
            self.context_manager.resolve_system_prompt(agent_id),
            request.messages
        )

        last = request.messages[-1].get("content") if request.messages else None
        agent_logger.log_agent_event("user_message", agent_id, request.session_id, {"content": last})

        with bind_turn_context(agent_id, request.session_id):
            result = await self.orchestrator.run(
                history,
                provider,
                context=ToolContext(agent_id=agent_id, session_id=request.session_id),
                on_delta=on_delta
            )

        agent_logger.log_agent_event("response", agent_id, request.session_id, {
            "status": result.status.value,
            "iterations": result.iterations,
            "content": result.visible_content
        })
        return result

    async def summarize(self, request: ChatRequest, result: LoopResult) -> Optional[str]:
        """5-10 word summary of the session; failures are logged and yield None"""

        agent_id = self.resolve_agent_id(request.agent_id)
        transcript = list(request.messages) + [{"role": "assistant", "content": result.raw_content}]
        try:
            provider = self.resolve_provider(agent_id)
            completion = await self.completion_client.complete(
                provider,
                self.context_manager.build_summary_messages(transcript)
            )
        except Exception as e:
            logger.error("Failed to generate summary", agent_id=agent_id, session_id=request.session_id, error=str(e))
            return None

        if completion.usage:
            agent_logger.log_usage(agent_id, request.session_id, completion.usage, message="Summary token usage")
        return strip_reasoning(completion.content) or None
