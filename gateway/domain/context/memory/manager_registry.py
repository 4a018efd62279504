from typing import Callable, Dict, Optional
import asyncio

import structlog

from gateway.domain.context.memory.embeddings import EmbeddingProvider
from gateway.domain.context.memory.memory_index import MemoryIndexManager
from gateway.infrastructure.config.settings import GatewaySettings

logger = structlog.get_logger(__name__)


class MemoryManagerRegistry:
    """One MemoryIndexManager per agent, created on first use"""

    def __init__(
        self,
        settings: GatewaySettings,
        embedding_factory: Optional[Callable[[], Optional[EmbeddingProvider]]] = None,
        watch: bool = True
    ):
        self.settings = settings
        self.embedding_factory = embedding_factory or self._default_embedding_provider
        self.watch = watch
        self._managers: Dict[str, MemoryIndexManager] = {}
        self._lock = asyncio.Lock()

    def _default_embedding_provider(self) -> Optional[EmbeddingProvider]:
        config = self.settings.embedding_provider_config()
        return EmbeddingProvider(config) if config else None

    async def get(self, agent_id: str) -> MemoryIndexManager:
        manager = self._managers.get(agent_id)
        if manager is not None:
            return manager

        async with self._lock:
            manager = self._managers.get(agent_id)
            if manager is None:
                manager = MemoryIndexManager(
                    agent_id,
                    self.settings.agent_dir(agent_id),
                    embedding_provider=self.embedding_factory(),
                    settings=self.settings.memory
                )
                await manager.initialize(watch=self.watch)
                self._managers[agent_id] = manager
                logger.info("Memory manager created", agent_id=agent_id)
        return manager

    async def initialize_all(self):
        for agent in self.settings.agents:
            try:
                await self.get(agent.id)
            except Exception as e:
                logger.error("Failed to initialize memory manager", agent_id=agent.id, error=str(e))

    async def close_all(self):
        managers = list(self._managers.values())
        self._managers.clear()
        for manager in managers:
            await manager.close()

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._managers
