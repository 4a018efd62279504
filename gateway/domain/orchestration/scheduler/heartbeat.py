"""
Scheduled autonomous runs ("heartbeats").

An agent with ``heartbeat.enabled`` and a cron ``schedule`` wakes up on that
schedule, reads ``HEARTBEAT.md`` from its directory and runs the tool loop on
those instructions with a bounded number of iterations. Only one heartbeat
per agent runs at a time; triggers that arrive meanwhile are skipped.
"""

from typing import Dict, Optional, Set
import asyncio
import time

from croniter import croniter
import structlog

from gateway.domain.context.context_manager import ContextManager
from gateway.domain.models.conversation import LoopResult
from gateway.domain.models.tool import ToolContext
from gateway.domain.orchestration.core.main_agent import ToolCallOrchestrator
from gateway.infrastructure.config.settings import AgentProfile, GatewaySettings
from gateway.infrastructure.observability.logging import bind_turn_context

logger = structlog.get_logger(__name__)

HEARTBEAT_FILE_NAME = "HEARTBEAT.md"
HEARTBEAT_SESSION_ID = "heartbeat"


class HeartbeatScheduler:
    def __init__(
        self,
        settings: GatewaySettings,
        orchestrator: ToolCallOrchestrator,
        context_manager: Optional[ContextManager] = None
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.context_manager = context_manager or ContextManager(settings)
        self._jobs: Dict[str, asyncio.Task] = {}
        self._running: Set[str] = set()
        self._runs: Set[asyncio.Task] = set()

    @property
    def scheduled_agents(self):
        return sorted(self._jobs)

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._running

    def start(self) -> int:
        """(Re)schedule every agent with an enabled heartbeat"""

        self.stop_all()
        for agent in self.settings.agents:
            self._schedule(agent)
        logger.info("Heartbeat scheduler started", scheduled=len(self._jobs))
        return len(self._jobs)

    def stop_all(self):
        for job in self._jobs.values():
            job.cancel()
        self._jobs.clear()

    def refresh_agent(self, agent_id: str) -> bool:
        """Drop any existing job for the agent and schedule it again from current settings"""

        job = self._jobs.pop(agent_id, None)
        if job is not None:
            job.cancel()
            logger.info("Stopped existing heartbeat job", agent_id=agent_id)

        agent = self.settings.get_agent(agent_id)
        return self._schedule(agent) if agent else False

    def _schedule(self, agent: AgentProfile) -> bool:
        heartbeat = agent.heartbeat
        if not heartbeat.enabled or not heartbeat.schedule:
            return False

        if not croniter.is_valid(heartbeat.schedule):
            logger.error("Invalid cron schedule", agent_id=agent.id, schedule=heartbeat.schedule)
            return False

        self._jobs[agent.id] = asyncio.create_task(self._run_schedule(agent.id, heartbeat.schedule))
        logger.info("Scheduled heartbeat", agent_id=agent.id, schedule=heartbeat.schedule)
        return True

    async def _run_schedule(self, agent_id: str, schedule: str):
        itr = croniter(schedule, time.time())
        while True:
            delay = max(0.0, itr.get_next(float) - time.time())
            await asyncio.sleep(delay)
            self.trigger(agent_id)

    def trigger(self, agent_id: str) -> Optional[asyncio.Task]:
        """Start a heartbeat in the background unless one is already running"""

        if agent_id in self._running:
            logger.warning("Heartbeat already running, skipping trigger", agent_id=agent_id)
            return None

        task = asyncio.create_task(self.execute_heartbeat(agent_id))
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def execute_heartbeat(self, agent_id: str) -> Optional[LoopResult]:
        # Guard is checked and set before the first await
        if agent_id in self._running:
            logger.warning("Heartbeat already running, skipping", agent_id=agent_id)
            return None

        self._running.add(agent_id)
        try:
            return await self._execute(agent_id)
        finally:
            self._running.discard(agent_id)

    async def _execute(self, agent_id: str) -> Optional[LoopResult]:
        agent = self.settings.get_agent(agent_id)
        if agent is None:
            logger.warning("Heartbeat for unknown agent", agent_id=agent_id)
            return None

        heartbeat_path = self.settings.agent_dir(agent_id) / HEARTBEAT_FILE_NAME
        if not heartbeat_path.exists():
            logger.warning("No HEARTBEAT.md found, skipping", agent_id=agent_id)
            return None

        instructions = heartbeat_path.read_text(encoding="utf-8", errors="replace")
        if not instructions.strip():
            logger.warning("Empty HEARTBEAT.md, skipping", agent_id=agent_id)
            return None

        provider = self.settings.resolve_provider(agent.provider)
        if provider is None:
            logger.error("No provider available for heartbeat", agent_id=agent_id)
            return None

        messages = self.context_manager.build_heartbeat_messages(
            self.context_manager.resolve_system_prompt(agent_id),
            instructions
        )

        logger.info("Executing heartbeat", agent_id=agent_id)
        try:
            with bind_turn_context(agent_id, HEARTBEAT_SESSION_ID):
                result = await self.orchestrator.run(
                    messages,
                    provider,
                    context=ToolContext(agent_id=agent_id, session_id=HEARTBEAT_SESSION_ID),
                    max_iterations=self.settings.heartbeat_max_iterations
                )
        except Exception as e:
            logger.error("Error during heartbeat execution", agent_id=agent_id, error=str(e))
            return None

        logger.info("Heartbeat finished", agent_id=agent_id, status=result.status.value,
                    iterations=result.iterations, content=result.visible_content[:100])
        return result
