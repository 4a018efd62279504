from typing import Dict, List, Any, Optional
import structlog

from gateway.domain.models.conversation import ConversationMessage
from gateway.domain.streaming.reasoning import strip_reasoning
from gateway.infrastructure.config.settings import GatewaySettings, DEFAULT_SYSTEM_PROMPT

logger = structlog.get_logger(__name__)

# Roles some clients keep in their transcripts but providers reject
DROPPED_ROLES = {"reasoning"}

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that provides extremely concise, 5-10 word summaries of chat sessions. "
    "Do not use quotes or introductory text. Just the summary."
)

HEARTBEAT_TEMPLATE = (
    "SYSTEM WAKEUP CALL: It is time to process your HEARTBEAT instructions.\n\n"
    "# INSTRUCTIONS\n{instructions}\n\n"
    "Please execute these instructions now."
)


class ContextManager:
    """Assembles the message list a loop run starts from"""

    def __init__(self, settings: Optional[GatewaySettings] = None):
        self.settings = settings or GatewaySettings()

    def resolve_system_prompt(self, agent_id: Optional[str] = None) -> str:
        """Agent prompt, else the global prompt, else the built-in default"""

        if agent_id:
            agent = self.settings.get_agent(agent_id)
            if agent and agent.system_prompt:
                return agent.system_prompt
        return self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT

    def build_history(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        include_history: Optional[bool] = None
    ) -> List[ConversationMessage]:
        """
        Build the initial history for a chat turn.

        The system prompt always comes first. With ``include_history`` the
        whole incoming transcript follows, otherwise only its last message.
        """

        if include_history is None:
            include_history = self.settings.chat.include_history

        usable = [m for m in messages if m.get("role") not in DROPPED_ROLES]
        if not include_history:
            usable = usable[-1:]

        history = [ConversationMessage.system(system_prompt)]
        for raw in usable:
            try:
                history.append(ConversationMessage.model_validate(raw))
            except ValueError as e:
                logger.warning("Dropping malformed message", role=raw.get("role"), error=str(e))
        return history

    def build_summary_messages(self, transcript: List[Dict[str, Any]]) -> List[ConversationMessage]:
        """Prompt for a 5-10 word summary of a session, reasoning stripped"""

        lines = []
        for message in transcript:
            role = message.get("role")
            if role in DROPPED_ROLES or role == "system":
                continue
            content = strip_reasoning(message.get("content") or "")
            if content:
                lines.append(f"{str(role).upper()}: {content}")

        return [
            ConversationMessage.system(SUMMARY_SYSTEM_PROMPT),
            ConversationMessage.user(
                "Summarize this conversation in 10 words or less:\n\n" + "\n".join(lines)
            )
        ]

    def build_heartbeat_messages(self, system_prompt: str, instructions: str) -> List[ConversationMessage]:
        return [
            ConversationMessage.system(system_prompt),
            ConversationMessage.user(HEARTBEAT_TEMPLATE.format(instructions=instructions))
        ]
