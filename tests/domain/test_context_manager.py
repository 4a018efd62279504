from gateway.domain.context.context_manager import SUMMARY_SYSTEM_PROMPT, ContextManager
from gateway.infrastructure.config.settings import DEFAULT_SYSTEM_PROMPT, GatewaySettings

TRANSCRIPT = [
    {"role": "user", "content": "Plan my Saturday."},
    {"role": "reasoning", "content": "The user wants a plan."},
    {"role": "assistant", "content": "<think>keep it short</think>Hike, then lunch."},
    {"role": "user", "content": "Add a movie."},
]


class TestSystemPrompt:
    """Prompt resolution order"""

    def test_agent_prompt_wins(self, settings):
        assert ContextManager(settings).resolve_system_prompt("luna") == "You are Luna."

    def test_falls_back_to_global_prompt(self, settings):
        settings = settings.model_copy(update={"system_prompt": "Be brief."})
        manager = ContextManager(settings)
        assert manager.resolve_system_prompt("unknown") == "Be brief."
        assert manager.resolve_system_prompt(None) == "Be brief."

    def test_default_prompt(self):
        assert ContextManager(GatewaySettings(system_prompt="")).resolve_system_prompt() == DEFAULT_SYSTEM_PROMPT


class TestBuildHistory:
    """Initial history for a chat turn"""

    def test_full_history(self, settings):
        history = ContextManager(settings).build_history("SYS", TRANSCRIPT, include_history=True)

        assert [m.role for m in history] == ["system", "user", "assistant", "user"]
        assert history[0].content == "SYS"
        assert history[-1].content == "Add a movie."

    def test_last_message_only(self, settings):
        history = ContextManager(settings).build_history("SYS", TRANSCRIPT, include_history=False)

        assert [m.role for m in history] == ["system", "user"]
        assert history[1].content == "Add a movie."

    def test_setting_is_the_default(self, settings):
        settings.chat.include_history = False
        history = ContextManager(settings).build_history("SYS", TRANSCRIPT)
        assert len(history) == 2

    def test_malformed_messages_are_dropped(self, settings):
        history = ContextManager(settings).build_history("SYS", [
            {"role": "wizard", "content": "?"},
            {"role": "user", "content": "hello"},
        ])
        assert [m.role for m in history] == ["system", "user"]


class TestSummaryMessages:
    """Prompt for the session summary"""

    def test_transcript_format(self, settings):
        messages = ContextManager(settings).build_summary_messages(
            [{"role": "system", "content": "hidden"}] + TRANSCRIPT
        )

        assert messages[0].content == SUMMARY_SYSTEM_PROMPT
        assert messages[1].content == (
            "Summarize this conversation in 10 words or less:\n\n"
            "USER: Plan my Saturday.\n"
            "ASSISTANT: Hike, then lunch.\n"
            "USER: Add a movie."
        )
