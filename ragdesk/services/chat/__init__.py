"""Chat serving: prompt assembly, streaming orchestration and the safety judge."""

from ragdesk.services.chat.chat_orchestrator import APOLOGY_MESSAGE, ChatOrchestrator, ChatTurn
from ragdesk.services.chat.prompt_builder import BuiltPrompt, PromptBuilder
from ragdesk.services.chat.safety_judge import SafetyJudge, classify_topic, fallback_text
from ragdesk.services.chat.stream_writer import CheckpointWriter

__all__ = [
    "APOLOGY_MESSAGE",
    "BuiltPrompt",
    "ChatOrchestrator",
    "ChatTurn",
    "CheckpointWriter",
    "PromptBuilder",
    "SafetyJudge",
    "classify_topic",
    "fallback_text",
]
