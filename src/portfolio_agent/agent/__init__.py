"""Conversational agent for the portfolio site.

This package exposes the orchestrator and its collaborators (tool registry and
dispatcher, prompt assembly, error classification, model client) as separate
modules so each can be constructed and tested on its own.
"""

from .agent import ChatStream, ConversationOrchestrator
from .dispatcher import ToolDispatcher
from .errors import (
    Classification,
    ErrorClassifier,
    ErrorKind,
    MalformedResponseError,
    ToolRoundLimitExceeded,
)
from .llm import CompletionClient, OpenAICompletionClient
from .prompts import (
    Prompt,
    PromptAssembler,
    create_message,
    format_messages,
    limit_conversation_history,
)
from .registry import Capability, ToolRegistry
from .tools import PortfolioTools, build_portfolio_registry

__all__ = [
    "Capability",
    "ChatStream",
    "Classification",
    "CompletionClient",
    "ConversationOrchestrator",
    "ErrorClassifier",
    "ErrorKind",
    "MalformedResponseError",
    "OpenAICompletionClient",
    "PortfolioTools",
    "Prompt",
    "PromptAssembler",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolRoundLimitExceeded",
    "build_portfolio_registry",
    "create_message",
    "format_messages",
    "limit_conversation_history",
]
