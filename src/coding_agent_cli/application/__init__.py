"""Application layer."""

from coding_agent_cli.application.approval import ApprovalGate
from coding_agent_cli.application.command_classifier import (
    CommandClassification,
    CommandClassifier,
)
from coding_agent_cli.application.conversation import Conversation
from coding_agent_cli.application.path_guard import PathGuard
from coding_agent_cli.application.tools import ToolRegistry, create_default_registry
from coding_agent_cli.application.transcript import TranscriptReducer

__all__ = [
    "ApprovalGate",
    "CommandClassification",
    "CommandClassifier",
    "Conversation",
    "PathGuard",
    "ToolRegistry",
    "TranscriptReducer",
    "create_default_registry",
]
