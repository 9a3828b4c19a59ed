"""Simple Assistant - an LLM chat that can propose and run shell commands."""

__version__ = "0.1.0"

from simple_assistant.config import Config
from simple_assistant.orchestrator import Conversation

__all__ = ["Config", "Conversation", "__version__"]
