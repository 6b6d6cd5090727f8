"""Pocket Agent - a local, tool-augmented conversational agent."""

__version__ = "0.1.0"

from pocket_agent.agent import Agent, ChatOutcome
from pocket_agent.config import Config

__all__ = ["Agent", "ChatOutcome", "Config", "__version__"]
