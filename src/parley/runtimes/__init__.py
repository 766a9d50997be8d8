"""Agent runtime implementations."""

from .http import HttpAgentRuntime
from .mock import ScriptRuntime

__all__ = ["HttpAgentRuntime", "ScriptRuntime"]
