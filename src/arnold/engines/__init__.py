"""Agent engine adapters."""

from arnold.engines.base import AgentResult, EngineBase, ProcessOutput
from arnold.engines.claude import ClaudeEngine

__all__ = ["AgentResult", "ClaudeEngine", "EngineBase", "ProcessOutput"]
