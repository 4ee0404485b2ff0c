"""
Sandbox Agent core module.

Provides the directive protocol and the orchestration loop.
"""

from sandbox_agent.core.agent import (
    Action,
    Agent,
    AgentError,
    AgentState,
    ModelCallError,
    RunCancelled,
    RunResult,
)
from sandbox_agent.core.directives import DirectiveGrammar, DirectiveKind, ToolUse
from sandbox_agent.core.dispatcher import DispatchError, PathConfinementError, ToolDispatcher

__all__ = [
    "Action",
    "Agent",
    "AgentError",
    "AgentState",
    "ModelCallError",
    "RunCancelled",
    "RunResult",
    "DirectiveGrammar",
    "DirectiveKind",
    "ToolUse",
    "DispatchError",
    "PathConfinementError",
    "ToolDispatcher",
]
