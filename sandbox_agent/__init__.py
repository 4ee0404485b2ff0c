"""
Sandbox Agent - autonomous tool-use loop over a sandboxed work directory.

The agent asks a language model what to do next, executes the tool-use
directives embedded in the reply (read, write, ls, rg, task) inside the work
directory, and feeds the results back into the next query until the model
answers without any directive.

Architecture:
- Every query is rendered from the full agent state
- Repeated directives are rejected, never executed twice
- The state is checkpointed after every iteration
- A run can be resumed from any checkpoint
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from sandbox_agent.core.agent import Agent, AgentState, RunResult
from sandbox_agent.core.directives import DirectiveGrammar, ToolUse
from sandbox_agent.state.engine import StateEngine

__all__ = [
    "Agent",
    "AgentState",
    "RunResult",
    "DirectiveGrammar",
    "ToolUse",
    "StateEngine",
    "__version__",
]
