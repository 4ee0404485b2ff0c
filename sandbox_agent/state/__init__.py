"""
Sandbox Agent state management module.

This module provides checkpoint persistence and recovery for resumable runs.
"""

from sandbox_agent.state.engine import Checkpointer, CheckpointError, StateEngine

__all__ = ["Checkpointer", "CheckpointError", "StateEngine"]
